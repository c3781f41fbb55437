import ibm_boto3
from ibm_botocore.client import Config

from maktaba.config import Settings


def parse_s3_uri(uri: str) -> tuple[str, str]:
    """Split ``s3://bucket/key`` into bucket and key."""
    if not uri.startswith("s3://"):
        raise ValueError(f"Not an s3:// URI: {uri}")
    _, rest = uri.split("s3://", 1)
    bucket, _, key = rest.partition("/")
    if not bucket or not key:
        raise ValueError(f"s3:// URI needs a bucket and a key: {uri}")
    return bucket, key


class COSClient:
    """IBM Cloud Object Storage access for the PDF library."""

    def __init__(self, settings: Settings):
        self.settings = settings
        if not settings.cos_endpoint:
            raise ValueError("Missing COS configuration. Please set COS_ENDPOINT.")

        # Normalize endpoint: strip quotes, remove trailing slash, ensure https
        endpoint = settings.cos_endpoint.strip().strip('"').strip("'").rstrip("/")
        if not endpoint.startswith(("http://", "https://")):
            endpoint = f"https://{endpoint}"
        elif endpoint.startswith("http://"):
            endpoint = endpoint.replace("http://", "https://", 1)
        self.endpoint = endpoint

        # Prefer HMAC if keys are present; otherwise use IAM
        if settings.cos_hmac_access_key_id and settings.cos_hmac_secret_access_key:
            self.mode = "hmac"
            try:
                self.client = ibm_boto3.client(
                    "s3",
                    aws_access_key_id=settings.cos_hmac_access_key_id,
                    aws_secret_access_key=settings.cos_hmac_secret_access_key,
                    config=Config(signature_version="s3v4"),
                    endpoint_url=endpoint,
                )
            except Exception as e:
                raise RuntimeError(
                    f"Failed to initialize COS client with HMAC authentication "
                    f"(endpoint {endpoint}): {e}"
                ) from e
        else:
            self.mode = "iam"
            if not settings.cos_api_key or not settings.cos_instance_crn:
                raise ValueError(
                    "IAM access to COS needs COS_API_KEY (or IBM_CLOUD_API_KEY) "
                    "and COS_INSTANCE_CRN."
                )
            try:
                self.client = ibm_boto3.client(
                    "s3",
                    ibm_api_key_id=settings.cos_api_key,
                    ibm_service_instance_id=settings.cos_instance_crn,
                    ibm_auth_endpoint=settings.cos_auth_endpoint,
                    config=Config(signature_version="oauth"),
                    endpoint_url=endpoint,
                )
            except Exception as e:
                raise RuntimeError(
                    f"Failed to initialize COS client with IAM authentication "
                    f"(endpoint {endpoint}, auth {settings.cos_auth_endpoint}): {e}"
                ) from e

    def download(self, s3_uri: str) -> bytes:
        bucket, key = parse_s3_uri(s3_uri)
        obj = self.client.get_object(Bucket=bucket, Key=key)
        return obj["Body"].read()
