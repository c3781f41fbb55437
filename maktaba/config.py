"""Application configuration settings.

This module defines the Settings dataclass that loads configuration
from environment variables.
"""

from dataclasses import dataclass, field
import logging
import os

DEFAULT_GEN_MODELS = [
    "ibm/granite-3-8b-instruct",
    "meta-llama/llama-3-3-70b-instruct",
    "mistralai/mistral-large",
]
DEFAULT_VISION_MODELS = [
    "meta-llama/llama-3-2-11b-vision-instruct",
    "meta-llama/llama-3-2-90b-vision-instruct",
]
DEFAULT_EMBED_MODELS = ["intfloat/multilingual-e5-large"]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


@dataclass
class Settings:
    """Application settings loaded from environment variables.

    Attributes:
        ibm_cloud_api_key: IBM Cloud API key for authentication.
        watsonx_region: Watsonx.ai service region.
        watsonx_project_id: Watsonx.ai project ID.
        watsonx_gen_models: Text generation cascade, cheapest first.
        watsonx_vision_models: Vision cascade used for page OCR.
        watsonx_embed_models: Embedding cascade.
        cos_endpoint: Cloud Object Storage endpoint.
        cos_instance_crn: Cloud Object Storage instance CRN.
        cos_api_key: Cloud Object Storage API key (optional).
        cos_auth_endpoint: Cloud Object Storage auth endpoint.
        cos_hmac_access_key_id: HMAC access key ID.
        cos_hmac_secret_access_key: HMAC secret access key.
        vector_backend: Either "faiss" or "milvus".
        milvus_host: Milvus database host.
        milvus_port: Milvus database port.
        milvus_db: Milvus database name (optional).
        milvus_tls: Whether to use TLS for Milvus.
        milvus_collection: Milvus collection holding the chunks.
        faiss_index_path: Path to FAISS index file.
        faiss_meta_path: Path to FAISS metadata file.
        registry_path: Path to the sqlite document registry.
        chunk_size: Text chunk size for splitting.
        chunk_overlap: Text chunk overlap size.
        min_chunk_chars: Shortest chunk text that is ever stored.
        min_native_chars: Native page text shorter than this triggers OCR.
        ocr_scale: Upscale factor used when rendering a page for OCR.
        ocr_retry_min_chars: OCR text shorter than this is retried rotated.
        page_delay_seconds: Pause between pages during ingestion.
        rate_limit_backoff_seconds: Pause before retrying a rate-limited embed.
        correction_batch_size: Chunks per maintenance sweep batch.
        correction_batch_delay: Pause between sweep batches.
        correction_chunk_delay: Pause between chunks inside a batch.
        top_k: Page groups handed to answer generation.
        temperature: Generation temperature.
        embedding_dim: Embedding dimension.
        max_hops: Default hop budget for multi-hop reasoning.
        log_level: Root logging level.
    """

    ibm_cloud_api_key: str = ""
    watsonx_region: str = "us-south"
    watsonx_project_id: str = ""
    watsonx_gen_models: list[str] = field(
        default_factory=lambda: list(DEFAULT_GEN_MODELS)
    )
    watsonx_vision_models: list[str] = field(
        default_factory=lambda: list(DEFAULT_VISION_MODELS)
    )
    watsonx_embed_models: list[str] = field(
        default_factory=lambda: list(DEFAULT_EMBED_MODELS)
    )

    cos_endpoint: str = ""
    cos_instance_crn: str = ""
    cos_api_key: str | None = None
    cos_auth_endpoint: str = "https://iam.cloud.ibm.com/identity/token"
    cos_hmac_access_key_id: str = ""
    cos_hmac_secret_access_key: str = ""

    vector_backend: str = "faiss"
    milvus_host: str = "localhost"
    milvus_port: int = 19530
    milvus_db: str | None = None
    milvus_tls: bool = False
    milvus_collection: str = "library_chunks"

    faiss_index_path: str = "data/index.faiss"
    faiss_meta_path: str = "data/meta.json"
    registry_path: str = "data/library.db"

    chunk_size: int = 1000
    chunk_overlap: int = 200
    min_chunk_chars: int = 10
    min_native_chars: int = 100
    ocr_scale: float = 2.5
    ocr_retry_min_chars: int = 40
    page_delay_seconds: float = 1.0
    rate_limit_backoff_seconds: float = 5.0

    correction_batch_size: int = 5
    correction_batch_delay: float = 3.0
    correction_chunk_delay: float = 0.5

    top_k: int = 15
    temperature: float = 0.2
    embedding_dim: int = 1024
    max_hops: int = 3
    log_level: str = "INFO"

    @staticmethod
    def _get_bool(value: str | None, default: bool = False) -> bool:
        """Convert string value to boolean.

        Args:
            value: String value to convert.
            default: Default value if value is None.

        Returns:
            Boolean value.
        """
        if value is None:
            return default
        return value.lower() in {"1", "true", "t", "yes", "y"}

    @staticmethod
    def _get_list(value: str | None, default: list[str]) -> list[str]:
        """Split a comma-separated value into an ordered list of names."""
        if not value:
            return list(default)
        items = [item.strip() for item in value.split(",")]
        return [item for item in items if item] or list(default)

    @classmethod
    def from_env(cls) -> "Settings":
        """Create Settings instance from environment variables.

        Returns:
            Settings instance with values loaded from environment.
        """
        return cls(
            ibm_cloud_api_key=os.getenv("IBM_CLOUD_API_KEY", ""),
            watsonx_region=os.getenv("WATSONX_REGION", "us-south"),
            watsonx_project_id=os.getenv("WATSONX_PROJECT_ID", ""),
            watsonx_gen_models=cls._get_list(
                os.getenv("WATSONX_GEN_MODELS"), DEFAULT_GEN_MODELS
            ),
            watsonx_vision_models=cls._get_list(
                os.getenv("WATSONX_VISION_MODELS"), DEFAULT_VISION_MODELS
            ),
            watsonx_embed_models=cls._get_list(
                os.getenv("WATSONX_EMBED_MODELS"), DEFAULT_EMBED_MODELS
            ),
            cos_endpoint=os.getenv("COS_ENDPOINT", ""),
            cos_instance_crn=os.getenv("COS_INSTANCE_CRN", ""),
            cos_api_key=os.getenv("COS_API_KEY") or os.getenv("IBM_CLOUD_API_KEY"),
            cos_auth_endpoint=os.getenv(
                "COS_AUTH_ENDPOINT",
                "https://iam.cloud.ibm.com/identity/token",
            ),
            cos_hmac_access_key_id=os.getenv("COS_HMAC_ACCESS_KEY_ID", ""),
            cos_hmac_secret_access_key=os.getenv("COS_HMAC_SECRET_ACCESS_KEY", ""),
            vector_backend=os.getenv("VECTOR_BACKEND", "faiss").lower(),
            milvus_host=os.getenv("MILVUS_HOST", "localhost"),
            milvus_port=int(os.getenv("MILVUS_PORT", "19530")),
            milvus_db=os.getenv("MILVUS_DB"),
            milvus_tls=cls._get_bool(os.getenv("MILVUS_TLS"), False),
            milvus_collection=os.getenv("MILVUS_COLLECTION", "library_chunks"),
            faiss_index_path=os.getenv("FAISS_INDEX_PATH", "data/index.faiss"),
            faiss_meta_path=os.getenv("FAISS_META_PATH", "data/meta.json"),
            registry_path=os.getenv("REGISTRY_PATH", "data/library.db"),
            chunk_size=int(os.getenv("CHUNK_SIZE", "1000")),
            chunk_overlap=int(os.getenv("CHUNK_OVERLAP", "200")),
            min_chunk_chars=int(os.getenv("MIN_CHUNK_CHARS", "10")),
            min_native_chars=int(os.getenv("MIN_NATIVE_CHARS", "100")),
            ocr_scale=float(os.getenv("OCR_SCALE", "2.5")),
            ocr_retry_min_chars=int(os.getenv("OCR_RETRY_MIN_CHARS", "40")),
            page_delay_seconds=float(os.getenv("PAGE_DELAY_SECONDS", "1.0")),
            rate_limit_backoff_seconds=float(
                os.getenv("RATE_LIMIT_BACKOFF_SECONDS", "5.0")
            ),
            correction_batch_size=int(os.getenv("CORRECTION_BATCH_SIZE", "5")),
            correction_batch_delay=float(os.getenv("CORRECTION_BATCH_DELAY", "3.0")),
            correction_chunk_delay=float(os.getenv("CORRECTION_CHUNK_DELAY", "0.5")),
            top_k=int(os.getenv("TOP_K", "15")),
            temperature=float(os.getenv("TEMPERATURE", "0.2")),
            embedding_dim=int(os.getenv("EMBEDDING_DIM", "1024")),
            max_hops=int(os.getenv("MAX_HOPS", "3")),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper(),
        )

    def setup_logging(self) -> None:
        """Configure the root logger once for command-line use."""
        logging.basicConfig(
            level=getattr(logging, self.log_level, logging.INFO),
            format=LOG_FORMAT,
        )
