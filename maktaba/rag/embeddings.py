from ibm_watsonx_ai import Credentials
from ibm_watsonx_ai.foundation_models import Embeddings as WXEmbeddings

from maktaba.config import Settings


def _vectors_from_response(result) -> list[list[float]]:
    data = result.get_result() if hasattr(result, "get_result") else result
    # Supported shapes
    # 1) {"results": [{"embedding"|"vector"|"values": [...]}, ...]}
    if isinstance(data, dict) and isinstance(data.get("results"), list):
        out = []
        for item in data["results"]:
            if isinstance(item, dict):
                for key in ("embedding", "vector", "values"):
                    if key in item:
                        out.append(item[key])
                        break
        if out:
            return out
    # 2) {"embeddings": [[...], ...]} or {"embedding": [...]}
    if isinstance(data, dict):
        if data.get("embeddings"):
            return data["embeddings"]
        if "embedding" in data:
            return [data["embedding"]]
    # 3) direct list of vectors, or a single vector
    if isinstance(data, list) and data:
        if isinstance(data[0], list):
            return data
        if isinstance(data[0], (int, float)):
            return [data]
    # 4) attribute style
    if hasattr(result, "embeddings"):
        return result.embeddings
    raise RuntimeError(
        f"Unexpected embeddings response format from watsonx.ai: {type(data)} keys={list(data.keys()) if isinstance(data, dict) else 'n/a'}"
    )


class EmbeddingClient:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.credentials = Credentials(
            api_key=settings.ibm_cloud_api_key,
            url=f"https://{settings.watsonx_region}.ml.cloud.ibm.com",
        )
        self._clients: dict[str, WXEmbeddings] = {}

    def _client(self, model_id: str) -> WXEmbeddings:
        if model_id not in self._clients:
            self._clients[model_id] = WXEmbeddings(
                model_id=model_id,
                project_id=self.settings.watsonx_project_id,
                credentials=self.credentials,
            )
        return self._clients[model_id]

    def embed_query(self, text: str, model_id: str) -> list[float]:
        result = self._client(model_id).embed_query(text)
        vectors = _vectors_from_response(result)
        return vectors[0]
