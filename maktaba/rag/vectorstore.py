import json
from typing import Iterable

from pymilvus import connections, FieldSchema, CollectionSchema, DataType, Collection, utility

from maktaba.config import Settings
from maktaba.exceptions import StorageError
from maktaba.models import Chunk
from maktaba.rag.faiss_store import FaissStore

OUTPUT_FIELDS = ["id", "document_id", "page_number", "text", "corrected", "metadata"]
QUERY_LIMIT = 16384
DOCUMENT_ID_MAX_LENGTH = 64
# Room for the "-p{page}-c{index}" suffix on a full-length document id
CHUNK_ID_MAX_LENGTH = 128


def _quoted(values: Iterable[str]) -> str:
    return ", ".join(json.dumps(v) for v in values)


class MilvusStore:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.collection_name = settings.milvus_collection
        self._connect()
        self._ensure_collection()

    def _connect(self) -> None:
        alias = "default"
        if connections.has_connection(alias):
            return
        kwargs = {}
        if self.settings.milvus_db:
            kwargs["db_name"] = self.settings.milvus_db
        connections.connect(
            alias=alias,
            host=self.settings.milvus_host,
            port=str(self.settings.milvus_port),
            secure=self.settings.milvus_tls,
            **kwargs,
        )

    def _ensure_collection(self) -> None:
        fields = [
            FieldSchema(name="id", dtype=DataType.VARCHAR, is_primary=True, max_length=CHUNK_ID_MAX_LENGTH),
            FieldSchema(name="document_id", dtype=DataType.VARCHAR, max_length=DOCUMENT_ID_MAX_LENGTH),
            FieldSchema(name="page_number", dtype=DataType.INT64),
            FieldSchema(name="text", dtype=DataType.VARCHAR, max_length=8192),
            FieldSchema(name="corrected", dtype=DataType.BOOL),
            FieldSchema(name="metadata", dtype=DataType.JSON),
            FieldSchema(name="embedding", dtype=DataType.FLOAT_VECTOR, dim=self.settings.embedding_dim),
        ]
        schema = CollectionSchema(fields=fields, description="Library chunks")

        if not utility.has_collection(self.collection_name):
            self.collection = Collection(self.collection_name, schema=schema)
            self.collection.create_index(
                field_name="embedding",
                index_params={
                    "index_type": "IVF_FLAT",
                    "metric_type": "IP",
                    "params": {"nlist": 1024},
                },
            )
        else:
            self.collection = Collection(self.collection_name)

        self.collection.load()

    def _check(self, chunk: Chunk) -> None:
        if len(chunk.document_id) > DOCUMENT_ID_MAX_LENGTH or len(chunk.id) > CHUNK_ID_MAX_LENGTH:
            raise StorageError(f"Chunk id {chunk.id} is too long for the collection schema")
        if len(chunk.text.strip()) < self.settings.min_chunk_chars:
            raise StorageError(f"Chunk {chunk.id} text is shorter than {self.settings.min_chunk_chars} characters")
        if len(chunk.embedding) != self.settings.embedding_dim:
            raise StorageError(
                f"Chunk {chunk.id} embedding has {len(chunk.embedding)} dimensions, "
                f"expected {self.settings.embedding_dim}"
            )

    @staticmethod
    def _row(chunk: Chunk) -> dict:
        return {
            "id": chunk.id,
            "document_id": chunk.document_id,
            "page_number": chunk.page_number,
            "text": chunk.text,
            "corrected": chunk.corrected,
            "metadata": chunk.metadata,
            "embedding": chunk.embedding,
        }

    @staticmethod
    def _to_chunk(rec: dict, similarity: float | None = None) -> Chunk:
        return Chunk(
            id=rec["id"],
            document_id=rec["document_id"],
            page_number=rec["page_number"],
            text=rec["text"],
            corrected=bool(rec.get("corrected", False)),
            metadata=dict(rec.get("metadata") or {}),
            similarity=similarity,
        )

    def upsert_chunks(self, chunks: list[Chunk]) -> int:
        if not chunks:
            return 0
        for chunk in chunks:
            self._check(chunk)
        self.collection.upsert([self._row(c) for c in chunks])
        self.collection.flush()
        return len(chunks)

    def update_chunk(self, chunk_id: str, text: str, embedding: list[float], corrected: bool = True) -> None:
        """Replace a chunk's text and vector together in one upsert."""
        rows = self.collection.query(expr=f"id == {json.dumps(chunk_id)}", output_fields=OUTPUT_FIELDS)
        if not rows:
            raise StorageError(f"Unknown chunk: {chunk_id}")
        chunk = self._to_chunk(rows[0]).model_copy(
            update={"text": text, "embedding": embedding, "corrected": corrected}
        )
        self._check(chunk)
        self.collection.upsert([self._row(chunk)])
        self.collection.flush()

    def search(
        self,
        query_embedding: list[float],
        document_ids: Iterable[str],
        top_k: int = 6,
        min_similarity: float = 0.0,
    ) -> list[Chunk]:
        allowed = list(dict.fromkeys(document_ids))
        if not allowed:
            return []
        results = self.collection.search(
            data=[query_embedding],
            anns_field="embedding",
            param={"metric_type": "IP", "params": {"nprobe": 16}},
            limit=top_k,
            expr=f"document_id in [{_quoted(allowed)}]",
            output_fields=OUTPUT_FIELDS,
        )
        hits = []
        for hit in results[0]:
            if hit.distance < min_similarity:
                continue
            rec = {f: hit.entity.get(f) for f in OUTPUT_FIELDS}
            if rec["document_id"] not in allowed:
                continue
            hits.append(self._to_chunk(rec, float(hit.distance)))
        return hits

    def list_chunks(
        self, document_ids: Iterable[str] | None = None, pages: Iterable[int] | None = None
    ) -> list[Chunk]:
        clauses = []
        if document_ids is not None:
            clauses.append(f"document_id in [{_quoted(document_ids)}]")
        if pages is not None:
            clauses.append(f"page_number in [{', '.join(str(int(p)) for p in pages)}]")
        expr = " and ".join(clauses) or 'id != ""'
        rows = self.collection.query(expr=expr, output_fields=OUTPUT_FIELDS, limit=QUERY_LIMIT)
        out = [self._to_chunk(r) for r in rows]
        out.sort(key=lambda c: (c.document_id, c.page_number, c.metadata.get("chunk_index_in_page", 0)))
        return out

    def delete_document(self, document_id: str) -> int:
        mr = self.collection.delete(expr=f"document_id == {json.dumps(document_id)}")
        self.collection.flush()
        return int(getattr(mr, "delete_count", 0))


def create_vector_store(settings: Settings):
    """Build the configured vector store backend."""
    if settings.vector_backend == "milvus":
        return MilvusStore(settings)
    if settings.vector_backend == "faiss":
        return FaissStore(settings)
    raise ValueError(f"Unknown VECTOR_BACKEND: {settings.vector_backend}")
