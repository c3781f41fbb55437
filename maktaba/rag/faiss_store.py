import json
import os
import threading
from typing import Any, Iterable

import faiss
import numpy as np

from maktaba.config import Settings
from maktaba.exceptions import StorageError
from maktaba.models import Chunk


class FaissStore:
    def __init__(self, settings: Settings):
        self.settings = settings
        self.dim = settings.embedding_dim
        self.index_path = settings.faiss_index_path
        self.meta_path = settings.faiss_meta_path
        os.makedirs(os.path.dirname(self.index_path) or ".", exist_ok=True)
        os.makedirs(os.path.dirname(self.meta_path) or ".", exist_ok=True)
        self.index = None
        self.records: dict[int, dict[str, Any]] = {}
        self.ids_by_chunk: dict[str, int] = {}
        self.next_id = 0
        self._lock = threading.Lock()
        self._load()

    @staticmethod
    def _normalize(vecs: np.ndarray) -> np.ndarray:
        norms = np.linalg.norm(vecs, axis=1, keepdims=True) + 1e-12
        return vecs / norms

    def _create_index(self) -> None:
        # Inner product search on normalized vectors = cosine similarity
        self.index = faiss.IndexIDMap2(faiss.IndexFlatIP(self.dim))

    def _load(self) -> None:
        if os.path.exists(self.index_path) and os.path.exists(self.meta_path):
            self.index = faiss.read_index(self.index_path)
            with open(self.meta_path, "r", encoding="utf-8") as f:
                meta = json.load(f)
            self.next_id = meta.get("next_id", 0)
            for rec in meta.get("records", []):
                self.records[rec["faiss_id"]] = rec
                self.ids_by_chunk[rec["id"]] = rec["faiss_id"]
            if self.index.d != self.dim and self.index.ntotal > 0:
                raise StorageError(
                    f"FAISS index dimension mismatch: index.d={self.index.d} vs EMBEDDING_DIM={self.dim}. "
                    f"Either set EMBEDDING_DIM={self.index.d} and use the same embedding model, or delete the existing "
                    f"FAISS files ({self.index_path}, {self.meta_path}) to rebuild with the new dimension."
                )
            if self.index.d != self.dim:
                self._create_index()
        else:
            self._create_index()

    def _save(self) -> None:
        faiss.write_index(self.index, self.index_path)
        with open(self.meta_path, "w", encoding="utf-8") as f:
            json.dump(
                {"next_id": self.next_id, "records": list(self.records.values())},
                f,
                ensure_ascii=False,
            )

    def _check(self, chunk: Chunk) -> None:
        if len(chunk.text.strip()) < self.settings.min_chunk_chars:
            raise StorageError(f"Chunk {chunk.id} text is shorter than {self.settings.min_chunk_chars} characters")
        if len(chunk.embedding) != self.dim:
            raise StorageError(
                f"Chunk {chunk.id} embedding has {len(chunk.embedding)} dimensions, expected {self.dim}"
            )

    def _remove(self, chunk_id: str) -> None:
        faiss_id = self.ids_by_chunk.pop(chunk_id, None)
        if faiss_id is None:
            return
        self.index.remove_ids(np.array([faiss_id], dtype=np.int64))
        self.records.pop(faiss_id, None)

    def _to_chunk(self, rec: dict[str, Any], similarity: float | None = None) -> Chunk:
        return Chunk(
            id=rec["id"],
            document_id=rec["document_id"],
            page_number=rec["page_number"],
            text=rec["text"],
            corrected=rec.get("corrected", False),
            metadata=dict(rec.get("metadata", {})),
            similarity=similarity,
        )

    def upsert_chunks(self, chunks: list[Chunk]) -> int:
        if not chunks:
            return 0
        for chunk in chunks:
            self._check(chunk)
        embeddings = self._normalize(
            np.array([c.embedding for c in chunks], dtype=np.float32)
        )
        with self._lock:
            ids = []
            for chunk in chunks:
                self._remove(chunk.id)
                faiss_id = self.next_id
                self.next_id += 1
                ids.append(faiss_id)
                self.ids_by_chunk[chunk.id] = faiss_id
                self.records[faiss_id] = {
                    "faiss_id": faiss_id,
                    "id": chunk.id,
                    "document_id": chunk.document_id,
                    "page_number": chunk.page_number,
                    "text": chunk.text,
                    "corrected": chunk.corrected,
                    "metadata": chunk.metadata,
                }
            self.index.add_with_ids(embeddings, np.array(ids, dtype=np.int64))
            self._save()
        return len(chunks)

    def update_chunk(self, chunk_id: str, text: str, embedding: list[float], corrected: bool = True) -> None:
        """Replace a chunk's text and vector together in one write."""
        with self._lock:
            faiss_id = self.ids_by_chunk.get(chunk_id)
            if faiss_id is None:
                raise StorageError(f"Unknown chunk: {chunk_id}")
            rec = dict(self.records[faiss_id])
            rec["text"] = text
            rec["corrected"] = corrected
            self._check(self._to_chunk(rec).model_copy(update={"embedding": embedding}))
            vec = self._normalize(np.array([embedding], dtype=np.float32))
            self.index.remove_ids(np.array([faiss_id], dtype=np.int64))
            self.index.add_with_ids(vec, np.array([faiss_id], dtype=np.int64))
            self.records[faiss_id] = rec
            self._save()

    def search(
        self,
        query_embedding: list[float],
        document_ids: Iterable[str],
        top_k: int = 6,
        min_similarity: float = 0.0,
    ) -> list[Chunk]:
        allowed = set(document_ids)
        if not allowed or self.index.ntotal == 0:
            return []
        q = self._normalize(np.array([query_embedding], dtype=np.float32))
        # Flat index: scoring everything keeps the document filter exact
        scores, idxs = self.index.search(q, self.index.ntotal)
        hits: list[Chunk] = []
        for score, idx in zip(scores[0].tolist(), idxs[0].tolist()):
            rec = self.records.get(idx)
            if rec is None or rec["document_id"] not in allowed:
                continue
            if score < min_similarity:
                break
            hits.append(self._to_chunk(rec, float(score)))
            if len(hits) >= top_k:
                break
        return hits

    def list_chunks(
        self, document_ids: Iterable[str] | None = None, pages: Iterable[int] | None = None
    ) -> list[Chunk]:
        allowed = set(document_ids) if document_ids is not None else None
        wanted_pages = set(pages) if pages is not None else None
        out = []
        for rec in self.records.values():
            if allowed is not None and rec["document_id"] not in allowed:
                continue
            if wanted_pages is not None and rec["page_number"] not in wanted_pages:
                continue
            out.append(self._to_chunk(rec))
        out.sort(key=lambda c: (c.document_id, c.page_number, c.metadata.get("chunk_index_in_page", 0)))
        return out

    def delete_document(self, document_id: str) -> int:
        with self._lock:
            doomed = [rec["id"] for rec in self.records.values() if rec["document_id"] == document_id]
            for chunk_id in doomed:
                self._remove(chunk_id)
            if doomed:
                self._save()
        return len(doomed)
