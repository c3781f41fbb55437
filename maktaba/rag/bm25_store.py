from rank_bm25 import BM25Okapi

from maktaba.models import Chunk
from maktaba.rag.language import tokenize


class BM25Store:
    def __init__(self, chunks: list[Chunk]):
        """Build a BM25 index over the given chunks (one corpus per query scope)."""
        self.bm25 = None
        self.chunk_map: dict[int, Chunk] = {}
        corpus = [tokenize(c.text) for c in chunks]
        # Filter out empty texts
        valid_chunks = [c for c, tokens in zip(chunks, corpus) if tokens]
        valid_corpus = [tokens for tokens in corpus if tokens]
        if valid_corpus:
            self.bm25 = BM25Okapi(valid_corpus)
            self.chunk_map = {i: c for i, c in enumerate(valid_chunks)}

    @classmethod
    def from_store(cls, store, document_ids: list[str]) -> "BM25Store":
        return cls(store.list_chunks(document_ids))

    def search(self, query: str, top_k: int = 25) -> list[Chunk]:
        """Keyword search; each hit carries its BM25 score in ``metadata``."""
        if self.bm25 is None or len(self.chunk_map) == 0:
            return []

        tokenized_query = tokenize(query)
        if not tokenized_query:
            return []
        scores = self.bm25.get_scores(tokenized_query)
        top_indices = sorted(range(len(scores)), key=lambda i: scores[i], reverse=True)[:top_k]

        hits = []
        for idx in top_indices:
            if scores[idx] <= 0:
                break
            chunk = self.chunk_map[idx]
            hits.append(
                chunk.model_copy(
                    update={"metadata": {**chunk.metadata, "bm25_score": float(scores[idx])}}
                )
            )
        return hits

    def exact_matches(self, terms: list[str]) -> list[Chunk]:
        """Chunks whose text contains any of the terms verbatim (after normalization)."""
        needles = [" ".join(tokenize(t)) for t in terms]
        needles = [n for n in needles if n]
        if not needles:
            return []
        hits = []
        for chunk in self.chunk_map.values():
            haystack = " ".join(tokenize(chunk.text))
            if any(n in haystack for n in needles):
                hits.append(chunk)
        return hits
