from maktaba.models import Chunk
from maktaba.rag.language import tokenize


class Reranker:
    # Cross-encoders are not exposed through the watsonx.ai text API, so the
    # rerank score blends lexical overlap with the signals hybrid search left
    # on each candidate.

    def rerank(self, query: str, candidates: list[Chunk], top_k: int = 6) -> list[Chunk]:
        """
        Re-rank candidates using keyword-based scoring combined with hybrid search signals.
        Returns top_k re-ranked candidates.
        """
        if not candidates:
            return []

        scored = [(self._score_pair(query, c), i, c) for i, c in enumerate(candidates)]
        scored.sort(key=lambda x: (-x[0], x[1]))
        return [
            c.model_copy(update={"metadata": {**c.metadata, "rerank_score": score}})
            for score, _, c in scored[:top_k]
        ]

    def _score_pair(self, query: str, candidate: Chunk) -> float:
        """Score a query-document pair using keyword overlap and hybrid search signals."""
        query_tokens = tokenize(query)
        doc_tokens = tokenize(candidate.text)

        # Signal 1: Keyword overlap (Jaccard similarity)
        query_terms = set(query_tokens)
        doc_terms = set(doc_tokens)
        union = len(query_terms | doc_terms)
        jaccard_score = (len(query_terms & doc_terms) / union) if union > 0 else 0.0

        # Signal 2: Exact phrase match boost
        phrase_boost = 1.0 if query_tokens and " ".join(query_tokens) in " ".join(doc_tokens) else 0.0

        # Signal 3: Scores from hybrid search (vector similarity, BM25)
        semantic_score = candidate.similarity or 0.0
        bm25_score = candidate.metadata.get("bm25_score", 0.0)
        normalized_semantic = max(0.0, min(1.0, semantic_score))
        normalized_bm25 = min(1.0, bm25_score / 10.0) if bm25_score > 0 else 0.0

        # 40% semantic, 30% Jaccard, 20% BM25, 10% phrase
        final_score = (
            0.4 * normalized_semantic
            + 0.3 * jaccard_score
            + 0.2 * normalized_bm25
            + 0.1 * phrase_boost
        )
        return min(final_score, 1.0)
