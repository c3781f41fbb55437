"""Smart retrieval engine.

Picks a retrieval strategy from the analyzed query and the size of the
corpus, runs it against the vector store (optionally widened with BM25 and
fused by Reciprocal Rank Fusion), filters low-quality candidates, reranks,
and scores an advisory confidence. Every store call is restricted to the
requested document ids.
"""

import asyncio
import logging
from collections import OrderedDict

from maktaba.config import Settings
from maktaba.models import (
    Chunk,
    DocumentGroup,
    PageGroup,
    QueryAnalysis,
    QueryType,
    RetrievalResult,
)
from maktaba.rag.bm25_store import BM25Store
from maktaba.rag.invocation import ModelInvoker, Task
from maktaba.rag.reranker import Reranker

logger = logging.getLogger(__name__)

SIMILARITY_FLOOR = 0.2
MIN_RESULT_CHARS = 20
KEYWORD_SIMILARITY = 0.5
KEYWORD_TOP_K = 25
RRF_K = 60

SINGLE_DOC_LIMIT = 15
MULTI_DOC_LIMIT = 35
COMPARATIVE_LIMIT = 50

MAX_GROUPED_PAGES = 15
MAX_GROUPED_CHUNKS = 30


def relevance_tier(similarity: float) -> str:
    if similarity >= 0.5:
        return "high"
    if similarity >= 0.4:
        return "medium"
    return "low"


def reciprocal_rank_fusion(*rankings: list[Chunk], k: int = RRF_K) -> list[Chunk]:
    """Combine ranked chunk lists using Reciprocal Rank Fusion (RRF).

    Args:
        rankings: Ranked lists, best first.
        k: RRF parameter (default: 60).

    Returns:
        Chunks ordered by fused score; the first-seen copy of each chunk is kept.
    """
    hit_map: dict[str, Chunk] = {}
    rrf_scores: dict[str, float] = {}
    for ranking in rankings:
        for rank, chunk in enumerate(ranking, start=1):
            hit_map.setdefault(chunk.id, chunk)
            rrf_scores[chunk.id] = rrf_scores.get(chunk.id, 0.0) + (1.0 / (k + rank))
    sorted_ids = sorted(rrf_scores, key=lambda x: rrf_scores[x], reverse=True)
    return [hit_map[chunk_id] for chunk_id in sorted_ids]


def _similarity(chunk: Chunk) -> float:
    return chunk.similarity or 0.0


def _by_similarity(chunks) -> list[Chunk]:
    return sorted(chunks, key=_similarity, reverse=True)


def _top_mean(chunks: list[Chunk], n: int = 5) -> float:
    top = [_similarity(c) for c in chunks[:n]]
    return sum(top) / len(top) if top else 0.0


def single_document_confidence(chunks: list[Chunk]) -> float:
    """Mean of the top five similarities, floored by how much was found."""
    if not chunks:
        return 0.0
    floor = 0.65 if len(chunks) >= 10 else 0.55
    return min(1.0, max(_top_mean(chunks), floor))


def multi_document_confidence(chunks: list[Chunk], document_ids: list[str]) -> float:
    """Blend of document coverage and top similarities, bounded to [0, 1]."""
    if not chunks or not document_ids:
        return 0.0
    represented = {c.document_id for c in chunks} & set(document_ids)
    coverage = len(represented) / len(document_ids)
    score = (coverage * 0.4 + _top_mean(chunks) * 0.6) * 0.9
    return max(0.0, min(1.0, score))


def ensure_cross_document_balance(
    chunks: list[Chunk], document_ids: list[str], target_count: int
) -> list[Chunk]:
    """Guarantee each document a share of the result, then fill by rank."""
    min_per_doc = max(1, target_count // max(len(document_ids), 1))
    groups: dict[str, list[Chunk]] = {doc_id: [] for doc_id in document_ids}
    for chunk in chunks:
        if chunk.document_id in groups:
            groups[chunk.document_id].append(chunk)

    balanced: list[Chunk] = []
    for doc_chunks in groups.values():
        balanced.extend(doc_chunks[:min_per_doc])
    taken = {c.id for c in balanced}
    remaining = [c for c in chunks if c.id not in taken]
    balanced.extend(remaining[: max(0, target_count - len(balanced))])
    return _by_similarity(balanced)[:target_count]


def group_results(
    chunks: list[Chunk],
    max_pages: int = MAX_GROUPED_PAGES,
    max_chunks: int = MAX_GROUPED_CHUNKS,
) -> list[DocumentGroup]:
    """Group ranked chunks by document, then page, with a relevance tier per page.

    Pages are ordered by their best similarity; at most ``max_pages`` pages
    built from the first ``max_chunks`` chunks are returned.
    """
    pages: OrderedDict[tuple[str, int], list[Chunk]] = OrderedDict()
    for chunk in chunks[:max_chunks]:
        pages.setdefault((chunk.document_id, chunk.page_number), []).append(chunk)

    page_groups: list[tuple[str, PageGroup]] = []
    for (doc_id, page_number), page_chunks in pages.items():
        best = max(_similarity(c) for c in page_chunks)
        page_chunks.sort(key=lambda c: c.metadata.get("chunk_index_in_page", 0))
        page_groups.append(
            (
                doc_id,
                PageGroup(
                    page_number=page_number,
                    chunks=page_chunks,
                    best_similarity=best,
                    relevance=relevance_tier(best),
                ),
            )
        )
    page_groups.sort(key=lambda item: item[1].best_similarity, reverse=True)

    documents: OrderedDict[str, list[PageGroup]] = OrderedDict()
    for doc_id, page_group in page_groups[:max_pages]:
        documents.setdefault(doc_id, []).append(page_group)
    return [DocumentGroup(document_id=d, pages=p) for d, p in documents.items()]


class _CandidatePool:
    """Chunks keyed by id, remembering the best similarity seen for each."""

    def __init__(self) -> None:
        self.items: dict[str, Chunk] = {}

    def __contains__(self, chunk_id: str) -> bool:
        return chunk_id in self.items

    def add(self, chunk: Chunk, similarity: float | None = None, source: str | None = None) -> None:
        if similarity is not None:
            chunk = chunk.model_copy(update={"similarity": similarity})
        if source:
            chunk = chunk.model_copy(update={"metadata": {**chunk.metadata, "source": source}})
        existing = self.items.get(chunk.id)
        if existing is None or _similarity(chunk) > _similarity(existing):
            self.items[chunk.id] = chunk

    def add_new(self, chunk: Chunk, similarity: float, source: str) -> None:
        if chunk.id not in self.items:
            self.add(chunk, similarity, source)

    def ranked(self, limit: int | None = None) -> list[Chunk]:
        ranked = _by_similarity(self.items.values())
        return ranked if limit is None else ranked[:limit]


class SmartRetriever:
    """Choose and run a retrieval strategy for an analyzed query.

    Args:
        settings: Application settings.
        invoker: Model invocation layer (embeds the expanded query).
        store: Vector store exposing ``search`` and ``list_chunks``.
        reranker: Optional reranker, a heuristic ``Reranker`` by default.
    """

    def __init__(
        self,
        settings: Settings,
        invoker: ModelInvoker,
        store,
        reranker: Reranker | None = None,
    ) -> None:
        self.settings = settings
        self.invoker = invoker
        self.store = store
        self.reranker = reranker or Reranker()

    async def _search(
        self, embedding: list[float], document_ids: list[str], top_k: int, floor: float
    ) -> list[Chunk]:
        return await asyncio.to_thread(
            self.store.search, embedding, document_ids, top_k, floor
        )

    async def _list(self, document_ids: list[str], pages=None) -> list[Chunk]:
        return await asyncio.to_thread(self.store.list_chunks, document_ids, pages)

    async def _neighbors(
        self, pool: _CandidatePool, anchors: list[Chunk], radius: int, factor: float, per_anchor: int, source: str
    ) -> None:
        for anchor in anchors:
            pages = range(max(1, anchor.page_number - radius), anchor.page_number + radius + 1)
            neighbors = await self._list([anchor.document_id], list(pages))
            added = 0
            for neighbor in neighbors:
                if neighbor.id == anchor.id or neighbor.id in pool:
                    continue
                pool.add(neighbor, _similarity(anchor) * factor, source)
                added += 1
                if added >= per_anchor:
                    break

    async def _narrative(self, embedding, ids, keywords, lexical) -> list[Chunk]:
        pool = _CandidatePool()
        early = [c for c in await self._list(ids, range(1, 26))][:12]
        for chunk in early:
            pool.add(chunk, 0.65, "narrative_foundation")
        for chunk in (await self._search(embedding, ids, 100, 0.35))[:30]:
            pool.add(chunk, source="vector_match")
        await self._neighbors(pool, pool.ranked(10), 1, 0.8, 4, "sequential_context")
        if lexical is not None:
            for chunk in lexical.exact_matches(keywords[:4])[:32]:
                pool.add_new(chunk, KEYWORD_SIMILARITY, "keyword_match")
        return pool.ranked(50)

    async def _analytical(self, embedding, ids) -> list[Chunk]:
        relevant = await self._search(embedding, ids, 150, 0.30)
        page_groups: OrderedDict[int, list[Chunk]] = OrderedDict()
        for chunk in relevant:
            page_groups.setdefault(chunk.page_number // 8, []).append(chunk)
        pool = _CandidatePool()
        for group in page_groups.values():
            for chunk in group[:2]:
                pool.add(chunk, source="page_group_diversity")
        for chunk in [c for c in relevant if _similarity(c) >= 0.65][:15]:
            pool.add(chunk, source="high_confidence")
        return pool.ranked(45)

    async def _factual(self, embedding, ids, keywords, lexical) -> list[Chunk]:
        pool = _CandidatePool()
        for chunk in await self._search(embedding, ids, 80, 0.40):
            pool.add(chunk, source="vector_match")
        if lexical is not None:
            for chunk in lexical.exact_matches(keywords[:5])[:50]:
                existing = pool.items.get(chunk.id)
                pool.add(chunk, max(_similarity(existing) if existing else 0.0, 0.55), "keyword_exact")
        await self._neighbors(pool, pool.ranked(8), 2, 0.75, 3, "factual_support")
        return pool.ranked(40)

    async def _thematic(self, embedding, ids) -> list[Chunk]:
        pool = _CandidatePool()
        for chunk in await self._search(embedding, ids, 120, 0.32):
            pool.add(chunk, source="vector_match")
        all_chunks = await self._list(ids)
        if all_chunks:
            max_page = max(c.page_number for c in all_chunks)
            sections = [
                (1, int(max_page * 0.15)),
                (int(max_page * 0.25), int(max_page * 0.35)),
                (int(max_page * 0.45), int(max_page * 0.55)),
                (int(max_page * 0.65), int(max_page * 0.75)),
                (int(max_page * 0.85), max_page),
            ]
            for start, end in sections:
                in_section = [c for c in all_chunks if start <= c.page_number <= end]
                for chunk in in_section[:6]:
                    pool.add_new(chunk, 0.45, "section_sample")
        return pool.ranked(50)

    async def _hybrid(self, embedding, ids, keywords, lexical) -> list[Chunk]:
        pool = _CandidatePool()
        for chunk in (await self._search(embedding, ids, 100, 0.35))[:35]:
            pool.add(chunk, source="vector_match")
        if lexical is not None:
            for chunk in lexical.exact_matches(keywords[:3])[:24]:
                pool.add_new(chunk, KEYWORD_SIMILARITY, "keyword")
        return pool.ranked(45)

    async def _balanced(
        self, embedding, ids, per_doc: int, total: int, ensure_all: bool
    ) -> list[Chunk]:
        per_doc_hits = await asyncio.gather(
            *(self._search(embedding, [doc_id], per_doc, 0.3) for doc_id in ids)
        )
        chunks = _by_similarity(c for hits in per_doc_hits for c in hits)
        represented = {c.document_id for c in chunks}
        missing = [doc_id for doc_id in ids if doc_id not in represented]
        if ensure_all and missing:
            logger.warning(f"{len(missing)} document(s) unrepresented, fetching fallback chunks")
            fallback = await asyncio.gather(
                *(self._search(embedding, [doc_id], 5, SIMILARITY_FLOOR) for doc_id in missing)
            )
            # Fallback chunks are kept even past the total limit
            return chunks[:total] + [c for hits in fallback for c in hits]
        return chunks[:total]

    async def _comparative(self, embedding, ids) -> list[Chunk]:
        pool = _CandidatePool()
        for chunk in await self._balanced(embedding, ids, 20, 80, ensure_all=True):
            pool.add(chunk, source="balanced")
        for doc_id in ids:
            doc_specific = await self._search(embedding, [doc_id], 15, 0.40)
            for chunk in doc_specific[:8]:
                pool.add_new(chunk, _similarity(chunk), "doc_specific")
        return pool.ranked()

    async def _multi_document(self, embedding, ids, query_type: QueryType) -> list[Chunk]:
        pool = _CandidatePool()
        for chunk in await self._balanced(embedding, ids, 15, 60, ensure_all=True):
            pool.add(chunk, source="balanced")
        expansion = 20 if query_type == QueryType.THEMATIC else 15
        for chunk in (await self._search(embedding, ids, 50, 0.35))[:expansion]:
            pool.add_new(chunk, _similarity(chunk), "expansion")
        return pool.ranked()

    def _quality_filter(self, chunks: list[Chunk], ids: list[str]) -> list[Chunk]:
        allowed = set(ids)
        return [
            c
            for c in chunks
            if c.document_id in allowed
            and len(c.text.strip()) >= MIN_RESULT_CHARS
            and _similarity(c) >= SIMILARITY_FLOOR
        ]

    async def retrieve(
        self,
        analysis: QueryAnalysis,
        document_ids: list[str],
        use_reranking: bool = True,
        use_keyword_search: bool = True,
    ) -> RetrievalResult:
        """Retrieve ranked, attributed chunks for an analyzed query.

        Args:
            analysis: Output of ``QueryAnalyzer.analyze_query``.
            document_ids: Corpus to search; nothing outside it is returned.
            use_reranking: Apply the heuristic reranker to the candidates.
            use_keyword_search: Widen the candidates with a BM25 pass.

        Returns:
            RetrievalResult; an empty chunk list is a valid outcome.

        Raises:
            ModelInvocationError: The query could not be embedded by any model.
        """
        ids = list(dict.fromkeys(document_ids))
        if not ids:
            return RetrievalResult(chunks=[], strategy="no_documents", confidence=0.0)

        embedding = await self.invoker.require(Task.EMBED, analysis.expanded_query)
        lexical = BM25Store(await self._list(ids)) if use_keyword_search else None
        keywords = analysis.keywords or []
        multi_doc = len(ids) > 1

        if multi_doc and (
            analysis.is_multi_document_query or analysis.query_type == QueryType.COMPARATIVE
        ):
            candidates = await self._comparative(embedding, ids)
            strategy, limit = "comparative_balanced", COMPARATIVE_LIMIT
        elif multi_doc:
            candidates = await self._multi_document(embedding, ids, analysis.query_type)
            strategy, limit = "multi_document", MULTI_DOC_LIMIT
        elif analysis.query_type == QueryType.NARRATIVE:
            candidates = await self._narrative(embedding, ids, keywords, lexical)
            strategy, limit = "narrative_contextual", SINGLE_DOC_LIMIT
        elif analysis.query_type == QueryType.ANALYTICAL:
            candidates = await self._analytical(embedding, ids)
            strategy, limit = "analytical_diverse", SINGLE_DOC_LIMIT
        elif analysis.query_type == QueryType.FACTUAL:
            candidates = await self._factual(embedding, ids, keywords, lexical)
            strategy, limit = "factual_precision", SINGLE_DOC_LIMIT
        elif analysis.query_type == QueryType.THEMATIC:
            candidates = await self._thematic(embedding, ids)
            strategy, limit = "thematic_comprehensive", SINGLE_DOC_LIMIT
        else:
            candidates = await self._hybrid(embedding, ids, keywords, lexical)
            strategy, limit = "hybrid_adaptive", SINGLE_DOC_LIMIT

        if lexical is not None:
            query = f"{analysis.search_query} {' '.join(keywords)}"
            keyword_hits = lexical.search(query, top_k=KEYWORD_TOP_K)
            seen = {c.id for c in candidates}
            if any(h.id not in seen for h in keyword_hits):
                keyword_hits = [
                    h if h.id in seen else h.model_copy(update={"similarity": KEYWORD_SIMILARITY})
                    for h in keyword_hits
                ]
                candidates = reciprocal_rank_fusion(candidates, keyword_hits)
                strategy += "_keyword"

        candidates = self._quality_filter(candidates, ids)

        if use_reranking and candidates:
            ranked = self.reranker.rerank(analysis.search_query, candidates, top_k=len(candidates))
            strategy += "_reranked"
        else:
            ranked = candidates

        if multi_doc:
            chunks = ensure_cross_document_balance(ranked, ids, limit)
            confidence = multi_document_confidence(chunks, ids)
            if strategy.startswith("multi_document"):
                confidence *= 0.85
        else:
            chunks = ranked[:limit]
            confidence = single_document_confidence(chunks)

        logger.info(
            f"Retrieved {len(chunks)} chunks from {len(ids)} document(s) | "
            f"{strategy} | confidence {confidence:.2f}"
        )
        return RetrievalResult(chunks=chunks, strategy=strategy, confidence=confidence)
