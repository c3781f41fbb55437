"""Data models for the library pipeline.

This module defines Pydantic models for documents, chunks, analyzed
queries and the results produced by retrieval and reasoning.
"""

from enum import Enum
from typing import Any, Literal

from pydantic import BaseModel, Field


class Language(str, Enum):
    AR = "ar"
    EN = "en"
    MIXED = "mixed"


class QueryType(str, Enum):
    NARRATIVE = "narrative"
    ANALYTICAL = "analytical"
    FACTUAL = "factual"
    THEMATIC = "thematic"
    COMPARATIVE = "comparative"


class EmbeddingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


Relevance = Literal["high", "medium", "low"]


class Chunk(BaseModel):
    """A bounded slice of one page's text, the unit of retrieval.

    Attributes:
        id: Unique chunk identifier.
        document_id: Document this chunk belongs to.
        page_number: 1-based page number in the source PDF.
        text: Chunk text content.
        embedding: Embedding vector of ``text``.
        similarity: Query-time similarity score, never persisted.
        corrected: Set once the correction loop has rewritten the text.
        metadata: In-page chunk index, length, timestamp and extraction facts.
    """

    id: str
    document_id: str
    page_number: int = Field(ge=1)
    text: str
    embedding: list[float] = Field(default_factory=list)
    similarity: float | None = None
    corrected: bool = False
    metadata: dict[str, Any] = Field(default_factory=dict)


class Document(BaseModel):
    """Registry row for one uploaded PDF.

    Attributes:
        id: Document identifier.
        display_name: Human readable name.
        total_pages: Page count, set once before page processing starts.
        embedding_status: Ingestion lifecycle state.
        chunks_count: Number of chunks stored for the document.
        is_selected: Whether the document belongs to the active corpus.
        language: Dominant language detected during ingestion.
    """

    id: str
    display_name: str
    total_pages: int | None = None
    embedding_status: EmbeddingStatus = EmbeddingStatus.PENDING
    chunks_count: int = 0
    is_selected: bool = True
    language: Language | None = None


class QueryAnalysis(BaseModel):
    original_query: str
    translated_query: str | None = None
    detected_language: Language
    search_query: str
    expanded_query: str
    query_type: QueryType
    keywords: list[str] = Field(default_factory=list)
    is_multi_document_query: bool = False


class RetrievalResult(BaseModel):
    """Ranked chunks plus the advisory signals describing how they were found."""

    chunks: list[Chunk] = Field(default_factory=list)
    strategy: str
    confidence: float = Field(ge=0.0, le=1.0)


class PageGroup(BaseModel):
    page_number: int
    chunks: list[Chunk]
    best_similarity: float
    relevance: Relevance


class DocumentGroup(BaseModel):
    document_id: str
    pages: list[PageGroup]


class ReasoningStep(BaseModel):
    """One hop of multi-hop reasoning."""

    step_number: int
    question: str
    answer: str
    chunks: list[Chunk] = Field(default_factory=list)
    confidence: float = 0.0
    used_general_knowledge: bool = False


class CompositeResult(BaseModel):
    """Output of multi-hop reasoning.

    Attributes:
        final_answer: Synthesized answer across all hops.
        steps: Hops in execution order.
        confidence: Advisory [0, 1] score.
        strategy: "multi-hop" or "hybrid-multi-hop".
        formatted: Markdown rendering in the requested response language.
    """

    final_answer: str
    steps: list[ReasoningStep]
    confidence: float = Field(ge=0.0, le=1.0)
    strategy: str
    formatted: str


class SweepReport(BaseModel):
    """Counts from one maintenance pass over stored chunks.

    Attributes:
        total: Chunks examined.
        candidates: Chunks matching a corruption rule (or all, when aggressive).
        corrected: Chunks whose text and embedding were rewritten.
        rejected: Candidates left as they were (no accepted or no needed change).
        skipped: Chunks with no corruption signal.
        failed: Candidates that raised during correction or re-embedding.
    """

    total: int = 0
    candidates: int = 0
    corrected: int = 0
    rejected: int = 0
    skipped: int = 0
    failed: int = 0


class AnswerResult(BaseModel):
    """Answer handed back to the presentation layer."""

    answer: str
    sources: list[str] = Field(default_factory=list)
    strategy: str
    confidence: float = 0.0
    reused_context: bool = False
    chunks: list[Chunk] = Field(default_factory=list)
