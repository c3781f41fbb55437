"""Shared fixtures for maktaba tests.

Model and storage collaborators are replaced with deterministic fakes:
- FakeGenerator routes on prompt text and can be told to fail per model
- FakeEmbedder returns hash-seeded vectors, or pinned vectors per text
- FakePdf serves native text per page and can mark pages unreadable
FAISS and the sqlite registry are real and live in ``tmp_path``.
"""

import hashlib
import re

import numpy as np
import pytest

from maktaba.config import Settings
from maktaba.models import Chunk, Language, QueryAnalysis, QueryType
from maktaba.rag.document_store import DocumentRegistry
from maktaba.rag.faiss_store import FaissStore
from maktaba.rag.invocation import ModelInvoker

DIM = 8
GEN_MODELS = ["gen-small", "gen-medium", "gen-large"]
VISION_MODELS = ["vision-small", "vision-large"]
EMBED_MODELS = ["embed-a"]


def hashed_vector(text: str, dim: int = DIM) -> list[float]:
    """Deterministic pseudo-random vector derived from the text."""
    seed = int.from_bytes(hashlib.sha256(text.encode("utf-8")).digest()[:8], "big")
    rng = np.random.default_rng(seed)
    return rng.standard_normal(dim).astype(np.float32).tolist()


def vector_with_similarity(similarity: float, dim: int = DIM) -> list[float]:
    """Unit vector whose cosine similarity with ``axis_vector()`` is ``similarity``."""
    vec = [0.0] * dim
    vec[0] = similarity
    vec[1] = float(np.sqrt(max(0.0, 1.0 - similarity**2)))
    return vec


def axis_vector(dim: int = DIM) -> list[float]:
    vec = [0.0] * dim
    vec[0] = 1.0
    return vec


def _between(prompt: str, start: str, end: str) -> str | None:
    match = re.search(re.escape(start) + r"(.*?)" + re.escape(end), prompt, re.DOTALL)
    return match.group(1) if match else None


class FakeGenerator:
    """Stand-in for GeneratorClient.

    ``failing`` maps model ids to the exception they raise. ``scripted``
    maps a prompt marker to a fixed response, or to a list consumed in
    order. Unscripted prompts get sensible defaults.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self.image_calls: list[tuple[str, bytes]] = []
        self.failing: dict[str, Exception] = {}
        self.scripted: dict[str, object] = {}
        self.per_model: dict[str, str] = {}
        self.ocr_text = ""
        self.ocr_by_image: dict[bytes, str] = {}

    def _scripted(self, prompt: str) -> str | None:
        for marker, response in self.scripted.items():
            if marker in prompt:
                if isinstance(response, list):
                    return response.pop(0) if response else "DONE"
                return response
        return None

    def generate(self, prompt: str, model_id: str, temperature=None, max_new_tokens: int = 2048) -> str:
        self.calls.append((prompt, model_id))
        if model_id in self.failing:
            raise self.failing[model_id]
        if model_id in self.per_model:
            return self.per_model[model_id]
        scripted = self._scripted(prompt)
        if scripted is not None:
            return scripted
        if "Translate the following question" in prompt:
            return "What does the book say about patience?"
        if "Classify the intent" in prompt:
            return "factual"
        if "search keywords" in prompt:
            return "patience, virtue, endurance"
        original = _between(prompt, "Original text:\n", "\n\nCorrected text:")
        if original is None:
            original = _between(prompt, "النص الأصلي:\n", "\n\nالنص المصحح:")
        if original is not None:
            return original
        return "Generated answer."

    def read_image(self, prompt: str, image_png: bytes, model_id: str) -> str:
        self.image_calls.append((model_id, image_png))
        if model_id in self.failing:
            raise self.failing[model_id]
        return self.ocr_by_image.get(image_png, self.ocr_text)

    def prompts(self, marker: str) -> list[str]:
        return [p for p, _ in self.calls if marker in p]


class FakeEmbedder:
    def __init__(self, dim: int = DIM) -> None:
        self.dim = dim
        self.pinned: dict[str, list[float]] = {}
        self.calls: list[str] = []
        self.failures: list[Exception] = []

    def embed_query(self, text: str, model_id: str) -> list[float]:
        self.calls.append(text)
        if self.failures:
            raise self.failures.pop(0)
        return self.pinned.get(text, hashed_vector(text, self.dim))


class FakePdf:
    """In-memory page source with the PdfDocument interface."""

    def __init__(self, pages: list[str], unreadable: set[int] | None = None) -> None:
        self.pages = pages
        self.unreadable = unreadable or set()
        self.page_count = len(pages)
        self.closed = False

    def native_text(self, page_number: int) -> str:
        if page_number in self.unreadable:
            raise ValueError(f"corrupt page {page_number}")
        return self.pages[page_number - 1]

    def render_png(self, page_number: int, scale: float, rotation: int = 0) -> bytes:
        if page_number in self.unreadable:
            raise ValueError(f"corrupt page {page_number}")
        return f"page-{page_number}-rot-{rotation}".encode()

    def close(self) -> None:
        self.closed = True


@pytest.fixture
def settings(tmp_path):
    return Settings(
        watsonx_gen_models=list(GEN_MODELS),
        watsonx_vision_models=list(VISION_MODELS),
        watsonx_embed_models=list(EMBED_MODELS),
        faiss_index_path=str(tmp_path / "index.faiss"),
        faiss_meta_path=str(tmp_path / "meta.json"),
        registry_path=str(tmp_path / "library.db"),
        embedding_dim=DIM,
        chunk_size=200,
        chunk_overlap=20,
        page_delay_seconds=0.0,
        rate_limit_backoff_seconds=0.0,
        correction_batch_delay=0.0,
        correction_chunk_delay=0.0,
    )


@pytest.fixture
def generator():
    return FakeGenerator()


@pytest.fixture
def embedder():
    return FakeEmbedder()


@pytest.fixture
def invoker(settings, generator, embedder):
    return ModelInvoker(settings, generator=generator, embedder=embedder)


@pytest.fixture
def store(settings):
    return FaissStore(settings)


@pytest.fixture
def registry(settings):
    return DocumentRegistry(settings.registry_path)


def make_chunk(
    document_id: str,
    page_number: int,
    text: str,
    similarity: float = 0.5,
    index: int = 0,
) -> Chunk:
    """Chunk whose embedding sits at ``similarity`` from ``axis_vector()``."""
    return Chunk(
        id=f"{document_id}-p{page_number}-c{index}",
        document_id=document_id,
        page_number=page_number,
        text=text,
        embedding=vector_with_similarity(similarity),
        metadata={"chunk_index_in_page": index},
    )


def make_analysis(
    query: str = "What does the book say about patience?",
    query_type: QueryType = QueryType.FACTUAL,
    keywords: list[str] | None = None,
    multi_document: bool = False,
) -> QueryAnalysis:
    keywords = keywords if keywords is not None else ["patience"]
    return QueryAnalysis(
        original_query=query,
        detected_language=Language.EN,
        search_query=query,
        expanded_query=f"{query} {' '.join(keywords)}".strip(),
        query_type=query_type,
        keywords=keywords,
        is_multi_document_query=multi_document,
    )
