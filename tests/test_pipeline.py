"""Tests for the ingestion and query pipelines."""

import dataclasses

import pytest

from conftest import FakePdf, axis_vector, make_chunk
from maktaba.exceptions import ExtractionError, StorageError
from maktaba.models import EmbeddingStatus, Language
from maktaba.rag.followup import PreviousTurn
from maktaba.rag.pipeline import IngestionPipeline, QueryPipeline

ENGLISH_PAGE = (
    "Page {n} discusses the virtues of patience and gratitude among the travelling "
    "merchants of the medieval period, and how they kept faith on the road."
)
ARABIC_PAGE = "هذه الصفحة تتحدث عن فضيلة الصبر عند التجار المسافرين في العصور الوسطى"
CORRUPT_PAGE = "ذكر ال كتاب في الفصل الأول من هذا المؤلف الكبير"
CORRECTED_PAGE = "ذكر الكتاب في الفصل الأول من هذا المؤلف الكبير"
EXPANSION = "patience virtue endurance"


@pytest.fixture
def book(tmp_path):
    path = tmp_path / "book.pdf"
    path.write_bytes(b"%PDF-1.4 placeholder")
    return path


def ingestion(settings, invoker, store, registry, pdf):
    return IngestionPipeline(settings, invoker, store, registry, open_pdf=lambda data: pdf)


@pytest.mark.asyncio
async def test_unreadable_page_is_skipped(settings, invoker, store, registry, book):
    pdf = FakePdf([ENGLISH_PAGE.format(n=n) for n in range(1, 11)], unreadable={4})
    progress = []

    stored = await ingestion(settings, invoker, store, registry, pdf).embed_document_in_batches(
        "doc1", book, on_progress=lambda done, total: progress.append((done, total))
    )

    document = registry.get("doc1")
    assert stored == 9
    assert document.embedding_status == EmbeddingStatus.COMPLETED
    assert document.total_pages == 10
    assert document.chunks_count == 9
    assert document.language == Language.EN
    assert document.display_name == "book.pdf"
    assert 4 not in {c.page_number for c in store.list_chunks(["doc1"])}
    assert progress[-1] == (10, 10)
    assert len(progress) == 10
    assert pdf.closed


@pytest.mark.asyncio
async def test_sparse_page_goes_through_ocr(settings, invoker, store, registry, generator, book):
    pdf = FakePdf(["Chapter One  " + "." * 27])
    generator.ocr_by_image = {b"page-1-rot-0": ARABIC_PAGE}

    await ingestion(settings, invoker, store, registry, pdf).embed_document_in_batches("doc1", book)

    [chunk] = store.list_chunks(["doc1"])
    assert generator.image_calls
    assert chunk.text == ARABIC_PAGE
    assert chunk.metadata["extraction_method"] == "ocr"
    assert chunk.metadata["is_image_heavy"] is True
    assert chunk.metadata["used_rotation"] is False
    assert registry.get("doc1").language == Language.AR


@pytest.mark.asyncio
async def test_rotated_ocr_is_kept_when_it_reads_more(settings, invoker, store, registry, generator, book):
    pdf = FakePdf([""])
    generator.ocr_by_image = {b"page-1-rot-0": "", b"page-1-rot-90": ARABIC_PAGE}

    await ingestion(settings, invoker, store, registry, pdf).embed_document_in_batches("doc1", book)

    [chunk] = store.list_chunks(["doc1"])
    assert chunk.metadata["used_rotation"] is True


@pytest.mark.asyncio
async def test_chunk_metadata(settings, invoker, store, registry, book):
    pdf = FakePdf([ENGLISH_PAGE.format(n=1)])

    await ingestion(settings, invoker, store, registry, pdf).embed_document_in_batches(
        "doc1", book, display_name="Merchants of the Road"
    )

    [chunk] = store.list_chunks(["doc1"])
    assert chunk.id == "doc1-p1-c0"
    assert chunk.page_number == 1
    assert chunk.metadata["chunk_index_in_page"] == 0
    assert chunk.metadata["length"] == len(chunk.text)
    assert chunk.metadata["language"] == "en"
    assert chunk.metadata["extraction_method"] == "native"
    assert "timestamp" in chunk.metadata
    assert registry.get("doc1").display_name == "Merchants of the Road"


@pytest.mark.asyncio
async def test_arabic_chunk_is_embedded_from_corrected_text(
    settings, invoker, store, registry, generator, embedder, book
):
    pdf = FakePdf([CORRUPT_PAGE])
    generator.scripted = {"النص الأصلي": CORRECTED_PAGE}

    stored = await ingestion(settings, invoker, store, registry, pdf).embed_document_in_batches("doc1", book)

    [chunk] = store.list_chunks(["doc1"])
    assert stored == 1
    assert chunk.text == CORRECTED_PAGE
    assert chunk.corrected
    assert chunk.metadata["length"] == len(CORRECTED_PAGE)
    assert CORRECTED_PAGE in embedder.calls
    assert CORRUPT_PAGE not in embedder.calls


@pytest.mark.asyncio
async def test_correction_never_shrinks_chunk_below_minimum(
    settings, invoker, store, registry, generator, book
):
    pdf = FakePdf([""])
    generator.ocr_by_image = {b"page-1-rot-0": "الصالة ، نعم"}
    generator.scripted = {"النص الأصلي": "صلاة، نعم"}

    stored = await ingestion(settings, invoker, store, registry, pdf).embed_document_in_batches("doc1", book)

    [chunk] = store.list_chunks(["doc1"])
    assert stored == 1
    assert chunk.text == "الصلاة ، نعم"
    assert chunk.corrected
    assert registry.get("doc1").embedding_status == EmbeddingStatus.COMPLETED


class ShorteningCorrector:
    async def correct_chunks_batch(self, chunks, language=None, aggressive=False, persist=False):
        return [chunks[0].model_copy(update={"text": "قصير", "corrected": True}), *chunks[1:]]


@pytest.mark.asyncio
async def test_short_chunk_is_dropped_without_losing_the_page(invoker, store, registry, settings, book):
    settings = dataclasses.replace(settings, chunk_size=60, chunk_overlap=0)
    pdf = FakePdf([f"{CORRUPT_PAGE}\n\n{CORRECTED_PAGE}"])
    pipeline = IngestionPipeline(
        settings, invoker, store, registry, corrector=ShorteningCorrector(), open_pdf=lambda data: pdf
    )

    stored = await pipeline.embed_document_in_batches("doc1", book)

    assert stored == 1
    assert [c.id for c in store.list_chunks(["doc1"])] == ["doc1-p1-c1"]
    assert registry.get("doc1").embedding_status == EmbeddingStatus.COMPLETED


@pytest.mark.asyncio
async def test_document_without_text_fails(settings, invoker, store, registry, book):
    pdf = FakePdf(["", "   "])

    with pytest.raises(ExtractionError):
        await ingestion(settings, invoker, store, registry, pdf).embed_document_in_batches("doc1", book)

    assert registry.get("doc1").embedding_status == EmbeddingStatus.FAILED
    assert store.list_chunks(["doc1"]) == []
    assert pdf.closed


@pytest.mark.asyncio
async def test_missing_source_fails(settings, invoker, store, registry, tmp_path):
    pdf = FakePdf([ENGLISH_PAGE.format(n=1)])

    with pytest.raises(ExtractionError):
        await ingestion(settings, invoker, store, registry, pdf).embed_document_in_batches(
            "doc1", tmp_path / "missing.pdf"
        )

    assert registry.get("doc1").embedding_status == EmbeddingStatus.FAILED


@pytest.mark.asyncio
async def test_failed_document_can_be_reingested(settings, invoker, store, registry, book):
    with pytest.raises(ExtractionError):
        await ingestion(settings, invoker, store, registry, FakePdf([""])).embed_document_in_batches(
            "doc1", book
        )

    stored = await ingestion(
        settings, invoker, store, registry, FakePdf([ENGLISH_PAGE.format(n=1)])
    ).embed_document_in_batches("doc1", book)

    assert stored == 1
    assert registry.get("doc1").embedding_status == EmbeddingStatus.COMPLETED


@pytest.mark.asyncio
async def test_rate_limited_embedding_is_retried_once(settings, invoker, store, registry, embedder, book):
    pdf = FakePdf([ENGLISH_PAGE.format(n=1)])
    embedder.failures = [RuntimeError("429 Too Many Requests")]

    stored = await ingestion(settings, invoker, store, registry, pdf).embed_document_in_batches("doc1", book)

    assert stored == 1
    assert len(embedder.calls) == 2


@pytest.mark.asyncio
async def test_delete_document(settings, invoker, store, registry, book):
    pipeline = ingestion(settings, invoker, store, registry, FakePdf([ENGLISH_PAGE.format(n=1)]))
    await pipeline.embed_document_in_batches("doc1", book)

    removed = await pipeline.delete_document("doc1")

    assert removed == 1
    assert store.list_chunks(["doc1"]) == []
    with pytest.raises(StorageError):
        registry.get("doc1")


def completed_document(registry, document_id="a", name="Book of Patience", language=Language.EN):
    registry.register(document_id, name)
    registry.set_status(document_id, EmbeddingStatus.PROCESSING)
    registry.set_status(document_id, EmbeddingStatus.COMPLETED)
    registry.set_language(document_id, language)


@pytest.fixture
def query_pipeline(settings, invoker, store, registry):
    return QueryPipeline(settings, invoker, store, registry)


@pytest.fixture
def library(registry, store, embedder):
    completed_document(registry)
    store.upsert_chunks(
        [make_chunk("a", p, f"Notes on river journeys, page {p}.", 0.8) for p in range(1, 4)]
    )
    embedder.pinned[f"Why did the author praise patience? {EXPANSION}"] = axis_vector()


@pytest.mark.asyncio
async def test_answer_cites_sources(query_pipeline, library, generator):
    result = await query_pipeline.answer("Why did the author praise patience?")

    assert result.answer == "Generated answer."
    assert result.strategy.startswith("factual_precision")
    assert "Book of Patience, p. 1" in result.sources
    [prompt] = generator.prompts("research assistant")
    assert "[Book of Patience, p. 1 | high]" in prompt
    assert "Answer in English" in prompt


@pytest.mark.asyncio
async def test_no_relevant_information_skips_generation(query_pipeline, registry, store, embedder, generator):
    completed_document(registry)
    store.upsert_chunks(
        [make_chunk("a", p, f"Notes on river journeys, page {p}.", 0.1) for p in range(1, 4)]
    )
    embedder.pinned[f"Why did the author praise patience? {EXPANSION}"] = axis_vector()

    result = await query_pipeline.answer("Why did the author praise patience?")

    assert "could not find relevant information" in result.answer
    assert result.confidence == 0.0
    assert result.sources == []
    assert generator.prompts("research assistant") == []


@pytest.mark.asyncio
async def test_no_documents(query_pipeline, generator, embedder):
    result = await query_pipeline.answer("What does the book say about patience?")

    assert result.strategy == "no_documents"
    assert generator.calls == []
    assert embedder.calls == []


@pytest.mark.asyncio
async def test_arabic_question_gets_arabic_reply(query_pipeline):
    result = await query_pipeline.answer("ماذا يقول الكتاب عن الصبر؟")

    assert result.answer.startswith("لا توجد مستندات")


@pytest.mark.asyncio
async def test_documents_still_processing_are_not_searched(query_pipeline, registry):
    registry.register("b", "Unfinished")
    registry.set_status("b", EmbeddingStatus.PROCESSING)

    result = await query_pipeline.answer("What does the book say about patience?", ["b", "unknown"])

    assert result.strategy == "no_documents"


@pytest.mark.asyncio
async def test_follow_up_reuses_previous_chunks(query_pipeline, library, embedder):
    chunks = [make_chunk("a", 2, "Notes on river journeys, page 2.").model_copy(update={"similarity": 0.8})]
    previous = PreviousTurn(
        question="Why did the author praise patience?",
        answer="Because it is half of faith.",
        chunks=chunks,
        strategy="factual_precision_reranked",
        confidence=0.8,
    )

    result = await query_pipeline.answer("Tell me more", previous_turn=previous)

    assert result.reused_context
    assert result.strategy == "factual_precision_reranked"
    assert result.sources == ["Book of Patience, p. 2"]
    assert embedder.calls == []


@pytest.mark.asyncio
async def test_multi_hop_for_complex_questions(query_pipeline, library, generator):
    generator.scripted = {"next most important sub-question": "DONE"}

    result = await query_pipeline.answer("Why did the author praise patience?", use_multi_hop=True)

    assert result.strategy == "multi-hop"
    assert result.answer.startswith("## Multi-Hop Analysis")
    assert "Book of Patience, p. 1" in result.sources


@pytest.mark.asyncio
async def test_multi_hop_failure_falls_back_to_single_hop(query_pipeline, library, generator):
    async def broken(*args, **kwargs):
        raise RuntimeError("reasoning failed")

    query_pipeline.reasoner.reason = broken

    result = await query_pipeline.answer("Why did the author praise patience?", use_multi_hop=True)

    assert result.strategy.startswith("factual_precision")
    assert result.answer == "Generated answer."


@pytest.mark.asyncio
async def test_simple_question_skips_multi_hop(query_pipeline, library, generator):
    result = await query_pipeline.answer("What is patience?", use_multi_hop=True)

    assert not result.strategy.endswith("multi-hop")
    assert generator.prompts("next most important sub-question") == []
