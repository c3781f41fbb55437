"""RAG pipeline for document ingestion and question answering.

This module provides the IngestionPipeline and QueryPipeline classes
for turning PDFs into stored chunks and answering questions over them.
"""

import asyncio
import logging
from collections import Counter
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from maktaba.config import Settings
from maktaba.exceptions import ExtractionError, StorageError
from maktaba.models import AnswerResult, Chunk, Document, EmbeddingStatus, Language
from maktaba.rag.chunker import chunk_page
from maktaba.rag.corrector import TextCorrector
from maktaba.rag.cos_client import COSClient
from maktaba.rag.document_store import DocumentRegistry
from maktaba.rag.followup import FollowUpDetector, PreviousTurn
from maktaba.rag.invocation import ModelInvoker, Task
from maktaba.rag.language import arabic_ratio, detect_language
from maktaba.rag.multi_hop import MultiHopReasoner, is_complex_query
from maktaba.rag.pdf_extractor import ARABIC_PAGE_RATIO, PageExtractor, PageText, PdfDocument
from maktaba.rag.query_analyzer import QueryAnalyzer
from maktaba.rag.retrieval import SmartRetriever, group_results

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int], None]

NO_INFORMATION = {
    Language.AR: "لم أجد معلومات ذات صلة بهذا السؤال في المستندات المحددة.",
    Language.EN: "I could not find relevant information about this question in the selected documents.",
}
NO_DOCUMENTS = {
    Language.AR: "لا توجد مستندات جاهزة للبحث. أضف كتابًا أو حدد مستندًا أولًا.",
    Language.EN: "There are no documents ready to search. Ingest or select a document first.",
}
LOW_CONFIDENCE = 0.5


class IngestionPipeline:
    """Pipeline for ingesting and indexing documents.

    Pages are processed one at a time: extraction (native text or vision
    OCR), optional inline correction of Arabic pages, chunking, per-chunk
    embedding, and storage. A page that fails is skipped; a document that
    yields no chunk at all is marked failed.
    """

    def __init__(
        self,
        settings: Settings,
        invoker: ModelInvoker,
        store,
        registry: DocumentRegistry,
        cos: COSClient | None = None,
        corrector: TextCorrector | None = None,
        open_pdf: Callable[[bytes], PdfDocument] | None = None,
    ) -> None:
        """Initialize ingestion pipeline.

        Args:
            settings: Application settings.
            invoker: Model invocation layer (OCR, correction, embed).
            store: Vector store the chunks are written to.
            registry: Document registry tracking ingestion status.
            cos: Object storage client for ``s3://`` sources, created on demand.
            corrector: Inline corrector for Arabic pages.
            open_pdf: Factory turning PDF bytes into a page-addressable document.
        """
        self.settings = settings
        self.invoker = invoker
        self.store = store
        self.registry = registry
        self.cos = cos
        self.corrector = corrector or TextCorrector(settings, invoker)
        self.extractor = PageExtractor(settings, invoker)
        self.open_pdf = open_pdf or PdfDocument

    async def _read_source(self, filepath: str | Path) -> bytes:
        source = str(filepath)
        if source.startswith("s3://"):
            if self.cos is None:
                self.cos = COSClient(self.settings)
            return await asyncio.to_thread(self.cos.download, source)
        path = Path(source)
        if not path.is_file():
            raise ExtractionError(f"PDF not found: {path}")
        return await asyncio.to_thread(path.read_bytes)

    def _prepare_document(self, document_id: str, display_name: str) -> Document:
        try:
            document = self.registry.get(document_id)
        except StorageError:
            document = self.registry.register(document_id, display_name)
        self.registry.set_status(document_id, EmbeddingStatus.PROCESSING)
        return document

    async def _embed_chunk(self, text: str) -> list[float] | None:
        result = await self.invoker.invoke(Task.EMBED, text)
        if not result.ok and result.rate_limited:
            logger.warning(
                f"Embedding rate limited, retrying once in "
                f"{self.settings.rate_limit_backoff_seconds}s"
            )
            await asyncio.sleep(self.settings.rate_limit_backoff_seconds)
            result = await self.invoker.invoke(Task.EMBED, text)
        return result.value if result.ok else None

    async def _process_page(self, document_id: str, page: PageText) -> int:
        texts = chunk_page(
            page.text,
            self.settings.chunk_size,
            self.settings.chunk_overlap,
            self.settings.min_chunk_chars,
        )
        timestamp = datetime.now(timezone.utc).isoformat()
        chunks = [
            Chunk(
                id=f"{document_id}-p{page.page_number}-c{idx}",
                document_id=document_id,
                page_number=page.page_number,
                text=text,
                metadata={
                    "chunk_index_in_page": idx,
                    "length": len(text),
                    "timestamp": timestamp,
                    "language": page.language.value,
                    "extraction_method": page.method,
                    "used_rotation": page.used_rotation,
                    "is_image_heavy": page.method == "ocr",
                },
            )
            for idx, text in enumerate(texts)
        ]

        if chunks and arabic_ratio(page.text) > ARABIC_PAGE_RATIO:
            chunks = await self.corrector.correct_chunks_batch(chunks, Language.AR)

        too_short = [c.id for c in chunks if len(c.text.strip()) < self.settings.min_chunk_chars]
        if too_short:
            logger.warning(f"Dropping chunks shorter than {self.settings.min_chunk_chars} characters: {too_short}")
            chunks = [c for c in chunks if c.id not in too_short]

        embedded: list[Chunk] = []
        for chunk in chunks:
            embedding = await self._embed_chunk(chunk.text)
            if embedding is None:
                logger.warning(f"Skipping chunk {chunk.id}: no embedding")
                continue
            embedded.append(
                chunk.model_copy(
                    update={
                        "embedding": embedding,
                        "metadata": {**chunk.metadata, "length": len(chunk.text)},
                    }
                )
            )
        return await asyncio.to_thread(self.store.upsert_chunks, embedded)

    async def embed_document_in_batches(
        self,
        document_id: str,
        filepath: str | Path,
        on_progress: ProgressCallback | None = None,
        display_name: str | None = None,
    ) -> int:
        """Ingest one PDF page by page.

        Args:
            document_id: Registry id of the document.
            filepath: Local path or ``s3://bucket/key`` URI of the PDF.
            on_progress: Called with (pages done, total pages) after each page.
            display_name: Name used when the document is registered here.

        Returns:
            Number of chunks stored.

        Raises:
            ExtractionError: The PDF could not be read or yielded no chunk.
        """
        document = self._prepare_document(
            document_id, display_name or Path(str(filepath)).name
        )
        pdf = None
        try:
            pdf = self.open_pdf(await self._read_source(filepath))
            total_pages = pdf.page_count
            self.registry.set_total_pages(document_id, total_pages)
            # Vectors from an earlier failed attempt are replaced, not merged
            await asyncio.to_thread(self.store.delete_document, document_id)
            logger.info(f"Ingesting {document_id}: {total_pages} pages")

            stored = 0
            languages: Counter = Counter()
            for page_number in range(1, total_pages + 1):
                if page_number > 1:
                    await asyncio.sleep(self.settings.page_delay_seconds)
                try:
                    page = await self.extractor.extract(pdf, page_number, document.language)
                    if page is not None:
                        languages[page.language] += len(page.text)
                        count = await self._process_page(document_id, page)
                        stored += count
                        logger.info(
                            f"Page {page_number}/{total_pages}: {count} chunks ({page.method})"
                        )
                except Exception as e:
                    logger.warning(f"Skipping page {page_number} of {document_id}: {e}")
                if on_progress is not None:
                    on_progress(page_number, total_pages)

            if stored == 0:
                raise ExtractionError(f"No text could be extracted from {document_id}")

            self.registry.set_chunks_count(document_id, stored)
            if languages:
                self.registry.set_language(document_id, languages.most_common(1)[0][0])
            self.registry.set_status(document_id, EmbeddingStatus.COMPLETED)
            logger.info(f"Document {document_id} completed with {stored} chunks")
            return stored
        except Exception as e:
            logger.error(f"Ingestion of {document_id} failed: {e}")
            self.registry.set_status(document_id, EmbeddingStatus.FAILED)
            raise
        finally:
            if pdf is not None:
                pdf.close()

    async def delete_document(self, document_id: str) -> int:
        """Remove a document's vectors and its registry row."""
        removed = await asyncio.to_thread(self.store.delete_document, document_id)
        self.registry.delete(document_id)
        logger.info(f"Deleted document {document_id} ({removed} chunks)")
        return removed


class QueryPipeline:
    """Answer questions over the selected documents.

    Flow: follow-up reuse, then multi-hop reasoning for complex questions
    the caller opted into (falling back to single-hop on any failure),
    then smart retrieval and answer generation.
    """

    def __init__(
        self,
        settings: Settings,
        invoker: ModelInvoker,
        store,
        registry: DocumentRegistry,
        corrector: TextCorrector | None = None,
    ) -> None:
        self.settings = settings
        self.invoker = invoker
        self.registry = registry
        self.analyzer = QueryAnalyzer(invoker)
        self.retriever = SmartRetriever(settings, invoker, store)
        self.corrector = corrector or TextCorrector(settings, invoker, store)
        self.reasoner = MultiHopReasoner(
            settings, invoker, self.analyzer, self.retriever, self.corrector
        )
        self.followup = FollowUpDetector()

    def _documents(self, document_ids: list[str] | None) -> list[Document]:
        if document_ids is None:
            documents = self.registry.list_documents(selected_only=True)
        else:
            documents = []
            for document_id in document_ids:
                try:
                    documents.append(self.registry.get(document_id))
                except StorageError:
                    logger.warning(f"Ignoring unknown document {document_id}")
        return [d for d in documents if d.embedding_status == EmbeddingStatus.COMPLETED]

    @staticmethod
    def _sources(chunks: list[Chunk], names: dict[str, str]) -> list[str]:
        return list(
            dict.fromkeys(
                f"{names.get(c.document_id, c.document_id)}, p. {c.page_number}"
                for c in chunks
            )
        )

    def _answer_prompt(
        self,
        question: str,
        chunks: list[Chunk],
        names: dict[str, str],
        language: Language,
        confidence: float,
    ) -> str:
        sections = []
        for group in group_results(chunks, max_pages=self.settings.top_k):
            name = names.get(group.document_id, group.document_id)
            for page in group.pages:
                body = "\n".join(c.text for c in page.chunks)
                sections.append(f"[{name}, p. {page.page_number} | {page.relevance}]\n{body}")
        context = "\n\n---\n\n".join(sections)

        if language == Language.AR:
            hedge = (
                "الأدلة محدودة، فاذكر بوضوح ما لا تدعمه النصوص.\n"
                if confidence < LOW_CONFIDENCE
                else ""
            )
            return (
                "أنت مساعد بحثي يجيب عن الأسئلة من نصوص الكتب المرفقة فقط.\n"
                "أجب بالعربية، واذكر اسم الكتاب ورقم الصفحة عند الاستشهاد.\n"
                f"{hedge}\n"
                f"النصوص:\n{context}\n\n"
                f"السؤال: {question}\n\nالإجابة:"
            )
        hedge = (
            "The evidence is limited; say clearly what the passages do not support.\n"
            if confidence < LOW_CONFIDENCE
            else ""
        )
        return (
            "You are a research assistant answering only from the book passages below.\n"
            "Answer in English and cite the book and page for each claim.\n"
            f"{hedge}\n"
            f"Passages:\n{context}\n\n"
            f"Question: {question}\n\nAnswer:"
        )

    async def answer(
        self,
        question: str,
        document_ids: list[str] | None = None,
        previous_turn: PreviousTurn | None = None,
        use_multi_hop: bool = False,
        correct_spelling: bool = False,
    ) -> AnswerResult:
        """Answer a question over completed documents.

        Args:
            question: User question.
            document_ids: Corpus to search; the selected documents when None.
            previous_turn: Last answered turn, for follow-up reuse.
            use_multi_hop: Allow multi-hop reasoning for complex questions.
            correct_spelling: Spell-correct retrieved chunks during multi-hop.

        Returns:
            AnswerResult with the answer, sources and retrieval signals.

        Raises:
            ModelInvocationError: No model could embed the query or write the answer.
        """
        detected = detect_language(question)
        response_language = Language.EN if detected == Language.EN else Language.AR

        documents = self._documents(document_ids)
        if not documents:
            return AnswerResult(answer=NO_DOCUMENTS[response_language], strategy="no_documents")
        ids = [d.id for d in documents]
        names = {d.id: d.display_name for d in documents}
        doc_languages = {d.id: d.language for d in documents if d.language is not None}
        corpus_languages = set(doc_languages.values())
        document_language = corpus_languages.pop() if len(corpus_languages) == 1 else None

        decision = self.followup.classify(question, previous_turn)
        if decision.reuse_context:
            logger.info(f"Reusing previous context: {decision.reason}")
            chunks = [c for c in previous_turn.chunks if c.document_id in names]
            if chunks:
                prompt = self._answer_prompt(
                    question, chunks, names, response_language, previous_turn.confidence
                )
                text = await self.invoker.require(Task.GENERATE_ANSWER, prompt)
                return AnswerResult(
                    answer=str(text),
                    sources=self._sources(chunks, names),
                    strategy=previous_turn.strategy or "followup",
                    confidence=previous_turn.confidence,
                    reused_context=True,
                    chunks=chunks,
                )

        if use_multi_hop and is_complex_query(question):
            try:
                composite = await self.reasoner.reason(
                    question,
                    ids,
                    doc_languages,
                    self.settings.max_hops,
                    response_language,
                    correct_spelling,
                )
                chunks = [c for step in composite.steps for c in step.chunks]
                return AnswerResult(
                    answer=composite.formatted,
                    sources=self._sources(chunks, names),
                    strategy=composite.strategy,
                    confidence=composite.confidence,
                    chunks=chunks,
                )
            except Exception as e:
                logger.warning(f"Multi-hop reasoning failed: {e}, falling back to single-hop")

        analysis = await self.analyzer.analyze_query(question, document_language)
        retrieval = await self.retriever.retrieve(analysis, ids)
        if not retrieval.chunks:
            return AnswerResult(
                answer=NO_INFORMATION[response_language],
                strategy=retrieval.strategy,
                confidence=0.0,
            )

        prompt = self._answer_prompt(
            question, retrieval.chunks, names, response_language, retrieval.confidence
        )
        text = await self.invoker.require(Task.GENERATE_ANSWER, prompt)
        return AnswerResult(
            answer=str(text),
            sources=self._sources(retrieval.chunks, names),
            strategy=retrieval.strategy,
            confidence=retrieval.confidence,
            chunks=retrieval.chunks,
        )
