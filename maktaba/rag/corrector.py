"""Correction and validation of OCR-damaged text.

Text is a correction candidate only when a corruption rule fires (or when
the caller asks for aggressive correction). Candidates first go through a
deterministic known-fix table; whatever still looks corrupted is sent to
the model cascade. A model's output is accepted only if it stays within
30% of the original length and 20% of the original Arabic-letter count;
otherwise the next model is tried, and if none is accepted the original
text is kept. Accepted text is re-embedded and written back together with
its new vector in a single store call.
"""

import asyncio
import logging
from dataclasses import dataclass

from maktaba.config import Settings
from maktaba.models import Chunk, Language, SweepReport
from maktaba.rag.invocation import ModelInvoker, Task
from maktaba.rag.language import arabic_char_count, detect_language
from maktaba.rag.patterns import CORRUPTION_RULES, TRANSLITERATION_FIXES, matching_rules

logger = logging.getLogger(__name__)

MAX_LENGTH_DEVIATION = 0.30
MAX_ARABIC_DEVIATION = 0.20

KNOWN_FIXES: list[tuple[str, str]] = [
    # lam-alef ligature split by the PDF text layer
    ("اإلسالم", "الإسلام"),
    ("اإلمام", "الإمام"),
    ("الصالة", "الصلاة"),
    ("صالة", "صلاة"),
    ("التالوة", "التلاوة"),
    ("االبتعاد", "الابتعاد"),
    ("قبالت", "قبلات"),
    ("األ", "الأ"),
    ("اإل", "الإ"),
    ("اآل", "الآ"),
]


def needs_correction(text: str) -> bool:
    return bool(matching_rules(CORRUPTION_RULES, text))


def apply_known_fixes(text: str) -> str:
    fixed = text
    for corrupt, correct in KNOWN_FIXES:
        fixed = fixed.replace(corrupt, correct)
    for pattern, replacement in TRANSLITERATION_FIXES:
        fixed = pattern.sub(replacement, fixed)
    return fixed


def validate_correction(original: str, corrected: str, min_chars: int = 0) -> str | None:
    """Check a proposed correction against the deviation bounds.

    Args:
        original: Text before correction.
        corrected: Proposed replacement.
        min_chars: Shortest stripped length a stored chunk may have.

    Returns:
        None when the correction is acceptable, otherwise the rejection reason.
    """
    if not corrected.strip():
        return "empty correction"
    if len(corrected.strip()) < min_chars:
        return f"shorter than {min_chars} characters"
    length_deviation = abs(len(corrected) - len(original)) / max(len(original), 1)
    if length_deviation > MAX_LENGTH_DEVIATION:
        return f"length changed by {length_deviation:.0%}"
    original_arabic = arabic_char_count(original)
    corrected_arabic = arabic_char_count(corrected)
    if original_arabic == 0:
        if corrected_arabic:
            return "Arabic letters introduced into non-Arabic text"
        return None
    arabic_deviation = abs(corrected_arabic - original_arabic) / original_arabic
    if arabic_deviation > MAX_ARABIC_DEVIATION:
        return f"Arabic letter count changed by {arabic_deviation:.0%}"
    return None


def build_correction_prompt(text: str, language: Language, aggressive: bool) -> str:
    if language == Language.AR:
        scope = (
            "صحح جميع الأخطاء."
            if aggressive
            else "صحح الأخطاء الواضحة فقط، واحتفظ بالكلمات النادرة أو التاريخية."
        )
        return (
            "أنت خبير في تصحيح النصوص العربية المستخرجة من ملفات PDF بالتعرف الضوئي.\n"
            f"صحح الأخطاء الإملائية والهمزات وأخطاء التقطيع والمسافات. {scope}\n"
            "احتفظ بالمعنى والطول وعلامات الترقيم والفقرات. لا تغيّر ة إلى ه ولا ى إلى ي. "
            "لا تضف شرحًا أو تنسيقًا.\n\n"
            f"النص الأصلي:\n{text}\n\nالنص المصحح:"
        )
    scope = (
        "Fix all errors."
        if aggressive
        else "Fix only obvious errors, preserve rare or historical words."
    )
    return (
        "Correct spelling, diacritics and OCR artifacts in the following text "
        f"extracted from a scanned book. {scope} Preserve meaning, length, "
        "punctuation and paragraph breaks. Return only the corrected text.\n\n"
        f"Original text:\n{text}\n\nCorrected text:"
    )


@dataclass
class CorrectionOutcome:
    """Result of correcting one text.

    ``status`` is one of "clean" (no corruption signal, no model call),
    "fixed" (known-fix table was enough), "corrected" (a model's output was
    accepted), "unchanged" (the model returned the text as is) or "rejected"
    (no correction accepted, original kept).
    """

    text: str
    status: str
    model_id: str | None = None

    @property
    def changed(self) -> bool:
        return self.status in ("fixed", "corrected")


class TextCorrector:
    def __init__(self, settings: Settings, invoker: ModelInvoker, store=None) -> None:
        self.settings = settings
        self.invoker = invoker
        self.store = store

    def _validate(self, original: str, corrected: str) -> str | None:
        return validate_correction(original, corrected, self.settings.min_chunk_chars)

    async def correct_text(
        self,
        text: str,
        language: Language | None = None,
        aggressive: bool = False,
    ) -> CorrectionOutcome:
        if not aggressive and not needs_correction(text):
            return CorrectionOutcome(text=text, status="clean")

        fixed = apply_known_fixes(text)
        if fixed != text and not needs_correction(fixed) and not aggressive:
            if self._validate(text, fixed) is None:
                return CorrectionOutcome(text=fixed, status="fixed")

        language = language or detect_language(fixed)
        prompt = build_correction_prompt(fixed, language, aggressive)
        result = await self.invoker.invoke(
            Task.CORRECT_TEXT,
            prompt,
            subject=text,
            validate=lambda candidate: self._validate(text, candidate),
        )
        if result.ok:
            if result.value == text:
                return CorrectionOutcome(text=text, status="unchanged")
            return CorrectionOutcome(
                text=result.value, status="corrected", model_id=result.model_id
            )
        if fixed != text and self._validate(text, fixed) is None:
            return CorrectionOutcome(text=fixed, status="fixed")
        logger.warning(f"No accepted correction, keeping original text: {result.error}")
        return CorrectionOutcome(text=text, status="rejected")

    async def _correct_chunk(
        self, chunk: Chunk, language: Language | None, aggressive: bool, persist: bool
    ) -> Chunk:
        try:
            outcome = await self.correct_text(chunk.text, language, aggressive)
            if not outcome.changed:
                return chunk
            embedding = chunk.embedding
            if persist or chunk.embedding:
                embedding = await self.invoker.require(Task.EMBED, outcome.text)
            if persist and self.store is not None:
                await asyncio.to_thread(
                    self.store.update_chunk, chunk.id, outcome.text, embedding, True
                )
            return chunk.model_copy(
                update={"text": outcome.text, "embedding": embedding, "corrected": True}
            )
        except Exception as e:
            logger.warning(f"Failed to correct chunk {chunk.id}: {e}")
            return chunk

    async def correct_chunks_batch(
        self,
        chunks: list[Chunk],
        language: Language | None = None,
        aggressive: bool = False,
        persist: bool = False,
    ) -> list[Chunk]:
        """Correct chunks a small batch at a time.

        Args:
            chunks: Chunks to correct; order is preserved in the output.
            language: Prompt language, detected per chunk when omitted.
            aggressive: Treat every chunk as a candidate and fix all errors.
            persist: Also write accepted corrections to the vector store.

        Returns:
            The chunks, with accepted corrections applied and ``corrected`` set.
        """
        size = max(1, self.settings.correction_batch_size)
        logger.info(
            f"Correcting {len(chunks)} chunks "
            f"({'aggressive' if aggressive else 'conservative'} mode)"
        )
        out: list[Chunk] = []
        for start in range(0, len(chunks), size):
            batch = chunks[start : start + size]
            out.extend(
                await asyncio.gather(
                    *(self._correct_chunk(c, language, aggressive, persist) for c in batch)
                )
            )
        return out

    async def sweep(
        self, document_ids: list[str] | None = None, aggressive: bool = False
    ) -> SweepReport:
        """Maintenance pass over stored chunks, paced to respect rate limits."""
        if self.store is None:
            raise ValueError("sweep requires a vector store")
        chunks = await asyncio.to_thread(self.store.list_chunks, document_ids)
        report = SweepReport(total=len(chunks))
        candidates = chunks if aggressive else [c for c in chunks if needs_correction(c.text)]
        report.candidates = len(candidates)
        report.skipped = report.total - report.candidates
        logger.info(f"Sweep: {report.candidates}/{report.total} chunks flagged")

        size = max(1, self.settings.correction_batch_size)
        for start in range(0, len(candidates), size):
            if start:
                await asyncio.sleep(self.settings.correction_batch_delay)
            for position, chunk in enumerate(candidates[start : start + size]):
                if position:
                    await asyncio.sleep(self.settings.correction_chunk_delay)
                try:
                    outcome = await self.correct_text(chunk.text, None, aggressive)
                    if not outcome.changed:
                        report.rejected += 1
                        continue
                    embedding = await self.invoker.require(Task.EMBED, outcome.text)
                    await asyncio.to_thread(
                        self.store.update_chunk, chunk.id, outcome.text, embedding, True
                    )
                    report.corrected += 1
                except Exception as e:
                    report.failed += 1
                    logger.warning(f"Sweep failed on chunk {chunk.id}: {e}")
            logger.info(
                f"Sweep batch {start // size + 1}/{-(-len(candidates) // size)} done"
            )
        logger.info(
            f"Sweep finished: {report.corrected} corrected, {report.rejected} rejected, "
            f"{report.failed} failed, {report.skipped} clean"
        )
        return report
