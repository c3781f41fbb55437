"""Multi-hop reasoning over the library.

A complex question is answered in rounds. Each round retrieves evidence for
the current sub-question, writes a short intermediate answer, and asks the
model for the next sub-question. The rounds are then synthesized into one
answer and rendered as Markdown.
"""

import logging
import re
from difflib import SequenceMatcher

from maktaba.config import Settings
from maktaba.models import Chunk, CompositeResult, Language, ReasoningStep
from maktaba.rag.corrector import TextCorrector
from maktaba.rag.invocation import ModelInvoker, Task
from maktaba.rag.patterns import COMPLEX_QUERY_RULES, QUESTION_WORDS, any_rule_matches
from maktaba.rag.query_analyzer import QueryAnalyzer
from maktaba.rag.retrieval import SmartRetriever

logger = logging.getLogger(__name__)

WEAK_EVIDENCE_SIMILARITY = 0.35
GENERAL_KNOWLEDGE_CONFIDENCE = 0.6
REPEAT_QUESTION_SIMILARITY = 0.85
EVIDENCE_PER_HOP = 10
CONJUNCTIONS = re.compile(r"\b(and|or|but|while|whereas)\b|(?<!\S)(و|أو|لكن|بينما)(?!\S)", re.IGNORECASE)


def is_complex_query(query: str) -> bool:
    """Heuristic gate for multi-hop reasoning.

    A query is complex when a complex-query rule fires, when it asks two or
    more questions, or when it is long and joins clauses with a conjunction.
    """
    if any_rule_matches(COMPLEX_QUERY_RULES, query):
        return True
    if len(QUESTION_WORDS.findall(query)) >= 2:
        return True
    return len(query) > 100 and bool(CONJUNCTIONS.search(query))


def question_similarity(a: str, b: str) -> float:
    return SequenceMatcher(None, a.lower().strip(), b.lower().strip()).ratio()


def clean_sub_question(text: str) -> str:
    lines = [line.strip() for line in text.strip().splitlines() if line.strip()]
    if not lines:
        return ""
    line = re.sub(r"^\s*(?:\d+[.)]|[-*•])\s*", "", lines[0])
    return line.strip().strip("\"'").strip()


def _source_label(chunk: Chunk, document_ids: list[str]) -> str:
    position = document_ids.index(chunk.document_id) + 1 if chunk.document_id in document_ids else 0
    return f"Doc {position}, Page {chunk.page_number}"


def _step_sources(step: ReasoningStep, document_ids: list[str], arabic: bool) -> str:
    if step.used_general_knowledge:
        return "معرفة عامة" if arabic else "General Knowledge"
    labels = list(dict.fromkeys(_source_label(c, document_ids) for c in step.chunks))
    return ", ".join(labels[:3])


def format_multi_hop_response(
    result: CompositeResult, language: Language, document_ids: list[str] | None = None
) -> str:
    """Render a reasoning result as Markdown in Arabic or English."""
    arabic = language == Language.AR
    document_ids = document_ids or []
    hybrid = result.strategy == "hybrid-multi-hop"

    lines: list[str] = []
    if arabic:
        lines.append("## تحليل متعدد الخطوات" + (" (وضع هجين)" if hybrid else ""))
    else:
        lines.append("## Multi-Hop Analysis" + (" (Hybrid Mode)" if hybrid else ""))
    lines.append("")
    if hybrid:
        lines.append(
            "**ملاحظة:** استخدم هذا التحليل معلومات من المستندات والمعرفة العامة."
            if arabic
            else "**Note:** This analysis combines document information with general knowledge."
        )
        lines.append("")

    summary = (
        f"عرض خطوات التحليل ({len(result.steps)} خطوات)"
        if arabic
        else f"View Reasoning Steps ({len(result.steps)} steps)"
    )
    lines += ["<details>", f"<summary>{summary}</summary>", ""]
    for step in result.steps:
        label = "خطوة" if arabic else "Step"
        lines.append(f"### {label} {step.step_number}: {step.question}")
        lines.append("")
        lines.append(f"**{'الجواب' if arabic else 'Answer'}:** {step.answer}")
        lines.append("")
        lines.append(f"**{'المصادر' if arabic else 'Sources'}:** {_step_sources(step, document_ids, arabic)}")
        lines.append("")
        lines.append(f"**{'الثقة' if arabic else 'Confidence'}:** {step.confidence * 100:.1f}%")
        lines += ["", "---", ""]
    lines += ["</details>", ""]

    lines.append("## الإجابة النهائية" if arabic else "## Final Answer")
    lines += ["", result.final_answer, "", "---", ""]

    documents_used = {c.document_id for s in result.steps for c in s.chunks}
    evidence = {
        _source_label(c, document_ids) for s in result.steps for c in s.chunks
    }
    if arabic:
        lines += [
            "**الإحصائيات:**",
            f"- خطوات التحليل: {len(result.steps)}",
            f"- مستندات مستخدمة: {len(documents_used)}",
            f"- مصادر الأدلة: {len(evidence)}",
            f"- الثقة الإجمالية: {result.confidence * 100:.1f}%",
        ]
    else:
        lines += [
            "**Statistics:**",
            f"- Analysis steps: {len(result.steps)}",
            f"- Documents used: {len(documents_used)}",
            f"- Evidence sources: {len(evidence)}",
            f"- Overall confidence: {result.confidence * 100:.1f}%",
        ]
    return "\n".join(lines) + "\n"


class MultiHopReasoner:
    """Iterative retrieve-then-refine reasoning for complex questions.

    Args:
        settings: Application settings (``max_hops``).
        invoker: Model invocation layer for hop answers, sub-questions and
            synthesis.
        analyzer: Turns each sub-question into a QueryAnalysis.
        retriever: Smart retrieval engine used on every hop.
        corrector: Optional spelling corrector for retrieved chunks.
    """

    def __init__(
        self,
        settings: Settings,
        invoker: ModelInvoker,
        analyzer: QueryAnalyzer,
        retriever: SmartRetriever,
        corrector: TextCorrector | None = None,
    ) -> None:
        self.settings = settings
        self.invoker = invoker
        self.analyzer = analyzer
        self.retriever = retriever
        self.corrector = corrector

    async def _correct(
        self,
        chunks: list[Chunk],
        doc_languages: dict[str, Language],
        default_language: Language,
        aggressive: bool,
    ) -> list[Chunk]:
        by_doc: dict[str, list[Chunk]] = {}
        for chunk in chunks:
            by_doc.setdefault(chunk.document_id, []).append(chunk)
        corrected: dict[str, Chunk] = {}
        for doc_id, doc_chunks in by_doc.items():
            language = doc_languages.get(doc_id, default_language)
            for chunk in await self.corrector.correct_chunks_batch(doc_chunks, language, aggressive):
                corrected[chunk.id] = chunk
        return [corrected.get(c.id, c) for c in chunks]

    def _hop_prompt(
        self, question: str, chunks: list[Chunk], document_ids: list[str], arabic: bool, general: bool
    ) -> str:
        if general:
            if arabic:
                return (
                    "أجب على السؤال التالي باستخدام معرفتك العامة. كن دقيقاً وموجزاً.\n\n"
                    f"السؤال: {question}\n\nالجواب (2-3 جمل):"
                )
            return (
                "Answer the following question using your general knowledge. "
                "Be accurate and concise.\n\n"
                f"Question: {question}\n\nAnswer (2-3 sentences):"
            )
        context = "\n\n---\n\n".join(
            f"[{_source_label(c, document_ids)}]\n{c.text}" for c in chunks
        )
        if arabic:
            return (
                "بناءً على الأدلة التالية، أجب على السؤال بشكل موجز.\n"
                "إذا كانت الأدلة ناقصة، يمكنك إضافة معلومات من معرفتك العامة وأشر إلى ذلك.\n\n"
                f"{context}\n\nالسؤال: {question}\n\nالجواب (2-3 جمل):"
            )
        return (
            "Based on the following evidence, answer the question concisely.\n"
            "If evidence is incomplete, you may add information from your general "
            "knowledge and indicate this.\n\n"
            f"{context}\n\nQuestion: {question}\n\nAnswer (2-3 sentences):"
        )

    def _next_question_prompt(self, query: str, partial: str, arabic: bool) -> str:
        if arabic:
            return (
                f'لدينا هذه الإجابة الجزئية: "{partial}"\n\n'
                f'للإجابة الكاملة على السؤال الأصلي: "{query}"\n\n'
                "ما هو السؤال الفرعي التالي الأكثر أهمية لاستكمال الإجابة؟ "
                "اكتب سؤالاً واحداً فقط، واضحاً ومحدداً. إذا اكتملت الإجابة فاكتب DONE."
            )
        return (
            f'We have this partial answer: "{partial}"\n\n'
            f'To fully answer the original question: "{query}"\n\n'
            "What is the next most important sub-question to complete the answer? "
            'Write ONE clear, specific question. If the answer is complete, reply "DONE".'
        )

    def _synthesis_prompt(self, query: str, steps: list[ReasoningStep], document_ids: list[str], arabic: bool) -> str:
        chain = "\n\n".join(
            f"Step {s.step_number}: {s.question}\n"
            f"Answer: {s.answer}\n"
            f"Sources: {_step_sources(s, document_ids, arabic)}"
            for s in steps
        )
        if arabic:
            return (
                "لقد قمنا بعملية استدلال متعددة الخطوات للإجابة على سؤال معقد.\n\n"
                f'السؤال الأصلي: "{query}"\n\nالخطوات:\n\n{chain}\n\n'
                "اجمع هذه الخطوات في إجابة شاملة ومترابطة واحدة باللغة العربية. "
                "ابدأ بملخص مباشر، وادمج معلومات المستندات مع المعرفة العامة، "
                "وضع أي جزء يعتمد على المعرفة العامة تحت **[معلومات إضافية]**.\n\n"
                "الإجابة النهائية:"
            )
        return (
            "We performed multi-hop reasoning to answer a complex question.\n\n"
            f'Original question: "{query}"\n\nSteps:\n\n{chain}\n\n'
            "Synthesize these steps into ONE comprehensive, coherent answer in English. "
            "Start with a direct summary, integrate document information with general "
            "knowledge, and mark anything relying on general knowledge with "
            "**[Additional Information]**.\n\n"
            "Final answer:"
        )

    async def reason(
        self,
        query: str,
        document_ids: list[str],
        doc_languages: dict[str, Language] | None = None,
        max_hops: int | None = None,
        response_language: Language = Language.AR,
        correct_spelling: bool = False,
        aggressive: bool = False,
    ) -> CompositeResult:
        """Answer a complex question in up to ``max_hops`` retrieval rounds.

        Raises:
            ModelInvocationError: A hop answer or the synthesis could not be
                generated. Callers fall back to single-hop retrieval.
        """
        doc_languages = doc_languages or {}
        max_hops = max(1, max_hops or self.settings.max_hops)
        arabic = response_language == Language.AR
        known_languages = {doc_languages[d] for d in document_ids if d in doc_languages}
        document_language = known_languages.pop() if len(known_languages) == 1 else None

        logger.info(f"Multi-hop reasoning over {len(document_ids)} document(s), up to {max_hops} hops")

        steps: list[ReasoningStep] = []
        asked = [query]
        seen_chunk_ids: set[str] = set()
        current = query

        for hop in range(1, max_hops + 1):
            logger.info(f"Hop {hop}/{max_hops}: {current[:80]}")
            analysis = await self.analyzer.analyze_query(current, document_language)
            retrieval = await self.retriever.retrieve(analysis, document_ids)
            chunks = retrieval.chunks[:EVIDENCE_PER_HOP]

            new_ids = {c.id for c in chunks} - seen_chunk_ids
            if hop > 1 and not new_ids:
                logger.info(f"Hop {hop} found no new evidence, stopping")
                break
            seen_chunk_ids |= new_ids

            top_similarity = max((c.similarity or 0.0 for c in chunks), default=0.0)
            general = top_similarity <= WEAK_EVIDENCE_SIMILARITY
            if general:
                logger.warning(
                    f"Hop {hop}: weak evidence (best {top_similarity:.2f}), using general knowledge"
                )
                chunks = []
            elif correct_spelling and self.corrector is not None:
                chunks = await self._correct(chunks, doc_languages, response_language, aggressive)

            prompt = self._hop_prompt(current, chunks, document_ids, arabic, general)
            answer = await self.invoker.require(Task.GENERATE_ANSWER, prompt)
            steps.append(
                ReasoningStep(
                    step_number=hop,
                    question=current,
                    answer=str(answer).strip(),
                    chunks=chunks,
                    confidence=GENERAL_KNOWLEDGE_CONFIDENCE if general else min(1.0, top_similarity),
                    used_general_knowledge=general,
                )
            )

            if hop == max_hops:
                break
            result = await self.invoker.invoke(
                Task.GENERATE_ANSWER, self._next_question_prompt(query, str(answer), arabic)
            )
            next_question = clean_sub_question(str(result.value)) if result.ok else ""
            if not next_question or "DONE" in next_question.upper():
                logger.info("No further sub-question, stopping")
                break
            if any(question_similarity(next_question, q) > REPEAT_QUESTION_SIMILARITY for q in asked):
                logger.info("Next sub-question repeats an earlier one, stopping")
                break
            asked.append(next_question)
            current = next_question

        final_answer = await self.invoker.require(
            Task.GENERATE_ANSWER, self._synthesis_prompt(query, steps, document_ids, arabic)
        )
        used_general = any(s.used_general_knowledge for s in steps)
        mean_confidence = sum(s.confidence for s in steps) / len(steps)
        confidence = mean_confidence * (0.7 + 0.3 * len(steps) / max_hops)

        result = CompositeResult(
            final_answer=str(final_answer).strip(),
            steps=steps,
            confidence=max(0.0, min(1.0, confidence)),
            strategy="hybrid-multi-hop" if used_general else "multi-hop",
            formatted="",
        )
        result.formatted = format_multi_hop_response(result, response_language, document_ids)
        logger.info(
            f"Multi-hop finished: {len(steps)} step(s), {result.strategy}, "
            f"confidence {result.confidence:.2f}"
        )
        return result
