"""Query analysis: language, translation, intent and keyword expansion.

This module provides the QueryAnalyzer that turns a raw user question into
the QueryAnalysis consumed by retrieval.
"""

import logging
import re

from maktaba.models import Language, QueryAnalysis, QueryType
from maktaba.rag.invocation import (
    ModelInvoker,
    Task,
    heuristic_keywords,
    parse_query_type,
)
from maktaba.rag.language import detect_language
from maktaba.rag.patterns import COMPARATIVE_RULES, matching_rules

logger = logging.getLogger(__name__)

LANGUAGE_NAMES = {Language.AR: "Arabic", Language.EN: "English"}
MAX_KEYWORDS = 5


def parse_keywords(text: str, limit: int = MAX_KEYWORDS) -> list[str]:
    """Split a model's keyword list on commas (Latin or Arabic) and newlines."""
    keywords: list[str] = []
    for item in re.split(r"[,،\n]", text):
        cleaned = re.sub(r"^\s*(?:[-*•]|\d+[.)])\s*", "", item)
        cleaned = cleaned.strip().strip("\"'`.")
        if len(cleaned) < 2 or cleaned.lower() in (k.lower() for k in keywords):
            continue
        keywords.append(cleaned)
        if len(keywords) >= limit:
            break
    return keywords


class QueryAnalyzer:
    """Analyze user questions before retrieval.

    Args:
        invoker: Model invocation layer used for translate, classify and
            keyword expansion; each has a deterministic fallback.
    """

    def __init__(self, invoker: ModelInvoker) -> None:
        self.invoker = invoker

    async def translate(self, query: str, target: Language) -> str:
        prompt = (
            f"Translate the following question into {LANGUAGE_NAMES[target]}. "
            "Keep proper names, book titles and technical terms accurate. "
            "Return only the translation, with no explanation.\n\n"
            f"Question: {query}\n\nTranslation:"
        )
        result = await self.invoker.invoke(Task.TRANSLATE, prompt, subject=query)
        lines = [line.strip() for line in str(result.value).splitlines() if line.strip()]
        translated = lines[0].strip("\"'") if lines else query
        if result.fallback:
            logger.warning("Translation unavailable, searching with the original query")
        return translated or query

    async def classify(self, query: str) -> QueryType:
        prompt = (
            "Classify the intent of this question about a book into exactly one "
            "category: narrative (story, events, sequence), analytical (reasons, "
            "arguments, interpretation), factual (a specific name, date, number or "
            "definition), thematic (broad themes and ideas), comparative "
            "(similarities or differences between works or ideas).\n"
            "Answer with the single category word.\n\n"
            f"Question: {query}\n\nCategory:"
        )
        result = await self.invoker.invoke(Task.CLASSIFY, prompt, subject=query)
        return parse_query_type(str(result.value)) or QueryType.THEMATIC

    async def expand_keywords(self, query: str, language: Language) -> list[str]:
        language_name = LANGUAGE_NAMES.get(language, "the question's language")
        prompt = (
            f"Suggest 3 to 5 search keywords in {language_name} that would help "
            "find passages answering this question in a book. Include synonyms "
            "and related terms. Return them as a comma-separated list only.\n\n"
            f"Question: {query}\n\nKeywords:"
        )
        result = await self.invoker.invoke(Task.EXPAND_KEYWORDS, prompt, subject=query)
        keywords = parse_keywords(str(result.value))
        return keywords or heuristic_keywords(query)

    async def analyze_query(
        self, query: str, document_language: Language | str | None = None
    ) -> QueryAnalysis:
        """Analyze a question against the language of the target documents.

        Args:
            query: Raw user question.
            document_language: Dominant language of the documents searched.

        Returns:
            QueryAnalysis whose ``expanded_query`` is the string to embed.
        """
        detected = detect_language(query)
        target = Language(document_language) if document_language else None

        translated_query: str | None = None
        search_query = query
        if (
            target is not None
            and target != Language.MIXED
            and detected != Language.MIXED
            and detected != target
        ):
            translated_query = await self.translate(query, target)
            search_query = translated_query
            logger.info(f"Translated query {detected.value} -> {target.value}")

        fired = matching_rules(COMPARATIVE_RULES, query)
        if translated_query:
            fired += matching_rules(COMPARATIVE_RULES, translated_query)
        is_multi_document = bool(fired)

        query_type = await self.classify(search_query)
        if is_multi_document and query_type != QueryType.COMPARATIVE:
            logger.info(
                f"Comparative pattern {fired[0]} overrides classification {query_type.value}"
            )
            query_type = QueryType.COMPARATIVE

        keywords = await self.expand_keywords(search_query, target or detected)
        expanded_query = f"{search_query} {' '.join(keywords)}".strip()

        return QueryAnalysis(
            original_query=query,
            translated_query=translated_query,
            detected_language=detected,
            search_query=search_query,
            expanded_query=expanded_query,
            query_type=query_type,
            keywords=keywords,
            is_multi_document_query=is_multi_document,
        )
