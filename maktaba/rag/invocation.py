"""Resilient model invocation layer.

Every call to a hosted model goes through ``ModelInvoker``. A call names a
``Task`` rather than a model; the invoker walks the task's ordered cascade
of model ids one at a time and returns the first response that passes the
task's sanity checks. Failures are logged and never abort the cascade.

The outcome is a tagged ``InvocationResult`` instead of an exception, so
the "every model failed" path is an ordinary return value. Tasks that have
a deterministic fallback (translate, classify, keyword expansion, text
correction) get one; embed, answer generation and OCR do not, and callers
that cannot continue without them use ``require`` which raises
``ModelInvocationError``.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Sequence

from maktaba.config import Settings
from maktaba.exceptions import ModelInvocationError
from maktaba.models import QueryType
from maktaba.rag.embeddings import EmbeddingClient
from maktaba.rag.generator import GeneratorClient

logger = logging.getLogger(__name__)

RATE_LIMIT_MARKERS = (
    "429",
    "quota",
    "rate limit",
    "rate_limit",
    "too many requests",
    "resource_exhausted",
)

# Rejection reason or None when the value is acceptable
Validator = Callable[[Any], str | None]


class Task(str, Enum):
    TRANSLATE = "translate"
    CLASSIFY = "classify"
    EXPAND_KEYWORDS = "expand_keywords"
    CORRECT_TEXT = "correct_text"
    EMBED = "embed"
    GENERATE_ANSWER = "generate_answer"
    OCR = "ocr"


DETERMINISTIC_TASKS = {Task.TRANSLATE, Task.CLASSIFY, Task.CORRECT_TEXT}


@dataclass
class InvocationResult:
    """Tagged outcome of one logical model call.

    Attributes:
        task: Task that was invoked.
        ok: True when a model produced an accepted value.
        value: Accepted value, or the heuristic fallback when ``fallback``.
        model_id: Model that produced ``value`` (None for fallbacks).
        error: Last failure or rejection reason seen in the cascade.
        attempts: Number of models tried.
        fallback: True when ``value`` is a heuristic derived from the input.
        rate_limited: True when any attempt failed with a quota-type error.
    """

    task: Task
    ok: bool
    value: Any = None
    model_id: str | None = None
    error: str | None = None
    attempts: int = 0
    fallback: bool = False
    rate_limited: bool = False


def is_rate_limit_error(error: BaseException | str) -> bool:
    message = str(error).lower()
    return any(marker in message for marker in RATE_LIMIT_MARKERS)


def heuristic_keywords(text: str, limit: int = 5) -> list[str]:
    """Naive keyword list: distinct lowercase tokens longer than 3 characters."""
    keywords: list[str] = []
    for token in re.findall(r"\w+", text.lower()):
        if len(token) > 3 and token not in keywords:
            keywords.append(token)
        if len(keywords) >= limit:
            break
    return keywords


def parse_query_type(text: str) -> QueryType | None:
    lowered = text.lower()
    for query_type in QueryType:
        if re.search(rf"\b{query_type.value}\b", lowered):
            return query_type
    return None


class ModelInvoker:
    """Single chokepoint that knows model identities.

    Args:
        settings: Application settings holding the cascades.
        generator: Text and vision client, built from settings if omitted.
        embedder: Embedding client, built from settings if omitted.
    """

    def __init__(
        self,
        settings: Settings,
        generator: GeneratorClient | None = None,
        embedder: EmbeddingClient | None = None,
    ) -> None:
        self.settings = settings
        self.generator = generator or GeneratorClient(settings)
        self.embedder = embedder or EmbeddingClient(settings)

    def models_for(self, task: Task) -> list[str]:
        if task == Task.EMBED:
            return list(self.settings.watsonx_embed_models)
        if task == Task.OCR:
            return list(self.settings.watsonx_vision_models)
        return list(self.settings.watsonx_gen_models)

    def _sanity_check(self, task: Task, value: Any) -> str | None:
        if task == Task.EMBED:
            if not isinstance(value, list) or not value:
                return "empty embedding"
            if len(value) != self.settings.embedding_dim:
                return (
                    f"embedding has {len(value)} dimensions, "
                    f"expected {self.settings.embedding_dim}"
                )
            return None
        if not isinstance(value, str) or not value.strip():
            return "empty response"
        if task == Task.CLASSIFY and parse_query_type(value) is None:
            return f"unrecognised query type {value[:40]!r}"
        return None

    async def _call(
        self, task: Task, model_id: str, prompt: str, image: bytes | None
    ) -> Any:
        if task == Task.EMBED:
            return await asyncio.to_thread(self.embedder.embed_query, prompt, model_id)
        if task == Task.OCR:
            if image is None:
                raise ValueError("OCR task requires a page image")
            return await asyncio.to_thread(
                self.generator.read_image, prompt, image, model_id
            )
        temperature = 0.0 if task in DETERMINISTIC_TASKS else None
        return await asyncio.to_thread(
            self.generator.generate, prompt, model_id, temperature
        )

    def _fallback(
        self,
        task: Task,
        subject: str,
        error: str | None,
        attempts: int,
        rate_limited: bool,
    ) -> InvocationResult:
        result = InvocationResult(
            task=task,
            ok=False,
            error=error,
            attempts=attempts,
            rate_limited=rate_limited,
        )
        if task in (Task.TRANSLATE, Task.CORRECT_TEXT):
            result.value = subject
            result.fallback = True
        elif task == Task.CLASSIFY:
            result.value = QueryType.THEMATIC.value
            result.fallback = True
        elif task == Task.EXPAND_KEYWORDS:
            result.value = ", ".join(heuristic_keywords(subject))
            result.fallback = True
        return result

    async def invoke(
        self,
        task: Task,
        prompt: str,
        *,
        subject: str | None = None,
        image: bytes | None = None,
        models: Sequence[str] | None = None,
        validate: Validator | None = None,
    ) -> InvocationResult:
        """Run one logical call through the cascade, strictly sequentially.

        Args:
            task: What is being asked.
            prompt: Prompt text, or the text to embed for ``Task.EMBED``.
            subject: Raw input the heuristic fallback is derived from;
                defaults to ``prompt``.
            image: PNG bytes for ``Task.OCR``.
            models: Cascade override; defaults to the task's configured list.
            validate: Extra acceptance check applied after the sanity checks.

        Returns:
            InvocationResult with ``ok`` set when a model's value was accepted.
        """
        cascade = list(models) if models is not None else self.models_for(task)
        last_error: str | None = None
        rate_limited = False
        attempts = 0

        for model_id in cascade:
            attempts += 1
            try:
                value = await self._call(task, model_id, prompt, image)
            except Exception as e:
                last_error = f"{type(e).__name__}: {e}"
                rate_limited = rate_limited or is_rate_limit_error(e)
                logger.warning(
                    f"{task.value} failed on {model_id} "
                    f"({attempts}/{len(cascade)}): {e}"
                )
                continue

            reason = self._sanity_check(task, value)
            if reason is None and validate is not None:
                reason = validate(value)
            if reason is not None:
                last_error = reason
                logger.warning(
                    f"{task.value} rejected from {model_id} "
                    f"({attempts}/{len(cascade)}): {reason}"
                )
                continue

            logger.debug(f"{task.value} succeeded on {model_id}")
            return InvocationResult(
                task=task,
                ok=True,
                value=value,
                model_id=model_id,
                attempts=attempts,
                rate_limited=rate_limited,
            )

        logger.error(
            f"All {len(cascade)} model(s) failed for {task.value}: {last_error}"
        )
        return self._fallback(
            task,
            subject if subject is not None else prompt,
            last_error,
            attempts,
            rate_limited,
        )

    async def require(self, task: Task, prompt: str, **kwargs: Any) -> Any:
        """Like ``invoke`` but raise when no model produced an accepted value."""
        result = await self.invoke(task, prompt, **kwargs)
        if not result.ok:
            raise ModelInvocationError(task.value, result.attempts, result.error)
        return result.value


_invoker: ModelInvoker | None = None


def get_invoker(settings: Settings | None = None) -> ModelInvoker:
    """Process-wide invoker, created on first use from explicit settings."""
    global _invoker
    if _invoker is None:
        _invoker = ModelInvoker(settings or Settings.from_env())
    return _invoker


def reset_invoker() -> None:
    global _invoker
    _invoker = None
