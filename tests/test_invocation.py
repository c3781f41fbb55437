"""Tests for the model invocation layer."""

import logging
from unittest.mock import patch

import pytest

from conftest import DIM, GEN_MODELS
from maktaba.exceptions import ModelInvocationError
from maktaba.rag.generator import GeneratorClient
from maktaba.rag.invocation import (
    ModelInvoker,
    Task,
    get_invoker,
    heuristic_keywords,
    is_rate_limit_error,
    parse_query_type,
    reset_invoker,
)


@pytest.mark.asyncio
async def test_last_model_success_logs_each_earlier_failure(invoker, generator, caplog):
    generator.failing = {
        "gen-small": RuntimeError("connection reset"),
        "gen-medium": RuntimeError("429 Too Many Requests"),
    }

    with caplog.at_level(logging.WARNING, logger="maktaba.rag.invocation"):
        result = await invoker.invoke(Task.GENERATE_ANSWER, "Who wrote the book?")

    assert result.ok
    assert result.value == "Generated answer."
    assert result.model_id == "gen-large"
    assert result.attempts == 3
    assert result.rate_limited
    failures = [r for r in caplog.records if r.levelno == logging.WARNING]
    assert len(failures) == len(GEN_MODELS) - 1


@pytest.mark.asyncio
async def test_rejected_output_does_not_leak(invoker, generator):
    generator.per_model = {"gen-small": "   ", "gen-large": "final answer"}
    generator.failing = {"gen-medium": RuntimeError("timeout")}

    result = await invoker.invoke(Task.GENERATE_ANSWER, "prompt")

    assert result.value == "final answer"
    assert result.model_id == "gen-large"


@pytest.mark.asyncio
async def test_cascade_is_tried_in_order(invoker, generator):
    generator.failing = {m: RuntimeError("down") for m in GEN_MODELS}

    await invoker.invoke(Task.GENERATE_ANSWER, "prompt")

    assert [model for _, model in generator.calls] == GEN_MODELS


@pytest.mark.asyncio
async def test_models_override(invoker, generator):
    result = await invoker.invoke(Task.GENERATE_ANSWER, "prompt", models=["custom"])

    assert result.model_id == "custom"
    assert [model for _, model in generator.calls] == ["custom"]


@pytest.mark.asyncio
async def test_exhausted_translate_falls_back_to_subject(invoker, generator, caplog):
    generator.failing = {m: RuntimeError("down") for m in GEN_MODELS}

    with caplog.at_level(logging.ERROR, logger="maktaba.rag.invocation"):
        result = await invoker.invoke(Task.TRANSLATE, "translate prompt", subject="ما هو الصبر؟")

    assert not result.ok
    assert result.fallback
    assert result.value == "ما هو الصبر؟"
    assert any(r.levelno == logging.ERROR for r in caplog.records)


@pytest.mark.asyncio
async def test_exhausted_classify_defaults_to_thematic(invoker, generator):
    generator.failing = {m: RuntimeError("down") for m in GEN_MODELS}

    result = await invoker.invoke(Task.CLASSIFY, "classify prompt")

    assert result.value == "thematic"


@pytest.mark.asyncio
async def test_unparseable_classification_moves_to_next_model(invoker, generator):
    generator.per_model = {"gen-small": "I am not sure", "gen-medium": "narrative"}

    result = await invoker.invoke(Task.CLASSIFY, "classify prompt")

    assert result.value == "narrative"
    assert result.attempts == 2


@pytest.mark.asyncio
async def test_exhausted_keywords_use_heuristic(invoker, generator):
    generator.failing = {m: RuntimeError("down") for m in GEN_MODELS}

    result = await invoker.invoke(
        Task.EXPAND_KEYWORDS, "keyword prompt", subject="history of Andalusian poetry"
    )

    assert result.value == "history, andalusian, poetry"


@pytest.mark.asyncio
async def test_embedding_with_wrong_dimension_is_rejected(invoker, embedder):
    embedder.pinned["text"] = [0.1] * (DIM + 1)

    result = await invoker.invoke(Task.EMBED, "text")

    assert not result.ok
    assert "dimensions" in result.error
    assert result.value is None


@pytest.mark.asyncio
async def test_require_raises_when_embedding_exhausted(invoker, embedder):
    embedder.failures = [RuntimeError("quota exceeded")]

    with pytest.raises(ModelInvocationError) as excinfo:
        await invoker.require(Task.EMBED, "text")

    assert excinfo.value.task == "embed"
    assert excinfo.value.attempts == 1


@pytest.mark.asyncio
async def test_ocr_uses_vision_cascade(invoker, generator):
    generator.ocr_text = "نص الصفحة"

    result = await invoker.invoke(Task.OCR, "read", image=b"png")

    assert result.value == "نص الصفحة"
    assert result.model_id == "vision-small"
    assert generator.calls == []


@pytest.mark.asyncio
async def test_validator_rejection_tries_next_model(invoker, generator):
    generator.per_model = {"gen-small": "too long " * 20, "gen-medium": "ok"}

    result = await invoker.invoke(
        Task.CORRECT_TEXT,
        "prompt",
        validate=lambda v: "too long" if len(v) > 10 else None,
    )

    assert result.value == "ok"
    assert result.model_id == "gen-medium"


def test_is_rate_limit_error():
    assert is_rate_limit_error(RuntimeError("Error 429: rate limit reached"))
    assert is_rate_limit_error("RESOURCE_EXHAUSTED")
    assert not is_rate_limit_error(ValueError("bad request"))


def test_heuristic_keywords_skips_short_tokens():
    assert heuristic_keywords("the war of the two kings and their armies", limit=3) == [
        "kings",
        "their",
        "armies",
    ]


def test_parse_query_type():
    assert parse_query_type("Category: Analytical.").value == "analytical"
    assert parse_query_type("none of these") is None


def test_get_invoker_is_a_process_singleton(settings):
    reset_invoker()
    with patch("maktaba.rag.invocation.GeneratorClient"), patch(
        "maktaba.rag.invocation.EmbeddingClient"
    ):
        first = get_invoker(settings)
        second = get_invoker()
    assert first is second
    assert isinstance(first, ModelInvoker)
    reset_invoker()


def test_clean_output_strips_labels_and_fences(settings):
    with patch("maktaba.rag.generator.Credentials"):
        client = GeneratorClient(settings)

    assert client.clean_output("```\nAnswer: The caliph\n```") == "The caliph"
    assert client.clean_output("الإجابة: ابن خلدون [Source 1]") == "ابن خلدون"
