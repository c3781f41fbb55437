"""Tests for the correction and validation loop."""

import pytest

from conftest import GEN_MODELS, make_chunk
from maktaba.models import Language
from maktaba.rag.corrector import (
    TextCorrector,
    apply_known_fixes,
    needs_correction,
    validate_correction,
)

CORRUPT = "ذكر ال كتاب في الفصل الأول من هذا المؤلف الكبير"
CORRECTED = "ذكر الكتاب في الفصل الأول من هذا المؤلف الكبير"
CLEAN = "الحمد لله رب العالمين، والصلاة والسلام على رسول الله."


@pytest.fixture
def corrector(settings, invoker, store):
    return TextCorrector(settings, invoker, store)


def test_validate_correction_length_bound():
    original = "a" * 100
    assert validate_correction(original, "a" * 130) is None
    assert validate_correction(original, "a" * 131) is not None
    assert validate_correction(original, "a" * 69) is not None


def test_validate_correction_arabic_bound():
    original = "ب" * 100
    assert validate_correction(original, "ب" * 80 + "x" * 20) is None
    assert validate_correction(original, "ب" * 79 + "x" * 21) is not None


def test_validate_correction_rejects_arabic_in_latin_text():
    assert validate_correction("Ibn Hazm", "Ibn حزم") is not None
    assert validate_correction("Ibn-IJazm", "Ibn Ḥazm") is None


def test_validate_correction_rejects_empty():
    assert validate_correction(CORRUPT, "  ") == "empty correction"


def test_validate_correction_minimum_length():
    assert validate_correction("الصالة ، نعم", "صلاة، نعم") is None
    assert validate_correction("الصالة ، نعم", "صلاة، نعم", min_chars=10) is not None


@pytest.mark.asyncio
async def test_short_correction_falls_back_to_known_fix(corrector, generator):
    generator.scripted["النص الأصلي"] = "صلاة، نعم"

    outcome = await corrector.correct_text("الصالة ، نعم", Language.AR)

    assert outcome.status == "fixed"
    assert outcome.text == "الصلاة ، نعم"
    assert len(generator.calls) == len(GEN_MODELS)


def test_known_fixes():
    assert apply_known_fixes("تاريخ اإلسالم") == "تاريخ الإسلام"
    assert apply_known_fixes("the $ufi masters") == "the Sufi masters"
    assert not needs_correction(apply_known_fixes("أقام الصالة"))


@pytest.mark.parametrize(
    "corrupt, fixed",
    [
        ("the Shttis of Kufa", "the Shīʿīs of Kufa"),
        ("a Shl'l scholar", "a Shīʿī scholar"),
        ("Jalfari jurists", "Jaʿfarī jurists"),
        ("the Ismalili mission", "the Ismāʿīlī mission"),
        ("a 1).adith report", "a Ḥadīth report"),
        ("al-J:Iakim", "al-Ḥākim"),
        ("aI-Mufid", "al-Mufid"),
        ("Nahj al-Baldghah", "Nahj al-Balāghah"),
        ("the Seljul} sultans", "the Seljuk sultans"),
        ("Jama'i-Sunni creed", "Jamāʿī-Sunnī creed"),
        ("Proven<;al poetry", "Provençal poetry"),
    ],
)
def test_transliteration_fixes(corrupt, fixed):
    assert apply_known_fixes(corrupt) == fixed
    assert not needs_correction(fixed)


@pytest.mark.asyncio
async def test_clean_chunk_makes_no_model_call(corrector, generator, embedder):
    chunk = make_chunk("doc", 1, CLEAN, similarity=0.4)

    [result] = await corrector.correct_chunks_batch([chunk], Language.AR)

    assert generator.calls == []
    assert embedder.calls == []
    assert result.text == chunk.text
    assert result.embedding == chunk.embedding
    assert not result.corrected


@pytest.mark.asyncio
async def test_known_fix_is_enough(corrector, generator):
    outcome = await corrector.correct_text("تاريخ اإلسالم")

    assert outcome.status == "fixed"
    assert outcome.text == "تاريخ الإسلام"
    assert generator.calls == []


@pytest.mark.asyncio
async def test_model_correction_accepted(corrector, generator):
    generator.scripted["النص الأصلي"] = CORRECTED

    outcome = await corrector.correct_text(CORRUPT)

    assert outcome.status == "corrected"
    assert outcome.text == CORRECTED
    assert outcome.model_id == GEN_MODELS[0]


@pytest.mark.asyncio
async def test_out_of_bounds_correction_tries_next_model(corrector, generator):
    generator.per_model = {
        "gen-small": CORRECTED + " وأضاف النموذج شرحا طويلا جدا لم يطلبه أحد على الإطلاق",
        "gen-medium": CORRECTED,
    }

    outcome = await corrector.correct_text(CORRUPT)

    assert outcome.text == CORRECTED
    assert outcome.model_id == "gen-medium"


@pytest.mark.asyncio
async def test_no_acceptable_correction_keeps_original(corrector, generator):
    generator.per_model = {m: "نص مختلف تماما" for m in GEN_MODELS}

    outcome = await corrector.correct_text(CORRUPT)

    assert outcome.status == "rejected"
    assert outcome.text == CORRUPT


@pytest.mark.asyncio
async def test_aggressive_mode_sends_clean_text(corrector, generator):
    outcome = await corrector.correct_text(CLEAN, Language.AR, aggressive=True)

    assert outcome.status == "unchanged"
    assert len(generator.calls) == 1
    assert "صحح جميع الأخطاء" in generator.calls[0][0]


@pytest.mark.asyncio
async def test_batch_reembeds_corrected_chunk(corrector, generator, embedder):
    generator.scripted["النص الأصلي"] = CORRECTED
    chunk = make_chunk("doc", 1, CORRUPT)

    [result] = await corrector.correct_chunks_batch([chunk], Language.AR)

    assert result.corrected
    assert result.text == CORRECTED
    assert embedder.calls == [CORRECTED]
    assert result.embedding != chunk.embedding


@pytest.mark.asyncio
async def test_sweep_persists_text_and_embedding_together(corrector, store, generator):
    generator.scripted["النص الأصلي"] = CORRECTED
    store.upsert_chunks([make_chunk("doc", 1, CORRUPT), make_chunk("doc", 2, CLEAN)])

    report = await corrector.sweep(["doc"])

    assert (report.total, report.candidates, report.corrected, report.skipped) == (2, 1, 1, 1)
    stored = {c.page_number: c for c in store.list_chunks(["doc"])}
    assert stored[1].text == CORRECTED
    assert stored[1].corrected
    assert stored[2].text == CLEAN
    assert not stored[2].corrected


@pytest.mark.asyncio
async def test_sweep_never_persists_rejected_correction(corrector, store, generator):
    generator.per_model = {m: CORRUPT * 3 for m in GEN_MODELS}
    store.upsert_chunks([make_chunk("doc", 1, CORRUPT)])

    report = await corrector.sweep()

    assert report.rejected == 1
    assert report.corrected == 0
    assert store.list_chunks()[0].text == CORRUPT


@pytest.mark.asyncio
async def test_sweep_counts_failed_reembedding(corrector, store, generator, embedder):
    generator.scripted["النص الأصلي"] = CORRECTED
    embedder.failures = [RuntimeError("embedding service down")]
    store.upsert_chunks([make_chunk("doc", 1, CORRUPT)])

    report = await corrector.sweep()

    assert report.failed == 1
    assert store.list_chunks()[0].text == CORRUPT
