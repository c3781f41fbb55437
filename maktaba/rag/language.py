"""Language utilities for Arabic and English text."""

import re

from maktaba.models import Language

# Arabic, Arabic Supplement and the presentation-form blocks PDFs often emit
ARABIC_CHAR = re.compile(r"[\u0600-\u06FF\u0750-\u077F\uFB50-\uFDFF\uFE70-\uFEFF]")
ARABIC_DIACRITICS = re.compile(r"[\u064B-\u0652\u0670\u0640]")

ARABIC_THRESHOLD = 0.7
ENGLISH_THRESHOLD = 0.3

ARABIC_STOP_WORDS = {
    "من", "في", "على", "إلى", "الى", "عن", "مع", "هذا", "هذه", "ذلك", "تلك",
    "التي", "الذي", "هو", "هي", "هم", "أن", "إن", "كان", "كانت", "ما", "لا",
    "لم", "لن", "قد", "كل", "بعض", "أي", "و", "أو", "ثم", "حتى", "إذا", "لو",
    "كما", "بل", "لكن", "غير", "بين", "عند", "منذ", "حول", "خلال", "بعد",
    "قبل", "هل", "كيف", "لماذا", "متى", "أين", "ماذا",
}

ENGLISH_STOP_WORDS = {
    "the", "a", "an", "and", "or", "but", "in", "on", "at", "to", "for", "of",
    "with", "is", "are", "was", "were", "be", "been", "have", "has", "had",
    "do", "does", "did", "what", "which", "who", "when", "where", "why", "how",
    "this", "that", "these", "those", "it", "its", "as", "by", "from", "about",
    "into", "can", "could", "would", "should", "will",
}


def arabic_char_count(text: str) -> int:
    return len(ARABIC_CHAR.findall(text))


def arabic_ratio(text: str) -> float:
    """Share of non-whitespace characters that fall in the Arabic blocks."""
    non_space = sum(1 for ch in text if not ch.isspace())
    if non_space == 0:
        return 0.0
    return arabic_char_count(text) / non_space


def detect_language(text: str) -> Language:
    """Classify text as Arabic, English or mixed by its Arabic share.

    Args:
        text: Any string; empty or whitespace-only input maps to English.

    Returns:
        Language.AR above 0.7, Language.EN below 0.3, otherwise MIXED.
    """
    ratio = arabic_ratio(text)
    if ratio > ARABIC_THRESHOLD:
        return Language.AR
    if ratio < ENGLISH_THRESHOLD:
        return Language.EN
    return Language.MIXED


def normalize_arabic(text: str) -> str:
    """Fold letter variants so lexical matching ignores spelling noise."""
    text = ARABIC_DIACRITICS.sub("", text)
    text = re.sub("[إأآٱ]", "ا", text)
    text = text.replace("ى", "ي").replace("ة", "ه")
    return text


def tokenize(text: str) -> list[str]:
    return re.findall(r"\w+", normalize_arabic(text.lower()))
