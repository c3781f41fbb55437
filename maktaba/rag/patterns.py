"""Regex rule sets used as cheap pre-filters.

Each rule set is plain data: a list of named patterns. Pipeline code asks
which rules match and never embeds a pattern of its own, so the sets can
be tested and extended on their own.
"""

import re
from dataclasses import dataclass


@dataclass(frozen=True)
class PatternRule:
    name: str
    pattern: re.Pattern

    def matches(self, text: str) -> bool:
        return self.pattern.search(text) is not None


def _rule(name: str, pattern: str, flags: int = 0) -> PatternRule:
    return PatternRule(name, re.compile(pattern, flags))


def matching_rules(rules: list[PatternRule], text: str) -> list[str]:
    """Names of the rules that fire on ``text``, in rule order."""
    return [rule.name for rule in rules if rule.matches(text)]


def any_rule_matches(rules: list[PatternRule], text: str) -> bool:
    return any(rule.matches(text) for rule in rules)


# OCR corruptions of diacritic-bearing Latin transliterations and their repair.
# Applied in order, so specific forms precede the generic prefixes.
TRANSLITERATION_FIXES: list[tuple[re.Pattern, str]] = [
    (re.compile(pattern), replacement)
    for pattern, replacement in [
        (r"\bSh[tT]{1,3}[iī]s\b", "Shīʿīs"),
        (r"\bSh[tT]{1,3}[iī]\b", "Shīʿī"),
        (r"\bSh[tT]{1,3}ism\b", "Shīʿism"),
        (r"\bSh[tT]{1,3}ah\b", "Shīʿah"),
        (r"\bShilis\b", "Shīʿīs"),
        (r"\bI?Sh(?:ri|[!'’]i|l['’]?[Il1])\b", "Shīʿī"),
        (r"\bSh[l1]['’]ah\b", "Shīʿah"),
        (r"(?<!\S)[\]J]ama['’]?[il1]?[-\s]Sunn[il1]\b", "Jamāʿī-Sunnī"),
        (r"\bSunn[l1]\b", "Sunnī"),
        (r"\bJamal[l1]\b", "Jamāʿī"),
        (r"\bIsmal(?:ili|Ut)\b|\bIsma['’]?[l1]l[il1]\b", "Ismāʿīlī"),
        (r"\bJa[l1][fƒ]ar[il1]\b", "Jaʿfarī"),
        (r"(?:\b1\)\.|\bJ:[Il]|\b[IJ1][).:]?)ad[iī]th\b", "Ḥadīth"),
        (r"\bJ:[Il]akim\b", "Ḥākim"),
        (r"\bJ:[Il]", "Ḥ"),
        (r"\bIA(?:U|l[iī])\b", "ʿAlī"),
        (r"\baI-Sharif\b", "al-Sharīf"),
        (r"\baI-", "al-"),
        (r"\bal-RaQi\b", "al-Rāḍī"),
        (r"(?i:\bIbn-?[IJ1l]{1,2}[aā]zm\b)", "Ibn Ḥazm"),
        (r"\bDa['’ʿ]?(?:[fƒ]t?|t)d\b", "Dāwūd"),
        (r"\bBaldghah\b", "Balāghah"),
        (r"\bS[ae]ljul?[}j]|\bS[ae]ljul\b", "Seljuk"),
        (r"\bda['’]i\b", "dāʿī"),
        (r"\bSama[nD][l1]s\b", "Sāmānīs"),
        (r"\bShl?raz\b", "Shīrāz"),
        (r"\bI~fahan\b", "Iṣfahān"),
        (r"\bMu['’]tazil[l1]\b", "Muʿtazilī"),
        (r"\$ufi", "Sufi"),
        (r"Proven[<>][;,]?al", "Provençal"),
        (r"<[;,]", "ç"),
    ]
]

# Recurring OCR / PDF-extraction failure modes in Arabic text.
CORRUPTION_RULES: list[PatternRule] = [
    # lam-alef ligature decoded as alef + lam, leaving the hamza on the wrong carrier
    _rule("split_lam_alef_hamza", r"األ|اإل|اآل"),
    _rule("split_lam_alef_word", r"صالة|التالوة|االبتعاد|قبالت|اإلسالم"),
    _rule("missing_hamza", r"\bاسفًا\b|\bاسفا\b|فايده|\bمسئول"),
    _rule("ya_for_hamza", r"هايجه|\bسايل\b|\bقايل\b"),
    _rule("ha_for_ta_marbuta", r"المفاجاه|\bسماحه\b|\bالمكتبه\b"),
    _rule("space_around_punctuation", r"\s[،.!؟]\s"),
    _rule("missing_space_after_punctuation", r"[.،؟!][ء-ي]"),
    _rule("isolated_letters", r"(?<!\S)[ء-ي](?:\s+[ء-ي](?!\S)){2,}"),
    _rule("detached_article", r"(?<!\S)و\s+ال[ء-ي]|(?<!\S)ال\s+[ء-ي]"),
    _rule("fal_for_fala", r"\bفال(?=[ء-ي])"),
    _rule("excess_spacing", r"[ \t]{3,}"),
    _rule(
        "mangled_transliteration",
        "|".join(f"(?:{pattern.pattern})" for pattern, _ in TRANSLITERATION_FIXES),
    ),
]

# Question shapes that compare or span several documents.
COMPARATIVE_RULES: list[PatternRule] = [
    _rule(
        "comparison_words",
        r"\b(common|similar|similarit(y|ies)|shared|both|difference|differences|differ|compare|comparison|contrast|versus|vs)\b",
        re.IGNORECASE,
    ),
    _rule(
        "between_documents",
        r"\b(between|across|among)\b.*\b(documents?|texts?|books?|sources?|authors?)\b",
        re.IGNORECASE,
    ),
    _rule("between_and", r"\bbetween\b.+\band\b", re.IGNORECASE),
    _rule("arabic_comparison", r"مشترك|تشابه|الفرق|فرق|مقارنة|قارن|كلاهما|كليهما|الاختلاف|اختلاف"),
    _rule("arabic_between", r"(?<!\S)بين\s+\S+.*\sو"),
]

# Cues that a question needs several retrieval rounds.
COMPLEX_QUERY_RULES: list[PatternRule] = [
    _rule("multi_part", r"\b(and also|as well as|furthermore|additionally|in addition)\b", re.IGNORECASE),
    _rule("causal_chain", r"\b(why did|how did|what led to|as a result of|because of|consequences? of)\b", re.IGNORECASE),
    _rule("attributed", r"\b(according to|as described in|in the view of)\b", re.IGNORECASE),
    _rule("evolution", r"\b(evolve[ds]?|evolution|develop(ed|ment) over|changed over|trace)\b", re.IGNORECASE),
    _rule("arabic_multi_part", r"وكذلك|بالإضافة إلى|إضافة إلى|وأيضا|وأيضًا"),
    _rule("arabic_causal", r"لماذا|ما سبب|ما أسباب|نتيجة|أدى إلى|ما العلاقة"),
    _rule("arabic_attributed", r"حسب|وفقا ل|وفقًا ل|بحسب|في رأي"),
]

QUESTION_WORDS = re.compile(
    r"\b(what|how|why|when|where|which|who)\b|(?<!\S)(ما|ماذا|كيف|لماذا|متى|أين|من هو|من هي|هل)(?!\S)",
    re.IGNORECASE,
)

# Explicit requests to keep going on the previous answer.
CONTINUATION_RULES: list[PatternRule] = [
    _rule(
        "more_detail",
        r"\b(tell me more|more (about|details?|on)|elaborate|expand on|go on|continue|explain (it|that|this) (more|further)|what else)\b",
        re.IGNORECASE,
    ),
    _rule(
        "arabic_more_detail",
        r"(?<!\S)(أخبرني أكثر|اشرح أكثر|وضح أكثر|وضّح أكثر|فصّل أكثر|فصل أكثر|المزيد|أكمل|تابع الشرح|ماذا أيضا|ماذا أيضًا|وضّح|فصّل)(?=[\s؟?.!،]|$)",
    ),
]

ANAPHORA = re.compile(
    r"\b(it|its|this|that|these|those|they|them|he|she|him|her|his)\b|(?<!\S)(هذا|هذه|ذلك|تلك|هو|هي|هم|عنه|عنها|فيه|فيها)(?!\S)",
    re.IGNORECASE,
)
