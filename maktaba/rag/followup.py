"""Follow-up detection for conversational turns.

Decides whether a question continues the previous turn closely enough
that the previous turn's retrieved chunks can be reused instead of running
retrieval again.
"""

import logging
from dataclasses import dataclass, field

from maktaba.models import Chunk
from maktaba.rag.language import ARABIC_STOP_WORDS, ENGLISH_STOP_WORDS, tokenize
from maktaba.rag.patterns import ANAPHORA, CONTINUATION_RULES, matching_rules

logger = logging.getLogger(__name__)

MAX_ANAPHORIC_TOKENS = 8


@dataclass
class PreviousTurn:
    """What the caller remembers about the last answered question."""

    question: str
    answer: str = ""
    chunks: list[Chunk] = field(default_factory=list)
    strategy: str = ""
    confidence: float = 0.0


@dataclass
class FollowUpDecision:
    kind: str  # "continuation" or "new_topic"
    reuse_context: bool
    reason: str


def _content_tokens(text: str) -> set[str]:
    stop_words = ARABIC_STOP_WORDS | ENGLISH_STOP_WORDS
    return {t for t in tokenize(text) if t not in stop_words and len(t) > 1}


class FollowUpDetector:
    """Classify a question as a continuation of the previous turn or a new topic."""

    def classify(
        self, question: str, previous_turn: PreviousTurn | None
    ) -> FollowUpDecision:
        if previous_turn is None or not previous_turn.question.strip():
            return FollowUpDecision("new_topic", False, "no previous turn")

        # Context can only be reused when the previous turn retrieved something
        has_context = bool(previous_turn.chunks)

        cues = matching_rules(CONTINUATION_RULES, question)
        if cues:
            logger.info(f"Follow-up detected by continuation cue {cues[0]}")
            return FollowUpDecision("continuation", has_context, f"continuation cue {cues[0]}")

        tokens = tokenize(question)
        if len(tokens) <= MAX_ANAPHORIC_TOKENS and ANAPHORA.search(question):
            overlap = _content_tokens(question) & _content_tokens(previous_turn.question)
            if overlap:
                logger.info(f"Follow-up detected by reference to {sorted(overlap)[:3]}")
                return FollowUpDecision(
                    "continuation", has_context, "short anaphoric question with shared terms"
                )

        return FollowUpDecision("new_topic", False, "no continuation signal")
