"""
Keyword classifier for inbound text replies.

Maps a free-text reply (plus whether it carried an attachment) onto one of
the reminders still waiting for an answer and a suggested action. This is
a rule table, not a model: every branch returns a fixed confidence.
"""

import logging
import re
from functools import lru_cache
from pathlib import Path
from typing import FrozenSet, List, Optional, Sequence

from pydantic import BaseModel, field_validator

from checkin.config.settings import get_settings
from checkin.domain.response import (
    ClassifiedResponse,
    PendingResponseContext,
    Polarity,
    SuggestedAction,
)

logger = logging.getLogger(__name__)

WORD_PATTERN = re.compile(r"[\w']+")


class ClassifierVocabulary(BaseModel):
    """Keyword tables. Loadable from JSON so operators can extend them."""

    # Whole-message matches only
    opt_out: FrozenSet[str] = frozenset({
        "stop", "stopall", "unsubscribe", "cancel", "end", "quit", "revoke", "optout",
    })
    help: FrozenSet[str] = frozenset({
        "help", "info", "what is this", "who is this", "confused",
        "don't understand", "dont understand", "how do i",
    })
    negative: FrozenSet[str] = frozenset({
        "no", "n", "nope", "not", "not yet", "can't", "cant", "cannot", "didn't",
        "didnt", "won't", "wont", "skip", "later", "forgot", "unable", "❌", "👎",
    })
    confirmation: FrozenSet[str] = frozenset({
        "yes", "y", "yep", "yeah", "yea", "confirm", "confirmed", "sure", "agree",
        "i agree", "ok", "okay", "👍",
    })
    positive: FrozenSet[str] = frozenset({
        "done", "complete", "completed", "finished", "did it", "i did", "took it",
        "took", "taken", "yes", "y", "yep", "yeah", "ok", "okay", "good", "check",
        "all set", "✓", "✔", "✅", "👍",
    })

    @field_validator("opt_out", "help", "negative", "confirmation", "positive", mode="before")
    @classmethod
    def normalize_phrases(cls, value):
        return frozenset(" ".join(WORD_PATTERN.findall(p.casefold())) or p.strip() for p in value)


class NormalizedText:
    """A reply reduced to lower-case word tokens, keeping the raw text for symbols."""

    def __init__(self, text: Optional[str]):
        self.raw = (text or "").strip().casefold().replace("’", "'")
        self.words = WORD_PATTERN.findall(self.raw)
        self.joined = " ".join(self.words)
        self._padded = f" {self.joined} "

    @property
    def is_empty(self) -> bool:
        return not self.raw

    def contains(self, phrase: str) -> bool:
        if WORD_PATTERN.search(phrase):
            return f" {phrase} " in self._padded
        return phrase in self.raw

    def matches_any(self, phrases: FrozenSet[str]) -> bool:
        return any(self.contains(p) for p in phrases)


def correlate(
    contexts: Sequence[PendingResponseContext],
    has_text: bool,
    has_attachment: bool,
    wants_confirmation: bool = False
) -> Optional[PendingResponseContext]:
    """
    Pick the pending reminder a reply most likely answers.

    One context wins outright. With several, a confirmation-style reply goes
    to an outstanding confirmation; otherwise contexts whose requirement the
    reply satisfies beat those it does not, a more specific requirement beats
    a looser one, and the most recent dispatch breaks ties.
    """
    if not contexts:
        return None
    if len(contexts) == 1:
        return contexts[0]

    if wants_confirmation:
        confirmations = [c for c in contexts if c.expects_confirmation]
        if confirmations:
            return max(confirmations, key=lambda c: c.last_dispatched_at)

    satisfied = [
        c for c in contexts
        if c.response_requirement.is_satisfied_by(has_text, has_attachment)
    ]
    if satisfied:
        return max(
            satisfied,
            key=lambda c: (c.response_requirement.specificity, c.last_dispatched_at)
        )
    return max(contexts, key=lambda c: c.last_dispatched_at)


class ResponseClassifier:
    """Turns an inbound reply into a ClassifiedResponse. Stateless and thread-safe."""

    def __init__(self, vocabulary: Optional[ClassifierVocabulary] = None):
        self.vocabulary = vocabulary or ClassifierVocabulary()

    def classify(
        self,
        text: Optional[str],
        attachment_present: bool,
        sender: Optional[str],
        contexts: Sequence[PendingResponseContext]
    ) -> ClassifiedResponse:
        """
        Classify one inbound message.

        Args:
            text: Message body, possibly empty
            attachment_present: Whether the message carried media
            sender: Recipient ID of the sender, if known
            contexts: Reminders still waiting for this sender's reply

        Returns:
            The verdict; malformed input yields an unclear verdict, never an error
        """
        try:
            own: List[PendingResponseContext] = [
                c for c in contexts if sender is None or c.recipient_id == sender
            ]
            return self._classify(NormalizedText(text), bool(attachment_present), own)
        except Exception:
            logger.exception("Classifier failed; flagging reply for review")
            return ClassifiedResponse(
                polarity=Polarity.UNCLEAR,
                confidence=0.0,
                action=SuggestedAction.FLAG_FOR_REVIEW,
                reason="classifier error",
            )

    def _classify(
        self,
        text: NormalizedText,
        has_attachment: bool,
        contexts: List[PendingResponseContext]
    ) -> ClassifiedResponse:
        vocab = self.vocabulary

        if text.joined in vocab.opt_out:
            return ClassifiedResponse(
                polarity=Polarity.OPT_OUT,
                confidence=1.0,
                action=SuggestedAction.IGNORE,
                reason="opt-out keyword",
            )

        has_text = not text.is_empty
        if not has_text and not has_attachment:
            return ClassifiedResponse(
                polarity=Polarity.UNCLEAR,
                confidence=0.0,
                action=SuggestedAction.IGNORE,
                reason="empty message",
            )

        is_confirmation = text.matches_any(vocab.confirmation)
        match = correlate(contexts, has_text, has_attachment, wants_confirmation=is_confirmation)
        matched_id = match.reminder_id if match else None

        def verdict(polarity, action, confidence, reason) -> ClassifiedResponse:
            return ClassifiedResponse(
                matched_reminder_id=matched_id,
                polarity=polarity,
                confidence=confidence,
                action=action,
                reason=reason,
            )

        if text.matches_any(vocab.help):
            return verdict(Polarity.HELP_REQUESTED, SuggestedAction.FLAG_FOR_REVIEW, 0.9, "help keyword")

        if text.matches_any(vocab.negative):
            if match is None or match.expects_confirmation:
                return verdict(Polarity.NEGATIVE, SuggestedAction.FLAG_FOR_REVIEW, 0.7, "negative reply")
            return verdict(Polarity.NEGATIVE, SuggestedAction.SCHEDULE_FOLLOW_UP, 0.7, "negative reply")

        if is_confirmation and match is not None and match.expects_confirmation:
            return verdict(Polarity.POSITIVE, SuggestedAction.MARK_CONFIRMED, 0.95, "confirmation keyword")

        is_positive = text.matches_any(vocab.positive)
        if is_positive or has_attachment:
            if match is None:
                return verdict(Polarity.POSITIVE, SuggestedAction.FLAG_FOR_REVIEW, 0.5, "no pending reminder")
            if match.expects_confirmation:
                return verdict(Polarity.POSITIVE, SuggestedAction.FLAG_FOR_REVIEW, 0.5, "not a confirmation reply")
            if match.response_requirement.is_satisfied_by(has_text, has_attachment):
                if is_positive:
                    return verdict(Polarity.POSITIVE, SuggestedAction.MARK_COMPLETE, 0.9, "completion keyword")
                return verdict(Polarity.POSITIVE, SuggestedAction.MARK_COMPLETE, 0.8, "attachment reply")
            return verdict(
                Polarity.POSITIVE, SuggestedAction.SCHEDULE_FOLLOW_UP, 0.6, "reply missing required content"
            )

        if match is None:
            return verdict(Polarity.UNCLEAR, SuggestedAction.FLAG_FOR_REVIEW, 0.3, "unrecognized reply")
        return verdict(Polarity.UNCLEAR, SuggestedAction.SCHEDULE_FOLLOW_UP, 0.3, "unrecognized reply")


def load_vocabulary(path: str) -> ClassifierVocabulary:
    """
    Load keyword tables from a JSON file.

    Keys missing from the file keep their built-in defaults.
    """
    return ClassifierVocabulary.model_validate_json(Path(path).read_text(encoding="utf-8"))


@lru_cache()
def get_classifier() -> ResponseClassifier:
    """Get the classifier configured by settings."""
    path = get_settings().classifier_vocabulary_path
    if path:
        logger.info(f"Loading classifier vocabulary from {path}")
        return ResponseClassifier(load_vocabulary(path))
    return ResponseClassifier()
