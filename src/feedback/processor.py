"""User feedback processing.

A correction to an emitted transaction is turned into learning signal for
every component: OCR word corrections from the description diff, merchant
category confidences, source pattern accuracy, and one online step of the
line classifier. Every correction is logged as a feedback entry first, so
nothing is lost when applying it fails.
"""

import difflib
from dataclasses import dataclass
from typing import Any

from src.detection.profiles import UNKNOWN_SOURCE
from src.detection.source_detector import SourceDetector
from src.errors import StatementError
from src.extraction.line_classifier import LineClassifier
from src.extraction.line_extractor import Transaction
from src.store.learning_store import LearningStore
from src.store.models import MerchantRecord, PatternKind, utc_now
from src.utils.config import LearningConfig
from src.utils.logger import get_logger
from src.utils.text import (
    clean_description,
    extract_merchant_name,
    merchant_key,
    name_variations,
    normalize_text,
)

logger = get_logger(__name__)

OCR_CORRECTION_ACCURACY = 0.8
NEW_MERCHANT_CONFIDENCE = 0.8
OLD_CATEGORY_DECAY = 0.9
OLD_CATEGORY_MIN = 0.1
NEW_CATEGORY_BOOST = 1.2


@dataclass
class FeedbackOutcome:
    """What one correction changed."""

    entry_id: int
    applied: bool
    category_changed: bool = False
    merchant: str | None = None
    ocr_corrections: int = 0
    source_learned: bool = False
    loss: float | None = None
    error: str | None = None


def word_substitutions(original: str, corrected: str) -> list[tuple[str, str]]:
    """Positional word replacements between two descriptions.

    Only equal-length replaced runs are paired word by word; insertions,
    deletions and case-only changes are ignored.

    Example:
        >>> word_substitutions("LIDI BUCURESTI", "LIDL BUCURESTI")
        [('LIDI', 'LIDL')]
    """
    before, after = original.split(), corrected.split()
    matcher = difflib.SequenceMatcher(a=[w.lower() for w in before], b=[w.lower() for w in after])
    pairs = []
    for tag, i1, i2, j1, j2 in matcher.get_opcodes():
        if tag != "replace" or i2 - i1 != j2 - j1:
            continue
        for old, new in zip(before[i1:i2], after[j1:j2]):
            if old.lower() != new.lower() and any(ch.isalpha() for ch in old + new):
                pairs.append((old, new))
    return pairs


def _snapshot(original: Transaction | dict[str, Any]) -> dict[str, Any]:
    if isinstance(original, Transaction):
        return {**original.to_dict(), "rawLine": original.raw_line}
    return dict(original)


class FeedbackProcessor:
    """Applies user corrections to the learning store.

    Args:
        store: Learning store.
        line_classifier: Line classifier trained on each correction.
        source_detector: Detector whose patterns source corrections adjust.
        config: Learning settings.
    """

    def __init__(
        self,
        store: LearningStore,
        line_classifier: LineClassifier,
        source_detector: SourceDetector,
        config: LearningConfig | None = None,
    ) -> None:
        self.store = store
        self.line_classifier = line_classifier
        self.source_detector = source_detector
        self.config = config or LearningConfig()

    def apply(
        self,
        original: Transaction | dict[str, Any],
        correction: dict[str, Any],
        document_text: str = "",
    ) -> FeedbackOutcome:
        """Apply one correction.

        Args:
            original: The transaction as emitted, or its ``to_dict`` payload.
            correction: Corrected fields: ``category``, ``subcategory``,
                ``description``, ``date``, ``amount``, ``source``, and
                ``not_transaction``.
            document_text: Text of the source document, used to learn a
                signature when the source is corrected.

        Returns:
            Summary of the changes made.
        """
        snapshot = _snapshot(original)
        entry = self.store.append_feedback(snapshot.get("id", ""), snapshot, correction)
        outcome = FeedbackOutcome(entry_id=entry.id, applied=False)

        try:
            outcome.ocr_corrections = self._learn_words(snapshot, correction)
            outcome.merchant, outcome.category_changed = self._learn_category(snapshot, correction)
            outcome.source_learned = self._learn_source(snapshot, correction, document_text)
            outcome.loss = self._train_line(snapshot, correction)
        except StatementError as e:
            logger.error("Feedback %d for %s not applied: %s", entry.id, entry.transaction_id, e)
            outcome.error = str(e)
            return outcome

        self.store.mark_feedback_applied(entry.id)
        outcome.applied = True
        logger.info(
            "Applied feedback %d for %s (category_changed=%s, ocr_corrections=%d)",
            entry.id,
            entry.transaction_id,
            outcome.category_changed,
            outcome.ocr_corrections,
        )
        return outcome

    def _learn_words(self, original: dict[str, Any], correction: dict[str, Any]) -> int:
        corrected = correction.get("description")
        if not corrected:
            return 0
        source = original.get("detectedSource") or UNKNOWN_SOURCE
        pairs = word_substitutions(original.get("description", ""), corrected)
        for old, new in pairs:
            self.store.upsert_pattern(
                source, old, PatternKind.OCR_CORRECTION, OCR_CORRECTION_ACCURACY, replacement=new
            )
        if pairs:
            logger.info("Learned %d OCR word correction(s) for %s", len(pairs), source)
        return len(pairs)

    def _learn_category(
        self, original: dict[str, Any], correction: dict[str, Any]
    ) -> tuple[str | None, bool]:
        new_category = correction.get("category")
        old_category = original.get("category")
        if not new_category or new_category == old_category:
            return original.get("merchant"), False

        description = original.get("description", "")
        key = original.get("merchant") or merchant_key(extract_merchant_name(description))
        if not key:
            logger.warning("Cannot learn category for %r: no merchant name", description)
            return None, False

        aliases = {
            normalize_text(clean_description(text))
            for text in (description, correction.get("description") or "")
        }
        aliases.discard("")
        subcategory = correction.get("subcategory")
        created: MerchantRecord | None = None

        def create() -> MerchantRecord:
            nonlocal created
            name = extract_merchant_name(description)
            created = MerchantRecord(
                name=name,
                normalized_name=key,
                category=new_category,
                subcategory=subcategory,
                confidence=NEW_MERCHANT_CONFIDENCE,
                aliases=name_variations(name),
                metadata={"source": "feedback"},
            )
            created.set_category_confidence(new_category, NEW_MERCHANT_CONFIDENCE)
            return created

        def correct(record: MerchantRecord) -> None:
            if old_category:
                old_confidence = record.category_confidence(old_category)
                if old_confidence > 0:
                    lowered = max(OLD_CATEGORY_MIN, old_confidence * OLD_CATEGORY_DECAY)
                    record.set_category_confidence(old_category, min(old_confidence, lowered))
            # A record created on this attempt already holds the new category.
            if record is not created:
                raised = min(
                    1.0,
                    max(
                        self.config.corrected_category_floor,
                        record.category_confidence(new_category) * NEW_CATEGORY_BOOST,
                    ),
                )
                record.category = new_category
                record.set_category_confidence(new_category, raised)
            record.subcategory = subcategory
            record.aliases |= aliases
            record.last_seen = utc_now()
            record.metadata["user_corrected"] = True
            record.metadata["corrected_at"] = utc_now()

        record = self.store.update_merchant(key, correct, create=create)
        logger.info(
            "Merchant %s corrected %s -> %s (confidence=%.2f)",
            key,
            old_category,
            new_category,
            record.confidence,
        )
        return key, True

    def _learn_source(
        self, original: dict[str, Any], correction: dict[str, Any], document_text: str
    ) -> bool:
        correct_source = correction.get("source")
        detected = original.get("detectedSource") or UNKNOWN_SOURCE
        if not correct_source or correct_source == detected:
            return False
        self.source_detector.learn_from_feedback(
            document_text,
            detected,
            correct_source,
            float(original.get("sourceConfidence") or 0.0),
        )
        return True

    def _train_line(self, original: dict[str, Any], correction: dict[str, Any]) -> float:
        line = original.get("rawLine") or original.get("description") or ""
        if not line:
            return 0.0
        not_transaction = correction.get("not_transaction") or correction.get("notTransaction")
        return self.line_classifier.train_step(line, 0.0 if not_transaction else 1.0)
