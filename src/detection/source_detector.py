"""Issuing-source detection.

Runs a four-stage cascade over the normalized document text: literal
signatures, whole-document regexes, weighted structural heuristics, and a
fuzzy keyword fallback. Each stage is timed, logged, and recorded in the
learning store so per-method accuracy can be tracked.
"""

import re
from dataclasses import dataclass, field
from functools import lru_cache

from src.detection.profiles import UNKNOWN_SOURCE, ProfileTable
from src.store.learning_store import LearningStore
from src.store.models import PatternKind, PerformanceSample, SourcePattern
from src.utils.cascade import Stage, StageResult, run_cascade
from src.utils.config import DetectionConfig
from src.utils.logger import get_logger
from src.utils.text import edit_similarity, normalize_text, strip_diacritics

logger = get_logger(__name__)

LEARNED_SIGNATURE_LENGTH = 100


@dataclass
class SourceMatch:
    """Winning source of a stage and the patterns that matched."""

    source_id: str
    patterns: list[str] = field(default_factory=list)


@dataclass
class SourceDetection:
    """Outcome of source detection."""

    source: str
    confidence: float
    method: str
    stages: list[StageResult] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "source": self.source,
            "confidence": round(self.confidence, 4),
            "method": self.method,
            "stages": [
                {
                    "method": s.method,
                    "confidence": round(s.confidence, 4),
                    "duration_ms": round(s.duration_ms, 3),
                }
                for s in self.stages
            ],
        }


@lru_cache(maxsize=1024)
def _signature_regex(signature: str) -> re.Pattern:
    words = strip_diacritics(signature).lower().split()
    body = r"\s+".join(re.escape(w) for w in words)
    return re.compile(rf"(?<!\w){body}(?!\w)")


@lru_cache(maxsize=1024)
def _document_regex(pattern: str) -> re.Pattern | None:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as e:
        logger.warning("Skipping invalid document pattern %r: %s", pattern, e)
        return None


class SourceDetector:
    """Identifies which institution issued a statement.

    Args:
        store: Learning store holding seeded and learned source patterns.
        profiles: Compiled source profiles.
        config: Stage thresholds; defaults when omitted.
    """

    def __init__(
        self,
        store: LearningStore,
        profiles: ProfileTable,
        config: DetectionConfig | None = None,
    ) -> None:
        self.store = store
        self.profiles = profiles
        self.config = config or DetectionConfig()

    def detect(self, text: str) -> SourceDetection:
        """Detect the issuing source of ``text``.

        Args:
            text: Normalized document text.

        Returns:
            Detected source (possibly ``UNKNOWN``), confidence, winning
            method, and the result of every stage that ran.
        """
        if not text.strip():
            logger.info("Empty text, source is %s", UNKNOWN_SOURCE)
            return SourceDetection(source=UNKNOWN_SOURCE, confidence=0.0, method="empty")

        folded = strip_diacritics(text).lower()
        stages: list[Stage[SourceMatch]] = [
            Stage("signature", lambda: self._match_signatures(folded), self.config.signature_threshold),
            Stage(
                "document_pattern",
                lambda: self._match_document_patterns(text),
                self.config.pattern_threshold,
            ),
            Stage("heuristics", lambda: self._match_heuristics(text), self.config.heuristic_threshold),
            Stage("fuzzy", lambda: self._match_keywords(text)),
        ]
        outcome = run_cascade(stages, logger, "detection", on_stage=self._record_sample)
        result = outcome.result

        if not result.matched:
            return SourceDetection(
                source=UNKNOWN_SOURCE,
                confidence=result.confidence,
                method=result.method,
                stages=outcome.trail,
            )

        if result.method in ("signature", "document_pattern"):
            for pattern in result.payload.patterns:
                self.store.record_pattern_use(result.payload.source_id, pattern)

        logger.info(
            "Detected source %s via %s (confidence=%.3f)",
            result.payload.source_id,
            result.method,
            result.confidence,
        )
        return SourceDetection(
            source=result.payload.source_id,
            confidence=result.confidence,
            method=result.method,
            stages=outcome.trail,
        )

    def _record_sample(self, result: StageResult) -> None:
        self.store.log_performance(
            PerformanceSample(
                operation=f"detection.{result.method}",
                duration_ms=result.duration_ms,
                confidence=result.confidence,
                metadata={"source": result.payload.source_id if result.matched else None},
            )
        )

    def _signature_confidence(self, pattern: SourcePattern, folded: str) -> float:
        match = _signature_regex(pattern.pattern).search(folded)
        if match is None:
            return 0.0
        if match.start() <= len(folded) * self.config.head_ratio:
            relevance = 1.0
        else:
            length_factor = min(1.0, 10 * len(pattern.pattern) / len(folded))
            relevance = 0.55 + 0.45 * length_factor
        weight = self.config.accuracy_weight
        return relevance * ((1 - weight) + weight * pattern.accuracy)

    def _match_signatures(self, folded: str) -> StageResult[SourceMatch]:
        # Among confident matches the longest signature wins, so a full bank
        # name outranks a short token such as a product name.
        best = StageResult[SourceMatch](method="signature", confidence=0.0)
        best_rank: tuple[bool, int, float] = (False, 0, 0.0)
        for pattern in self.store.patterns_by_kind(PatternKind.SIGNATURE):
            confidence = self._signature_confidence(pattern, folded)
            if confidence <= 0.0:
                continue
            confident = confidence >= self.config.signature_threshold
            rank = (confident, len(pattern.pattern) if confident else 0, confidence)
            if rank > best_rank:
                best_rank = rank
                best = StageResult(
                    method="signature",
                    confidence=confidence,
                    payload=SourceMatch(pattern.source_id, [pattern.pattern]),
                )
        return best

    def _match_document_patterns(self, text: str) -> StageResult[SourceMatch]:
        by_source: dict[str, list[SourcePattern]] = {}
        for pattern in self.store.patterns_by_kind(PatternKind.DOCUMENT_REGEX):
            by_source.setdefault(pattern.source_id, []).append(pattern)

        best = StageResult[SourceMatch](method="document_pattern", confidence=0.0)
        for source_id, patterns in by_source.items():
            matched = []
            for pattern in patterns:
                regex = _document_regex(pattern.pattern)
                if regex is not None and regex.search(text):
                    matched.append(pattern)
            if not matched:
                continue
            mean_accuracy = sum(p.accuracy for p in patterns) / len(patterns)
            confidence = len(matched) / len(patterns) * mean_accuracy
            if confidence > best.confidence:
                best = StageResult(
                    method="document_pattern",
                    confidence=confidence,
                    payload=SourceMatch(source_id, [p.pattern for p in matched]),
                )
        return best

    def _match_heuristics(self, text: str) -> StageResult[SourceMatch]:
        present = {
            name for name, regex in self.profiles.features.items() if regex.search(text)
        }
        best = StageResult[SourceMatch](method="heuristics", confidence=0.0)
        for profile in self.profiles.known_sources():
            total = sum(rule.weight for rule in profile.heuristics)
            if total <= 0:
                continue
            score = sum(rule.weight for rule in profile.heuristics if rule.feature in present)
            confidence = score / total * 0.8
            if confidence > best.confidence:
                best = StageResult(
                    method="heuristics",
                    confidence=confidence,
                    payload=SourceMatch(profile.source_id),
                )
        return best

    def _match_keywords(self, text: str) -> StageResult[SourceMatch]:
        tokens = set(normalize_text(text).split())
        best = StageResult[SourceMatch](method="fuzzy", confidence=0.0)
        if not tokens:
            return best

        threshold = self.config.fuzzy_token_threshold
        cap = self.config.fuzzy_max_confidence
        for profile in self.profiles.known_sources():
            if not profile.keywords:
                continue
            hits = sum(
                1
                for keyword in profile.keywords
                if any(edit_similarity(token, keyword) > threshold for token in tokens)
            )
            confidence = min(cap, cap * hits / len(profile.keywords))
            if confidence > best.confidence:
                best = StageResult(
                    method="fuzzy",
                    confidence=confidence,
                    payload=SourceMatch(profile.source_id),
                )
        return best

    def learn_from_feedback(
        self,
        text: str,
        detected_source: str,
        correct_source: str,
        confidence: float = 0.0,
    ) -> None:
        """Adjust pattern accuracy after a user confirmed or corrected a source.

        A correction also learns the head of the document as a new
        signature for the correct source.

        Args:
            text: Document text the detection ran on; may be empty.
            detected_source: Source the detector returned.
            correct_source: Source the user says is right.
            confidence: Confidence of the original detection.
        """
        correct = detected_source == correct_source
        if not correct and text.strip() and correct_source != UNKNOWN_SOURCE:
            signature = _document_head(text)
            if signature:
                self.store.upsert_pattern(
                    correct_source, signature, PatternKind.SIGNATURE, max(confidence, 0.8)
                )
                logger.info("Learned signature for %s from feedback", correct_source)

        if detected_source == UNKNOWN_SOURCE:
            return
        target = 1.0 if correct else 0.0
        for pattern in self.store.patterns_for_source(detected_source):
            if pattern.kind in (PatternKind.SIGNATURE, PatternKind.DOCUMENT_REGEX):
                self.store.adjust_pattern_accuracy(detected_source, pattern.pattern, target)


def _document_head(text: str) -> str:
    """First characters of a document, cut back to a whole word."""
    head = text[:LEARNED_SIGNATURE_LENGTH]
    if len(text) > LEARNED_SIGNATURE_LENGTH and text[LEARNED_SIGNATURE_LENGTH].isalnum():
        cut = max(head.rfind(" "), head.rfind("\n"))
        if cut > 0:
            head = head[:cut]
    return " ".join(head.split())
