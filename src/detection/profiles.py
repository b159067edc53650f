"""Issuing-source profiles loaded from the ``sources.yaml`` rule table."""

import re
from dataclasses import dataclass, field
from pathlib import Path

from src.store.learning_store import LearningStore
from src.store.models import PatternKind
from src.utils.config import load_rule_table
from src.utils.logger import get_logger

logger = get_logger(__name__)

UNKNOWN_SOURCE = "UNKNOWN"


@dataclass
class HeuristicRule:
    """A weighted boolean document feature."""

    feature: str
    weight: float


@dataclass
class FieldPatterns:
    """Per-line regexes used by the line extractor."""

    date: re.Pattern
    amount: re.Pattern
    description: re.Pattern | None = None


@dataclass
class SourceProfile:
    """Everything known up front about one issuing source.

    Attributes:
        source_id: Short id such as ``"BCR"``.
        name: Display name.
        accuracy: Baseline accuracy seeded into the store.
        date_order: ``"DMY"`` or ``"MDY"`` for ambiguous numeric dates.
        signatures: Literal phrases identifying the source.
        document_patterns: Regexes matched against the whole document.
        fields: Line-level regexes.
        heuristics: Weighted features for the heuristic stage.
        keywords: Tokens for the fuzzy fallback stage.
    """

    source_id: str
    name: str
    accuracy: float
    date_order: str
    fields: FieldPatterns
    signatures: list[str] = field(default_factory=list)
    document_patterns: list[str] = field(default_factory=list)
    heuristics: list[HeuristicRule] = field(default_factory=list)
    keywords: list[str] = field(default_factory=list)


@dataclass
class ProfileTable:
    """All source profiles plus the shared heuristic feature regexes."""

    profiles: dict[str, SourceProfile]
    features: dict[str, re.Pattern]

    def get(self, source_id: str | None) -> SourceProfile:
        """Profile for ``source_id``, falling back to the generic profile."""
        if source_id and source_id in self.profiles:
            return self.profiles[source_id]
        return self.profiles[UNKNOWN_SOURCE]

    @property
    def generic(self) -> SourceProfile:
        return self.profiles[UNKNOWN_SOURCE]

    def known_sources(self) -> list[SourceProfile]:
        return [p for sid, p in self.profiles.items() if sid != UNKNOWN_SOURCE]


_GENERIC_FIELDS = {
    "date": r"\b(?:\d{4}-\d{2}-\d{2}|\d{2}[./-]\d{2}[./-](?:\d{4}|\d{2}))\b",
    "amount": r"(?<![\d.,])(?:[+-]\s?)?\d+[.,]\d{2}(?!\d)",
}


def _compile_fields(raw: dict) -> FieldPatterns:
    description = raw.get("description")
    return FieldPatterns(
        date=re.compile(raw.get("date", _GENERIC_FIELDS["date"])),
        amount=re.compile(raw.get("amount", _GENERIC_FIELDS["amount"]), re.IGNORECASE),
        description=re.compile(description, re.IGNORECASE) if description else None,
    )


def load_source_profiles(path: str | Path) -> ProfileTable:
    """Load and compile the source profile table.

    A generic ``UNKNOWN`` profile is always present, even when the table
    does not define one.

    Args:
        path: Path to ``sources.yaml``.

    Returns:
        Compiled profile table.
    """
    data = load_rule_table(path)
    features = {
        name: re.compile(pattern, re.IGNORECASE)
        for name, pattern in data.get("features", {}).items()
    }

    profiles: dict[str, SourceProfile] = {}
    for source_id, raw in data.get("sources", {}).items():
        profiles[source_id] = SourceProfile(
            source_id=source_id,
            name=raw.get("name", source_id),
            accuracy=float(raw.get("accuracy", 0.5)),
            date_order=raw.get("date_order", "DMY"),
            fields=_compile_fields(raw.get("fields", {})),
            signatures=list(raw.get("signatures", [])),
            document_patterns=list(raw.get("document_patterns", [])),
            heuristics=[
                HeuristicRule(feature=h["feature"], weight=float(h["weight"]))
                for h in raw.get("heuristics", [])
            ],
            keywords=[k.lower() for k in raw.get("keywords", [])],
        )

    if UNKNOWN_SOURCE not in profiles:
        profiles[UNKNOWN_SOURCE] = SourceProfile(
            source_id=UNKNOWN_SOURCE,
            name="Unknown issuer",
            accuracy=0.5,
            date_order="DMY",
            fields=_compile_fields({}),
        )

    logger.info("Loaded %d source profiles from %s", len(profiles), path)
    return ProfileTable(profiles=profiles, features=features)


def seed_source_patterns(store: LearningStore, table: ProfileTable) -> int:
    """Upsert every profile's signatures and regexes into the store.

    Safe to call on every start: upserts only ever raise accuracy.

    Returns:
        Number of patterns written.
    """
    count = 0
    for profile in table.known_sources():
        for signature in profile.signatures:
            store.upsert_pattern(
                profile.source_id, signature, PatternKind.SIGNATURE, profile.accuracy
            )
            count += 1
        for pattern in profile.document_patterns:
            store.upsert_pattern(
                profile.source_id, pattern, PatternKind.DOCUMENT_REGEX, profile.accuracy
            )
            count += 1
        for name in ("date", "amount", "description"):
            regex = getattr(profile.fields, name)
            if regex is not None:
                store.upsert_pattern(
                    profile.source_id, regex.pattern, PatternKind.FIELD_REGEX, profile.accuracy
                )
                count += 1
    logger.info("Seeded %d source patterns", count)
    return count
