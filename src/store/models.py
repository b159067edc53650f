"""Records persisted by the learning store."""

import json
import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from types import MappingProxyType
from typing import Any

import numpy as np


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string."""
    return datetime.now(timezone.utc).isoformat()


class PatternKind(str, Enum):
    """Kind of a learned source pattern."""

    SIGNATURE = "signature"
    DOCUMENT_REGEX = "document_regex"
    FIELD_REGEX = "field_regex"
    OCR_CORRECTION = "ocr_correction"


@dataclass
class SourcePattern:
    """A signature, regex, or OCR correction learned for an issuing source."""

    source_id: str
    pattern: str
    kind: PatternKind
    accuracy: float
    usage_count: int = 0
    last_used: str | None = None
    replacement: str | None = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "SourcePattern":
        return cls(
            source_id=row["source_id"],
            pattern=row["pattern"],
            kind=PatternKind(row["kind"]),
            accuracy=row["accuracy"],
            usage_count=row["usage_count"],
            last_used=row["last_used"],
            replacement=row["replacement"],
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "pattern": self.pattern,
            "kind": self.kind.value,
            "accuracy": self.accuracy,
            "usage_count": self.usage_count,
            "last_used": self.last_used,
            "replacement": self.replacement,
        }


@dataclass
class MerchantRecord:
    """A known merchant, keyed by its normalized name.

    ``confidence`` is the confidence of the current ``category``; the
    confidences of every category ever assigned live in
    ``metadata["category_confidence"]``.
    """

    name: str
    normalized_name: str
    category: str
    subcategory: str | None = None
    confidence: float = 0.0
    aliases: set[str] = field(default_factory=set)
    occurrences: int = 1
    last_seen: str = field(default_factory=utc_now)
    metadata: dict[str, Any] = field(default_factory=dict)
    version: int = 0

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "MerchantRecord":
        return cls(
            name=row["name"],
            normalized_name=row["normalized_name"],
            category=row["category"],
            subcategory=row["subcategory"],
            confidence=row["confidence"],
            aliases=set(json.loads(row["aliases"])) if row["aliases"] else set(),
            occurrences=row["occurrences"],
            last_seen=row["last_seen"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
            version=row["version"],
        )

    def category_confidence(self, category: str) -> float:
        """Confidence recorded for ``category``, 0.0 if never assigned."""
        if category == self.category:
            return self.confidence
        return float(self.metadata.get("category_confidence", {}).get(category, 0.0))

    def set_category_confidence(self, category: str, confidence: float) -> None:
        scores = dict(self.metadata.get("category_confidence", {}))
        scores[category] = confidence
        self.metadata["category_confidence"] = scores
        if category == self.category:
            self.confidence = confidence

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "normalized_name": self.normalized_name,
            "category": self.category,
            "subcategory": self.subcategory,
            "confidence": self.confidence,
            "aliases": sorted(self.aliases),
            "occurrences": self.occurrences,
            "last_seen": self.last_seen,
            "metadata": self.metadata,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "MerchantRecord":
        return cls(
            name=data["name"],
            normalized_name=data["normalized_name"],
            category=data["category"],
            subcategory=data.get("subcategory"),
            confidence=float(data.get("confidence", 0.0)),
            aliases=set(data.get("aliases", [])),
            occurrences=int(data.get("occurrences", 1)),
            last_seen=data.get("last_seen") or utc_now(),
            metadata=dict(data.get("metadata", {})),
        )


@dataclass(frozen=True)
class MerchantSnapshot:
    """Immutable view of all merchants, taken once per classification.

    Attributes:
        revision: Store revision the snapshot was built from.
        merchants: Records keyed by normalized name.
        alias_index: Alias to normalized merchant name.
    """

    revision: int
    merchants: MappingProxyType
    alias_index: MappingProxyType

    def get(self, normalized_name: str) -> MerchantRecord | None:
        return self.merchants.get(normalized_name)

    def by_alias(self, alias: str) -> MerchantRecord | None:
        key = self.alias_index.get(alias)
        return self.merchants.get(key) if key is not None else None

    def __len__(self) -> int:
        return len(self.merchants)


@dataclass
class FeedbackEntry:
    """An immutable record of one user correction."""

    id: int
    transaction_id: str
    original: dict[str, Any]
    correction: dict[str, Any]
    timestamp: str
    applied: bool = False

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "FeedbackEntry":
        return cls(
            id=row["id"],
            transaction_id=row["transaction_id"],
            original=json.loads(row["original"]),
            correction=json.loads(row["correction"]),
            timestamp=row["timestamp"],
            applied=bool(row["applied"]),
        )


@dataclass
class ClassifierWeights:
    """Dense weights of the line classifier, versioned on every save."""

    name: str
    w_hidden: np.ndarray
    b_hidden: np.ndarray
    w_out: np.ndarray
    b_out: np.ndarray
    version: int = 0
    updated_at: str = field(default_factory=utc_now)

    def to_json(self) -> str:
        return json.dumps(
            {
                "w_hidden": self.w_hidden.tolist(),
                "b_hidden": self.b_hidden.tolist(),
                "w_out": self.w_out.tolist(),
                "b_out": self.b_out.tolist(),
            }
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ClassifierWeights":
        data = json.loads(row["weights"])
        return cls(
            name=row["name"],
            w_hidden=np.asarray(data["w_hidden"], dtype=float),
            b_hidden=np.asarray(data["b_hidden"], dtype=float),
            w_out=np.asarray(data["w_out"], dtype=float),
            b_out=np.asarray(data["b_out"], dtype=float),
            version=row["version"],
            updated_at=row["updated_at"],
        )


@dataclass
class PerformanceSample:
    """Duration and confidence of one pipeline operation."""

    operation: str
    duration_ms: float
    confidence: float
    timestamp: str = field(default_factory=utc_now)
    metadata: dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "PerformanceSample":
        return cls(
            operation=row["operation"],
            duration_ms=row["duration_ms"],
            confidence=row["confidence"],
            timestamp=row["timestamp"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else {},
        )


@dataclass
class OCRCacheEntry:
    """Normalized text cached by document content hash."""

    content_hash: str
    text: str
    confidence: float
    method: str
    page_count: int
    timestamp: str = field(default_factory=utc_now)

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "OCRCacheEntry":
        return cls(
            content_hash=row["content_hash"],
            text=row["text"],
            confidence=row["confidence"],
            method=row["method"],
            page_count=row["page_count"],
            timestamp=row["timestamp"],
        )
