"""Merchant classification.

Five-stage cascade over a transaction description: exact merchant key,
alias network, fuzzy name similarity, category regex scoring, and a small
heuristic fallback. The first three stages resolve known merchants from a
store snapshot; the last two derive a category and register the merchant
so later sightings resolve at the cheaper stages.
"""

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from src.classification.category_rules import CategoryRules
from src.extraction.line_extractor import Transaction
from src.store.learning_store import LearningStore
from src.store.models import MerchantRecord, MerchantSnapshot, PerformanceSample, utc_now
from src.utils.cascade import Stage, StageResult, run_cascade
from src.utils.config import ClassificationConfig
from src.utils.logger import get_logger
from src.utils.text import (
    clean_description,
    contains_phrase,
    extract_merchant_name,
    jaro_winkler,
    merchant_key,
    name_variations,
    normalize_text,
    strip_diacritics,
)

logger = get_logger(__name__)

EXACT_CONFIDENCE = 0.95
ALIAS_CONFIDENCE = 0.9
FUZZY_NAME_FACTOR = 0.9
FUZZY_ALIAS_FACTOR = 0.85
CATEGORY_MAX_CONFIDENCE = 0.9
SEEDED_CONFIDENCE = 0.9
MIN_CONTAINED_ALIAS = 3


@dataclass
class ClassificationContext:
    """Per-document state carried between consecutive classifications."""

    previous_category: str | None = None


@dataclass
class MerchantMatch:
    """Outcome of classifying one description."""

    name: str
    normalized_name: str
    category: str
    subcategory: str | None
    confidence: float
    method: str
    needs_review: bool = False
    merchant_created: bool = False
    stages: list[StageResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "normalized_name": self.normalized_name,
            "category": self.category,
            "subcategory": self.subcategory,
            "confidence": round(self.confidence, 4),
            "method": self.method,
            "needs_review": self.needs_review,
            "merchant_created": self.merchant_created,
        }


@dataclass
class _Hit:
    category: str | None
    subcategory: str | None = None
    record: MerchantRecord | None = None


@dataclass
class _Query:
    """Normalized forms of one description."""

    description: str
    amount: Decimal | None
    normalized: str
    candidate: str
    candidate_normalized: str
    keys: list[str]

    @classmethod
    def build(cls, description: str, amount: Decimal | None) -> "_Query":
        candidate = extract_merchant_name(description)
        keys = [k for k in dict.fromkeys([merchant_key(description), merchant_key(candidate)]) if k]
        return cls(
            description=description,
            amount=amount,
            normalized=normalize_text(clean_description(description)),
            candidate=candidate,
            candidate_normalized=normalize_text(candidate),
            keys=keys,
        )


class MerchantClassifier:
    """Assigns a merchant and category to transaction descriptions.

    Args:
        store: Learning store with the merchant records.
        rules: Compiled category table.
        config: Stage floors and review threshold.
    """

    def __init__(
        self,
        store: LearningStore,
        rules: CategoryRules,
        config: ClassificationConfig | None = None,
    ) -> None:
        self.store = store
        self.rules = rules
        self.config = config or ClassificationConfig()

    def _trusted_confidence(self, record: MerchantRecord, base: float) -> float:
        # Weak records may only confirm themselves at their own confidence.
        if record.confidence >= self.config.category_floor:
            return base
        return min(base, record.confidence)

    def _known(self, method: str, record: MerchantRecord, base: float) -> StageResult[_Hit]:
        return StageResult(
            method=method,
            confidence=self._trusted_confidence(record, base),
            payload=_Hit(record.category, record.subcategory, record),
        )

    def _match_exact(self, query: _Query, snapshot: MerchantSnapshot) -> StageResult[_Hit]:
        for key in query.keys:
            record = snapshot.get(key)
            if record is not None:
                return self._known("exact", record, EXACT_CONFIDENCE)
        return StageResult(method="exact", confidence=0.0)

    def _match_alias(self, query: _Query, snapshot: MerchantSnapshot) -> StageResult[_Hit]:
        for alias in (query.normalized, query.candidate_normalized):
            record = snapshot.by_alias(alias) if alias else None
            if record is not None:
                return self._known("alias", record, ALIAS_CONFIDENCE)

        contained = [
            alias
            for alias in snapshot.alias_index
            if len(alias) >= MIN_CONTAINED_ALIAS and contains_phrase(query.normalized, alias)
        ]
        if contained:
            longest = max(contained, key=lambda a: (len(a), a))
            record = snapshot.by_alias(longest)
            if record is not None:
                return self._known("alias", record, ALIAS_CONFIDENCE)
        return StageResult(method="alias", confidence=0.0)

    def _match_fuzzy(self, query: _Query, snapshot: MerchantSnapshot) -> StageResult[_Hit]:
        probes = [p for p in dict.fromkeys([query.normalized, query.candidate_normalized]) if p]
        best = StageResult[_Hit](method="fuzzy", confidence=0.0)
        if not probes:
            return best

        def consider(record: MerchantRecord | None, target: str, factor: float) -> None:
            nonlocal best
            if record is None:
                return
            similarity = max(jaro_winkler(p, target) for p in probes)
            confidence = self._trusted_confidence(record, similarity * factor)
            if confidence > best.confidence:
                best = StageResult(
                    method="fuzzy",
                    confidence=confidence,
                    payload=_Hit(record.category, record.subcategory, record),
                )

        for key, record in snapshot.merchants.items():
            consider(record, key, FUZZY_NAME_FACTOR)
        for alias in snapshot.alias_index:
            consider(snapshot.by_alias(alias), alias, FUZZY_ALIAS_FACTOR)
        return best

    def _match_category(
        self, query: _Query, context: ClassificationContext
    ) -> StageResult[_Hit]:
        text = strip_diacritics(clean_description(query.description))
        best = StageResult[_Hit](method="category", confidence=0.0)
        for rule in self.rules.categories.values():
            hits = sum(1 for pattern in rule.patterns if pattern.search(text))
            subcategory = rule.first_subcategory(text)
            score = (0.3 * hits + (0.4 if subcategory else 0.0)) * rule.weight
            if score <= 0:
                continue
            if context.previous_category == rule.name:
                score *= 1.1
            if rule.in_typical_range(query.amount):
                score *= 1.05
            confidence = min(score, CATEGORY_MAX_CONFIDENCE)
            if confidence > best.confidence:
                best = StageResult(
                    method="category",
                    confidence=confidence,
                    payload=_Hit(rule.name, subcategory),
                )
        return best

    def _match_heuristic(self, query: _Query) -> StageResult[_Hit]:
        """Fixed decision procedure over a few lexical features."""
        word_count = len(query.normalized.split())
        payment = self.rules.heuristic("payment_terms", strip_diacritics(query.description))
        transport = self.rules.heuristic("transport", query.normalized)
        electronics = self.rules.heuristic("electronics", query.normalized)

        category: str | None = None
        confidence = 0.3
        if payment:
            if word_count < 3:
                category, confidence = "ATM", 0.7
            elif transport:
                category, confidence = "Transport", 0.6
        if category is None and self.rules.heuristic("food", query.normalized):
            category, confidence = "Restaurante", 0.5

        if query.amount is not None:
            if query.amount < 10 and transport:
                category, confidence = "Transport", max(confidence, 0.6)
            elif query.amount > 500 and electronics:
                category, confidence = "Electronice", max(confidence, 0.5)

        return StageResult(method="heuristic", confidence=confidence, payload=_Hit(category))

    def _record_sample(self, result: StageResult) -> None:
        self.store.log_performance(
            PerformanceSample(
                operation=f"classification.{result.method}",
                duration_ms=result.duration_ms,
                confidence=result.confidence,
                metadata={"category": result.payload.category if result.matched else None},
            )
        )

    def classify(
        self,
        description: str,
        amount: Decimal | None = None,
        context: ClassificationContext | None = None,
    ) -> MerchantMatch:
        """Classify a transaction description.

        Known merchants (stages 1-3) get their occurrence count bumped;
        category and heuristic results register a new merchant record.

        Args:
            description: Transaction description.
            amount: Unsigned transaction amount, if known.
            context: State of the surrounding document.

        Returns:
            The merchant match, ``Uncategorized`` with ``needs_review`` when
            nothing is confident enough.
        """
        context = context or ClassificationContext()
        query = _Query.build(description, amount)
        snapshot = self.store.snapshot()
        floors = self.config

        stages: list[Stage[_Hit]] = [
            Stage("exact", lambda: self._match_exact(query, snapshot), floors.exact_floor),
            Stage("alias", lambda: self._match_alias(query, snapshot), floors.alias_floor),
            Stage("fuzzy", lambda: self._match_fuzzy(query, snapshot), floors.fuzzy_floor),
            Stage("category", lambda: self._match_category(query, context), floors.category_floor),
            Stage("heuristic", lambda: self._match_heuristic(query)),
        ]
        outcome = run_cascade(stages, logger, "classification", on_stage=self._record_sample)
        result = outcome.result
        hit = result.payload

        if hit.record is not None:
            self.store.touch_merchant(hit.record.normalized_name)
            return MerchantMatch(
                name=hit.record.name,
                normalized_name=hit.record.normalized_name,
                category=hit.record.category,
                subcategory=hit.record.subcategory,
                confidence=result.confidence,
                method=result.method,
                needs_review=result.confidence < floors.review_threshold,
                stages=outcome.trail,
            )

        key = merchant_key(query.candidate)
        if hit.category is None or result.confidence < floors.review_threshold:
            logger.info("No confident category for %r, flagging for review", description)
            return MerchantMatch(
                name=query.candidate,
                normalized_name=key,
                category=floors.uncategorized_label,
                subcategory=None,
                confidence=result.confidence,
                method=result.method,
                needs_review=True,
                stages=outcome.trail,
            )

        created = False
        if key:
            created = snapshot.get(key) is None
            self.store.upsert_merchant(
                MerchantRecord(
                    name=query.candidate,
                    normalized_name=key,
                    category=hit.category,
                    subcategory=hit.subcategory,
                    confidence=result.confidence,
                    aliases={a for a in (query.candidate_normalized, query.normalized) if a}
                    | name_variations(query.candidate),
                    metadata={"source": f"auto_{result.method}"},
                )
            )
        return MerchantMatch(
            name=query.candidate,
            normalized_name=key,
            category=hit.category,
            subcategory=hit.subcategory,
            confidence=result.confidence,
            method=result.method,
            merchant_created=created,
            stages=outcome.trail,
        )

    def enrich(
        self, transaction: Transaction, context: ClassificationContext | None = None
    ) -> MerchantMatch:
        """Classify a transaction and write the result onto it.

        ``context.previous_category`` is advanced to the new category.
        """
        match = self.classify(transaction.description, transaction.amount, context)
        transaction.category = match.category
        transaction.subcategory = match.subcategory
        transaction.confidence = match.confidence
        transaction.merchant = match.normalized_name or None
        transaction.needs_review = match.needs_review
        if context is not None and not match.needs_review:
            context.previous_category = match.category
        return match

    def seed_known_merchants(self) -> int:
        """Insert the well-known merchants of the category table when absent.

        Returns:
            Number of merchants inserted.
        """
        inserted = 0
        for known in self.rules.known_merchants:
            key = merchant_key(known.name)
            if not key:
                continue
            record = MerchantRecord(
                name=known.name,
                normalized_name=key,
                category=known.category,
                subcategory=known.subcategory,
                confidence=SEEDED_CONFIDENCE,
                aliases={normalize_text(a) for a in known.aliases} | name_variations(known.name),
                metadata={"seeded": True},
            )
            record.set_category_confidence(known.category, SEEDED_CONFIDENCE)
            if self.store.ensure_merchant(record):
                inserted += 1
        if inserted:
            logger.info("Seeded %d known merchants", inserted)
        return inserted

    def categories(self) -> list[str]:
        return self.rules.names()

    def category_hierarchy(self) -> dict[str, list[str]]:
        return self.rules.hierarchy()

    def merchants_by_category(self, category: str) -> list[MerchantRecord]:
        return self.store.merchants_by_category(category)

    def export_merchants(self) -> dict[str, Any]:
        return {
            "merchants": [m.to_dict() for m in self.store.all_merchants()],
            "categories": self.categories(),
            "exported_at": utc_now(),
        }

    def import_merchants(self, data: dict[str, Any]) -> int:
        """Merge exported merchants into the store.

        Returns:
            Number of merchants merged.
        """
        merchants = data.get("merchants", [])
        for item in merchants:
            self.store.upsert_merchant(MerchantRecord.from_dict(item))
        logger.info("Imported %d merchants", len(merchants))
        return len(merchants)
