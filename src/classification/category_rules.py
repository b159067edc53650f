"""Category rule table.

Compiles ``categories.yaml`` into regexes for the category-pattern and
heuristic stages of the merchant classifier, and lists the well-known
merchants seeded into the learning store.
"""

import re
from dataclasses import dataclass, field
from decimal import Decimal
from pathlib import Path

from src.utils.config import load_rule_table
from src.utils.logger import get_logger

logger = get_logger(__name__)


@dataclass
class CategoryRule:
    """Patterns and scoring parameters of one category."""

    name: str
    weight: float
    patterns: list[re.Pattern]
    subcategories: dict[str, re.Pattern]
    typical_amount: tuple[Decimal, Decimal] | None = None

    def in_typical_range(self, amount: Decimal | None) -> bool:
        if amount is None or self.typical_amount is None:
            return False
        low, high = self.typical_amount
        return low <= amount <= high

    def first_subcategory(self, text: str) -> str | None:
        for name, pattern in self.subcategories.items():
            if pattern.search(text):
                return name
        return None


@dataclass
class KnownMerchant:
    name: str
    category: str
    subcategory: str | None = None
    aliases: list[str] = field(default_factory=list)


@dataclass
class CategoryRules:
    """Everything the merchant classifier reads from the category table."""

    categories: dict[str, CategoryRule]
    heuristics: dict[str, re.Pattern]
    known_merchants: list[KnownMerchant]

    def names(self) -> list[str]:
        return list(self.categories)

    def hierarchy(self) -> dict[str, list[str]]:
        return {name: list(rule.subcategories) for name, rule in self.categories.items()}

    def heuristic(self, name: str, text: str) -> bool:
        pattern = self.heuristics.get(name)
        return pattern is not None and pattern.search(text) is not None


def _compile(pattern: str, where: str) -> re.Pattern:
    try:
        return re.compile(pattern, re.IGNORECASE)
    except re.error as exc:
        raise ValueError(f"Invalid regex in {where}: {pattern!r} ({exc})") from exc


def load_category_rules(path: str | Path) -> CategoryRules:
    """Load and compile a category table.

    Args:
        path: Path to the categories YAML file.

    Returns:
        Compiled rules; empty when the file is missing.

    Raises:
        ValueError: If a regex in the table does not compile.
    """
    raw = load_rule_table(path)

    categories: dict[str, CategoryRule] = {}
    for name, entry in (raw.get("categories") or {}).items():
        typical = entry.get("typical_amount")
        categories[name] = CategoryRule(
            name=name,
            weight=float(entry.get("weight", 1.0)),
            patterns=[_compile(p, name) for p in entry.get("patterns", [])],
            subcategories={
                sub: _compile(p, f"{name}/{sub}")
                for sub, p in (entry.get("subcategories") or {}).items()
            },
            typical_amount=(Decimal(str(typical[0])), Decimal(str(typical[1]))) if typical else None,
        )

    heuristics = {
        name: _compile(pattern, f"heuristics/{name}")
        for name, pattern in (raw.get("heuristics") or {}).items()
    }
    known = [
        KnownMerchant(
            name=item["name"],
            category=item["category"],
            subcategory=item.get("subcategory"),
            aliases=list(item.get("aliases", [])),
        )
        for item in raw.get("known_merchants", [])
    ]

    logger.info(
        "Loaded %d categories, %d heuristics, %d known merchants",
        len(categories),
        len(heuristics),
        len(known),
    )
    return CategoryRules(categories=categories, heuristics=heuristics, known_merchants=known)
