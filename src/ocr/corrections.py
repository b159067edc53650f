"""Post-OCR text corrections.

Applies the ordered rule groups of ``corrections.yaml``, then any
word replacements learned from user feedback, then per-line whitespace
normalization.
"""

import re
from dataclasses import dataclass
from pathlib import Path

from src.store.models import SourcePattern
from src.utils.config import load_rule_table
from src.utils.logger import get_logger

logger = get_logger(__name__)

_INLINE_SPACE = re.compile(r"[ \t\f\v]+")


@dataclass
class CorrectionRule:
    """A compiled regex replacement."""

    group: str
    pattern: re.Pattern
    replacement: str


class TextCorrector:
    """Applies OCR corrections in a fixed, deterministic order.

    Args:
        rules_path: Path to ``corrections.yaml``.
    """

    def __init__(self, rules_path: str | Path) -> None:
        self.rules = self._load_rules(rules_path)

    def _load_rules(self, path: str | Path) -> list[CorrectionRule]:
        rules = []
        for group in load_rule_table(path).get("groups", []):
            for raw in group.get("rules", []):
                flags = re.IGNORECASE if raw.get("ignore_case") else 0
                rules.append(
                    CorrectionRule(
                        group=group["name"],
                        pattern=re.compile(raw["pattern"], flags),
                        replacement=raw["replacement"],
                    )
                )
        logger.debug("Loaded %d correction rules", len(rules))
        return rules

    def correct(self, text: str, learned: list[SourcePattern] | None = None) -> str:
        """Correct OCR output.

        Args:
            text: Raw OCR text.
            learned: ``ocr_correction`` patterns from the learning store,
                applied as whole-word replacements after the fixed rules.

        Returns:
            Corrected text with line structure preserved.
        """
        for rule in self.rules:
            text = rule.pattern.sub(rule.replacement, text)

        for pattern in learned or []:
            if not pattern.replacement or pattern.replacement == pattern.pattern:
                continue
            text = re.sub(
                rf"(?<!\S){re.escape(pattern.pattern)}(?!\S)",
                lambda _m, r=pattern.replacement: r,
                text,
            )

        return normalize_whitespace(text)


def normalize_whitespace(text: str) -> str:
    """Collapse runs of blanks inside lines and drop repeated empty lines."""
    lines = [_INLINE_SPACE.sub(" ", line).strip() for line in text.splitlines()]
    result: list[str] = []
    for line in lines:
        if not line and (not result or not result[-1]):
            continue
        result.append(line)
    return "\n".join(result).strip()
