"""Transaction line extraction.

Each statement line that carries both a date and an amount becomes a
candidate transaction. The date, amount and description regexes come from
the detected source's profile, with the generic profile as a fallback for
layouts the source profile does not cover.
"""

import hashlib
import re
from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, Protocol

from src.detection.profiles import FieldPatterns, SourceProfile
from src.utils.config import ExtractionConfig
from src.utils.logger import get_logger

logger = get_logger(__name__)

CENT = Decimal("0.01")

_ISO_DATE = re.compile(r"^(\d{4})-(\d{2})-(\d{2})$")
_NUMERIC_DATE = re.compile(r"^(\d{1,2})[./-](\d{1,2})[./-](\d{2}|\d{4})$")
_CURRENCY = re.compile(r"\b(?:RON|LEI|EUR|USD|GBP)\b", re.IGNORECASE)
_DEBIT_MARKER = re.compile(r"^\s*(?:DB|DEBIT)\b", re.IGNORECASE)
_CREDIT_MARKER = re.compile(r"^\s*(?:CR|CREDIT)\b", re.IGNORECASE)
_MARKERS = re.compile(r"\b(?:DB|CR)\b")
_BALANCE_LINE = re.compile(
    r"\bsold\s+(?:initial|final|anterior|curent|disponibil)\b|\btotal\s+(?:debit|credit|rulaj)",
    re.IGNORECASE,
)
_EDGE_PUNCTUATION = " \t-|:;,*"


class TransactionType(str, Enum):
    INCOME = "income"
    EXPENSE = "expense"


@dataclass
class Transaction:
    """A statement transaction, enriched in place by the merchant classifier."""

    id: str
    date: date
    amount: Decimal
    type: TransactionType
    description: str
    raw_line: str = ""
    detected_source: str = "UNKNOWN"
    source_confidence: float = 0.0
    category: str | None = None
    subcategory: str | None = None
    confidence: float = 0.0
    merchant: str | None = None
    needs_review: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "date": self.date.isoformat(),
            "amount": f"{self.amount:.2f}",
            "type": self.type.value,
            "description": self.description,
            "category": self.category,
            "subcategory": self.subcategory,
            "confidence": round(self.confidence, 4),
            "detectedSource": self.detected_source,
            "sourceConfidence": round(self.source_confidence, 4),
            "id": self.id,
            "merchant": self.merchant,
            "needsReview": self.needs_review,
        }


class LineScorer(Protocol):
    """Scores how likely a line is a transaction row."""

    def predict(self, line: str) -> float: ...


def normalize_date(text: str, date_order: str = "DMY", century_prefix: str = "20") -> date | None:
    """Parse a statement date.

    Args:
        text: Date as found on the statement, e.g. ``"05/09/2025"``.
        date_order: ``"DMY"`` or ``"MDY"`` for numeric dates.
        century_prefix: Prepended to two-digit years.

    Returns:
        The calendar date, or None when the text is not a valid date.
    """
    text = text.strip()
    iso = _ISO_DATE.match(text)
    if iso:
        year, month, day = (int(g) for g in iso.groups())
    else:
        numeric = _NUMERIC_DATE.match(text)
        if numeric is None:
            return None
        first, second, year_text = numeric.groups()
        if len(year_text) == 2:
            year_text = century_prefix + year_text
        year = int(year_text)
        if date_order == "MDY":
            month, day = int(first), int(second)
        else:
            day, month = int(first), int(second)
    try:
        return date(year, month, day)
    except ValueError:
        return None


def normalize_amount(text: str) -> tuple[Decimal, bool] | None:
    """Parse an amount into an unsigned 2dp magnitude and a negative flag.

    Thousands separators are dropped; whichever of ``,`` and ``.`` comes
    last and is followed by exactly two digits is the decimal separator.

    Returns:
        ``(magnitude, is_negative)``, or None when no number is present.
    """
    first_digit = re.search(r"\d", text)
    if first_digit is None:
        return None
    negative = "-" in text[: first_digit.start()] or text.rstrip().endswith("-")
    digits = re.sub(r"[^\d.,]", "", text)

    last_sep = max(digits.rfind("."), digits.rfind(","))
    if last_sep >= 0 and len(digits) - last_sep - 1 == 2:
        integer = re.sub(r"[.,]", "", digits[:last_sep])
        number = f"{integer or '0'}.{digits[last_sep + 1:]}"
    else:
        number = re.sub(r"[.,]", "", digits)

    try:
        value = Decimal(number).quantize(CENT, rounding=ROUND_HALF_UP)
    except InvalidOperation:
        return None
    return value, negative


def transaction_id(document_hash: str, line_index: int, raw_line: str) -> str:
    """Stable id of a transaction line within a document."""
    key = f"{document_hash}:{line_index}:{raw_line}".encode("utf-8")
    return hashlib.sha1(key).hexdigest()[:16]


@dataclass
class _Candidate:
    date: date
    amount: Decimal
    type: TransactionType
    description: str


class LineExtractor:
    """Extracts candidate transactions from statement lines.

    Args:
        generic: Profile used when a source profile does not match a line.
        config: Extraction settings.
    """

    def __init__(self, generic: SourceProfile, config: ExtractionConfig | None = None) -> None:
        self.generic = generic
        self.config = config or ExtractionConfig()

    def _match(self, line: str, fields: FieldPatterns, date_order: str) -> _Candidate | None:
        date_match = fields.date.search(line)
        if date_match is None:
            return None
        parsed_date = normalize_date(
            date_match.group(), date_order, self.config.two_digit_year_prefix
        )
        if parsed_date is None:
            logger.debug("Impossible date %r in line %r", date_match.group(), line)
            return None

        # Later columns are usually running balances.
        amount_match = fields.amount.search(line, date_match.end())
        if amount_match is None:
            amount_match = fields.amount.search(line[: date_match.start()])
        if amount_match is None:
            return None
        parsed = normalize_amount(amount_match.group())
        if parsed is None:
            return None
        amount, negative = parsed

        trailing = line[amount_match.end():]
        if negative or _DEBIT_MARKER.match(trailing):
            kind = TransactionType.EXPENSE
        elif _CREDIT_MARKER.match(trailing):
            kind = TransactionType.INCOME
        else:
            kind = TransactionType.INCOME

        spans = sorted([date_match.span(), amount_match.span()])
        remainder = line[: spans[0][0]] + " " + line[spans[0][1]: spans[1][0]] + " " + line[spans[1][1]:]
        remainder = _MARKERS.sub(" ", _CURRENCY.sub(" ", remainder))
        remainder = " ".join(remainder.split()).strip(_EDGE_PUNCTUATION)
        if fields.description is not None:
            described = fields.description.search(remainder)
            if described:
                remainder = described.group().strip(_EDGE_PUNCTUATION)

        return _Candidate(
            date=parsed_date,
            amount=amount,
            type=kind,
            description=remainder[: self.config.description_max_length],
        )

    def extract_line(
        self,
        line: str,
        profile: SourceProfile,
        *,
        line_index: int = 0,
        document_hash: str = "",
        source_confidence: float = 0.0,
    ) -> Transaction | None:
        """Extract a transaction from one line.

        Args:
            line: Statement line.
            profile: Profile of the detected source.
            line_index: Position of the line in the document, for the id.
            document_hash: Content hash of the document, for the id.
            source_confidence: Confidence of the source detection.

        Returns:
            The transaction, or None if the line has no date and amount.
        """
        line = line.strip()
        if len(line) < self.config.min_line_length or _BALANCE_LINE.search(line):
            return None

        candidate = self._match(line, profile.fields, profile.date_order)
        if candidate is None and profile is not self.generic:
            candidate = self._match(line, self.generic.fields, profile.date_order)
        if candidate is None:
            logger.debug("No transaction in line %r", line)
            return None

        return Transaction(
            id=transaction_id(document_hash, line_index, line),
            date=candidate.date,
            amount=candidate.amount,
            type=candidate.type,
            description=candidate.description,
            raw_line=line,
            detected_source=profile.source_id,
            source_confidence=source_confidence,
        )

    def extract(
        self,
        lines: Sequence[str],
        profile: SourceProfile,
        source_confidence: float = 0.0,
        document_hash: str = "",
        scorer: LineScorer | None = None,
    ) -> list[Transaction]:
        """Extract transactions from every line of a document.

        With a ``scorer``, only lines it scores above the pre-filter
        threshold are tried first; when that yields too few transactions,
        every line is tried.

        Args:
            lines: Document lines in order.
            profile: Profile of the detected source.
            source_confidence: Confidence of the source detection.
            document_hash: Content hash of the document, for stable ids.
            scorer: Optional line pre-filter.

        Returns:
            Transactions in document order.
        """
        indices = list(range(len(lines)))

        def run(selected: list[int]) -> list[Transaction]:
            found = []
            for i in selected:
                tx = self.extract_line(
                    lines[i],
                    profile,
                    line_index=i,
                    document_hash=document_hash,
                    source_confidence=source_confidence,
                )
                if tx is not None:
                    found.append(tx)
            return found

        if scorer is None:
            return run(indices)

        selected = [i for i in indices if scorer.predict(lines[i]) > self.config.prefilter_threshold]
        transactions = run(selected)
        if len(transactions) < self.config.min_prefilter_lines:
            logger.info(
                "Pre-filter kept %d/%d lines and found %d transactions, scanning all lines",
                len(selected),
                len(lines),
                len(transactions),
            )
            transactions = run(indices)
        return transactions
