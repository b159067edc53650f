"""Text normalization and string similarity helpers.

Shared by the source detector, the line extractor and the merchant
classifier so that every component keys merchants and compares tokens
the same way.
"""

import re
import unicodedata

from rapidfuzz.distance import JaroWinkler, Levenshtein

_PAYMENT_TERMS = re.compile(
    r"\b(?:pos|card|terminal|cumparare|cumpărare|plata|plată|tranzactie|tranzacție)\b",
    re.IGNORECASE,
)
_LONG_NUMBERS = re.compile(r"\d{4,}")
_NON_WORD = re.compile(r"[^\w\s]")
_SPACES = re.compile(r"\s+")
_COMPANY_SUFFIX = re.compile(r"\s+(?:srl|sa|ltd|inc|corp)$")
_SHOP_SUFFIX = re.compile(r"\s+(?:magazine?|shop|store)$")

STOP_WORDS = frozenset({"the", "and", "or", "de", "la", "din", "cu", "pe", "si"})


def strip_diacritics(text: str) -> str:
    """Remove combining accents, e.g. ``"ș"`` becomes ``"s"``."""
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def normalize_text(text: str) -> str:
    """Lowercase, strip diacritics, replace punctuation with spaces."""
    cleaned = strip_diacritics(text.lower())
    cleaned = _NON_WORD.sub(" ", cleaned).replace("_", " ")
    return _SPACES.sub(" ", cleaned).strip()


def clean_description(description: str) -> str:
    """Drop payment boilerplate and card/reference numbers from a description."""
    cleaned = _PAYMENT_TERMS.sub(" ", description)
    cleaned = _LONG_NUMBERS.sub(" ", cleaned)
    cleaned = cleaned.replace("*", " ").replace("#", " ")
    return _SPACES.sub(" ", cleaned).strip()


def merchant_key(name: str) -> str:
    """Normalized merchant key used as the store's unique merchant id."""
    key = normalize_text(clean_description(name))
    key = re.sub(r"\d+", " ", key)
    return _SPACES.sub(" ", key).strip()


def extract_merchant_name(description: str) -> str:
    """Best guess at the counterparty name inside a transaction description.

    Keeps the first three meaningful words of the cleaned description.

    Args:
        description: Raw transaction description.

    Returns:
        Merchant name candidate, never empty for a non-empty description.
    """
    cleaned = clean_description(description)
    words = [
        word
        for word in cleaned.split()
        if len(word) > 2
        and not word.isdigit()
        and word.lower() not in STOP_WORDS
        and any(ch.isalpha() for ch in word)
    ]
    name = " ".join(words[:3]).strip()
    return name or description.strip()[:30]


def name_variations(name: str) -> set[str]:
    """Alternate forms of a merchant name registered as aliases.

    Includes the normalized name, the name without company or shop
    suffixes, and the initials of names that keep two or more words once
    the suffix is gone.
    """
    normalized = normalize_text(name)
    variations = {normalized}
    without_suffix = _SHOP_SUFFIX.sub("", _COMPANY_SUFFIX.sub("", normalized))
    variations.add(without_suffix)

    words = [w for w in without_suffix.split() if len(w) > 1]
    if len(words) > 1:
        variations.add("".join(w[0] for w in words))

    return {v for v in variations if len(v) > 1}


def contains_phrase(text: str, phrase: str) -> bool:
    """Whole-word containment test on already-normalized strings."""
    if not phrase:
        return False
    return re.search(rf"(?<!\w){re.escape(phrase)}(?!\w)", text) is not None


def jaro_winkler(a: str, b: str) -> float:
    """Jaro-Winkler similarity with the standard common-prefix bonus."""
    if not a or not b:
        return 0.0
    return JaroWinkler.normalized_similarity(a, b)


def edit_similarity(a: str, b: str) -> float:
    """Levenshtein similarity in [0, 1] relative to the longer string."""
    if not a and not b:
        return 1.0
    return Levenshtein.normalized_similarity(a, b)
