"""
Utility functions and constants for matching.
"""

import datetime as dt
import re
from typing import Iterable, List, Optional, Sequence

from rapidfuzz.distance import Levenshtein

# Words that carry no identity signal in bank descriptions or counterparty names
COMMON_WORDS = {
    "payment", "transfer", "credit", "debit", "invoice", "bill", "fee", "charge",
    "inc", "corp", "llc", "ltd", "co", "company", "limited", "services", "solutions", "group",
    "the", "and", "for", "from", "to", "of", "in", "on", "with", "at", "by",
    "ref", "reference", "ach", "wire", "bank", "account", "number", "transaction",
    "pmt", "pymt", "dep", "deposit", "online", "pos",
}

# Adjacent tokens like "INV 001" or "PO # 4411" are joined into one reference
REFERENCE_PREFIXES = {"inv", "invoice", "bill", "po", "ref", "no", "nr", "doc"}

MONEY_TOLERANCE = 0.01


def normalize_text(s: Optional[str]) -> str:
    """Lowercase, strip punctuation and collapse whitespace."""
    if not s:
        return ""
    return re.sub(r"\s+", " ", re.sub(r"[^a-z0-9]+", " ", s.lower())).strip()


def normalize_reference(s: Optional[str]) -> str:
    """Reduce a document number or reference to lowercase alphanumerics."""
    if not s:
        return ""
    return re.sub(r"[^a-z0-9]", "", s.lower())


def contains_reference(text: str, ref: str) -> bool:
    """Whether a normalized reference occurs in text; all-digit refs may not sit inside a longer number."""
    if not ref.isdigit():
        return ref in text
    return re.search(rf"(?<!\d){ref}(?!\d)", text) is not None


def counterparty_key(name: Optional[str]) -> str:
    """Stable key for a counterparty name (used to key vendor patterns)."""
    return normalize_text(name)


def significant_words(s: Optional[str]) -> List[str]:
    """Words of a name or description that can identify a counterparty."""
    return [w for w in normalize_text(s).split() if len(w) > 2 and w not in COMMON_WORDS]


def extract_keywords(description: Optional[str], limit: int = 10) -> List[str]:
    """Extract distinctive keywords from a transaction description."""
    keywords = []
    for word in significant_words(description):
        if word.isdigit() or word in keywords:
            continue
        keywords.append(word)
    return keywords[:limit]


def extract_reference_tokens(description: Optional[str], reference: Optional[str] = None) -> List[str]:
    """
    Extract candidate invoice/bill reference tokens from a transaction.

    Tokens containing a digit are kept (e.g. "INV-001" -> "inv001"), and a
    reference prefix followed by a number is joined ("INV 001" -> "inv001").
    An explicit reference field, when present, is listed first.
    """
    tokens = []
    if reference:
        ref = normalize_reference(reference)
        if ref:
            tokens.append(ref)

    raw = re.split(r"\s+", (description or "").strip())
    words = [normalize_reference(w) for w in raw if normalize_reference(w)]
    for i, word in enumerate(words):
        if any(ch.isdigit() for ch in word) and len(word) >= 3:
            tokens.append(word)
        if word in REFERENCE_PREFIXES and i + 1 < len(words) and words[i + 1].isdigit():
            tokens.append(word + words[i + 1])

    seen = set()
    unique = []
    for t in tokens:
        if t not in seen:
            seen.add(t)
            unique.append(t)
    return unique


def string_similarity(a: Optional[str], b: Optional[str]) -> float:
    """Normalized edit-distance similarity (1 = identical, 0 = unrelated)."""
    s1 = (a or "").lower().strip()
    s2 = (b or "").lower().strip()
    if s1 == s2:
        return 1.0 if s1 else 0.0
    if not s1 or not s2:
        return 0.0
    return Levenshtein.normalized_similarity(s1, s2)


def best_similarity(target: str, candidates: Iterable[str]) -> float:
    """Highest similarity between target and any candidate string."""
    return max((string_similarity(target, c) for c in candidates), default=0.0)


def round_money(v: float) -> float:
    """Round an amount to cents."""
    return round(float(v) + 0.0, 2)


def money_fmt(v: Optional[float], currency: Optional[str] = None) -> str:
    """Format amount as currency."""
    if v is None:
        return ""
    if currency and currency.upper() != "USD":
        return f"{currency.upper()} {v:,.2f}"
    return f"${v:,.2f}"


def parse_date(value) -> dt.date:
    """Coerce a date, datetime or ISO-8601 string to a date."""
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if isinstance(value, str) and value.strip():
        text = value.strip().replace("Z", "+00:00")
        try:
            return dt.date.fromisoformat(text[:10])
        except ValueError:
            return dt.datetime.fromisoformat(text).date()
    raise ValueError(f"Not a date: {value!r}")


def parse_datetime(value) -> dt.datetime:
    """Coerce a datetime or ISO-8601 string to a timezone-aware datetime."""
    if isinstance(value, dt.datetime):
        result = value
    elif isinstance(value, dt.date):
        result = dt.datetime(value.year, value.month, value.day)
    elif isinstance(value, str) and value.strip():
        result = dt.datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"Not a datetime: {value!r}")
    if result.tzinfo is None:
        result = result.replace(tzinfo=dt.timezone.utc)
    return result


def utcnow() -> dt.datetime:
    """Current time in UTC (the only wall-clock read in the engine)."""
    return dt.datetime.now(dt.timezone.utc)


def is_clean_fraction(ratio: float, fractions: Sequence[float], tolerance: float) -> bool:
    """Whether ratio is close to one of the typical installment fractions."""
    return any(abs(ratio - f) <= tolerance for f in fractions)
