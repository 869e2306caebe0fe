"""
Best-effort merchant extraction from bank export descriptions.

These are format-specific guesses about how banks pad the merchant name
(POS prefixes, store numbers, trailing city/state). They are kept here so the
batch organizer can take any ``Callable[[Transaction], str | None]``.
"""
import re
from collections.abc import Callable

from spendsort.models import Transaction

MerchantExtractor = Callable[[Transaction], str | None]

_PREFIXES = re.compile(
    r"^(?:(?:pos|debit|credit|card|visa|mc|purchase|recurring|ach|sq|tst|pp|paypal)\b[\s*#:-]*)+",
    re.IGNORECASE,
)
_CARD_MASK = re.compile(r"\b(?:card|x+)\s*\d{4}\b|\bx{2,}\d{2,4}\b", re.IGNORECASE)
_TRAILING_REFERENCE = re.compile(
    r"(?:\s+(?:#|no\.?|ref\.?|id|conf|trx|txn)\s*[:#]?\s*[\w-]*\d[\w-]*|\s+[\w-]*\d{4,}[\w-]*|\s+\d+)+$",
    re.IGNORECASE,
)
_TRAILING_DATE = re.compile(r"\s+\d{1,2}[/-]\d{1,2}(?:[/-]\d{2,4})?$")
_US_STATES = frozenset({
    "AL", "AK", "AZ", "AR", "CA", "CO", "CT", "DE", "FL", "GA", "HI", "ID", "IL", "IN", "IA",
    "KS", "KY", "LA", "ME", "MD", "MA", "MI", "MN", "MS", "MO", "MT", "NE", "NV", "NH", "NJ",
    "NM", "NY", "NC", "ND", "OH", "OK", "OR", "PA", "RI", "SC", "SD", "TN", "TX", "UT", "VT",
    "VA", "WA", "WV", "WI", "WY", "DC",
})
_COUNTRIES = frozenset({"US", "USA", "UK", "GB", "CA", "CAN", "AU", "DE", "FR", "NL", "IE"})
_KNOWN_CITIES = frozenset({
    "new york", "los angeles", "san francisco", "chicago", "seattle", "boston", "austin",
    "houston", "dallas", "denver", "miami", "atlanta", "portland", "london", "toronto",
})
_MAX_WORDS = 3


def _strip_location(words: list[str]) -> list[str]:
    # Trailing country, then state code, then a known city name.
    if len(words) > 1 and words[-1].upper() in _COUNTRIES and words[-1].isupper():
        words = words[:-1]
    if len(words) > 1 and words[-1].upper() in _US_STATES and words[-1].isupper():
        words = words[:-1]
        for size in (2, 1):
            if len(words) > size and " ".join(words[-size:]).lower() in _KNOWN_CITIES:
                return words[:-size]
        # Single trailing word before a state code is usually the city.
        if len(words) > 2:
            words = words[:-1]
        return words
    for size in (2, 1):
        if len(words) > size and " ".join(words[-size:]).lower() in _KNOWN_CITIES:
            return words[:-size]
    return words


def clean_description(description: str | None) -> str:
    if not description:
        return ""
    text = description.strip()
    text = _CARD_MASK.sub(" ", text)
    text = _PREFIXES.sub("", text).strip()
    text = _TRAILING_DATE.sub("", text)
    text = _TRAILING_REFERENCE.sub("", text)
    text = re.sub(r"[*#]+", " ", text)
    return " ".join(text.split())


def merchant_from_description(description: str | None) -> str | None:
    cleaned = clean_description(description)
    if not cleaned:
        return None
    # Store numbers and locations come in either order, so peel twice.
    words = cleaned.split()
    for _ in range(2):
        words = _strip_location(words)
        words = _TRAILING_REFERENCE.sub("", " ".join(words)).split()
    words = [word for word in words if any(ch.isalpha() for ch in word)][:_MAX_WORDS]
    if not words:
        return None
    return " ".join(word if not word.isupper() else word.title() for word in words)


def extract_merchant(transaction: Transaction) -> str | None:
    """Explicit merchant if present, otherwise a guess from the description."""
    if transaction.merchant:
        return transaction.merchant.strip()
    return merchant_from_description(transaction.description)


def merchant_key(merchant: str) -> str:
    return " ".join(merchant.lower().split())
