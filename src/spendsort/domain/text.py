import math
import re
from collections import Counter
from collections.abc import Iterable

_NON_WORD = re.compile(r"[^\w\s]")

STOPWORDS = frozenset({
    "a", "an", "the", "and", "or", "but", "in", "on", "at", "to", "for", "with",
    "from", "by", "as", "of", "payment", "purchase", "transaction", "fee", "charge",
    "paid", "buy", "bought", "sold", "pay", "bill", "invoice", "order", "online",
})


def tokenize(text: str | None) -> list[str]:
    if not text:
        return []
    return _NON_WORD.sub(" ", text.lower()).split()


def normalize(text: str | None) -> str:
    """Lowercase, drop punctuation and collapse whitespace. Idempotent."""
    return " ".join(tokenize(text))


def significant_words(text: str | None) -> list[str]:
    return [word for word in tokenize(text) if len(word) > 2 and word not in STOPWORDS]


def find_common_words(
    descriptions: Iterable[str | None],
    threshold: float = 0.5,
    limit: int = 3,
) -> list[str]:
    """
    Words shared by at least ``max(2, ceil(threshold * n))`` descriptions.

    Each description counts a word once. Results are capitalized and ordered
    by frequency, ties keeping first appearance.
    """
    descriptions = list(descriptions)
    counts: Counter[str] = Counter()
    for description in descriptions:
        counts.update(dict.fromkeys(significant_words(description), 1))

    min_occurrences = max(2, math.ceil(len(descriptions) * threshold))
    common = [word for word, count in counts.most_common() if count >= min_occurrences]
    return [word.capitalize() for word in common[:limit]]
