from collections.abc import Iterable

from rapidfuzz import process
from rapidfuzz.distance import JaroWinkler

from spendsort.domain.text import normalize

CLUSTER_THRESHOLD = 0.85
MATCH_THRESHOLD = 0.7


def similarity(a: str | None, b: str | None) -> float:
    """Prefix-weighted Jaro-Winkler similarity of the normalized strings."""
    left = normalize(a)
    right = normalize(b)
    if left == right:
        return 1.0
    if not left or not right:
        return 0.0
    return float(JaroWinkler.normalized_similarity(left, right))


def _bigrams(text: str) -> set[str]:
    return {text[i:i + 2] for i in range(len(text) - 1)}


def overlap(a: str | None, b: str | None) -> float:
    """Dice coefficient over character bigram sets of the normalized strings."""
    left = normalize(a)
    right = normalize(b)
    if left == right:
        return 1.0
    left_bigrams = _bigrams(left)
    right_bigrams = _bigrams(right)
    if not left_bigrams or not right_bigrams:
        return 0.0
    shared = len(left_bigrams & right_bigrams)
    return 2.0 * shared / (len(left_bigrams) + len(right_bigrams))


def best_match(
    query: str,
    choices: Iterable[str],
    threshold: float = MATCH_THRESHOLD,
) -> tuple[str, float, int] | None:
    """Return ``(choice, score, index)`` for the most similar choice at or above threshold."""
    normalized_query = normalize(query)
    if not normalized_query:
        return None
    result = process.extractOne(
        normalized_query,
        list(choices),
        scorer=JaroWinkler.normalized_similarity,
        processor=normalize,
        score_cutoff=threshold,
    )
    if result is None:
        return None
    choice, score, index = result
    return choice, float(score), index
