from collections.abc import Iterable

from spendsort.domain.similarity import MATCH_THRESHOLD, best_match
from spendsort.domain.text import normalize
from spendsort.logger import get_logger
from spendsort.models import CategoryMatch, SuggestionSource, Transaction

from .base import Classifier

logger = get_logger(__name__)

EXACT_MATCH_CONFIDENCE = 0.9
SIMILAR_MATCH_WEIGHT = 0.9


class HistoryMatcher(Classifier):
    """Matches against previously categorized transactions."""

    def __init__(self, threshold: float = MATCH_THRESHOLD, sample_size: int = 100):
        self.threshold = threshold
        self.sample_size = sample_size
        self._exact: dict[str, str] = {}
        self._recent: tuple[Transaction, ...] = ()

    @property
    def size(self) -> int:
        return len(self._exact)

    def load(self, categorized: Iterable[Transaction], recent: Iterable[Transaction]) -> None:
        exact: dict[str, str] = {}
        for transaction in categorized:
            key = normalize(transaction.description)
            if key and transaction.category_id and key not in exact:
                exact[key] = transaction.category_id
        sample = tuple(t for t in recent if t.category_id)[: self.sample_size]
        # Swap both indexes in one go so readers never see a half-built pair.
        self._exact, self._recent = exact, sample
        logger.debug("[HISTORY] Loaded %d descriptions, %d recent samples", len(exact), len(sample))

    def exact(self, transaction: Transaction) -> CategoryMatch | None:
        key = normalize(transaction.description)
        if not key:
            return None
        category_id = self._exact.get(key)
        if category_id is None:
            return None
        return CategoryMatch(
            category_id=category_id,
            confidence=EXACT_MATCH_CONFIDENCE,
            source=SuggestionSource.EXACT_MATCH,
            reasoning="Identical description found in categorized history",
        )

    def similar(self, transaction: Transaction) -> CategoryMatch | None:
        recent = self._recent
        if not recent:
            return None
        result = best_match(
            transaction.description,
            [candidate.description for candidate in recent],
            threshold=self.threshold,
        )
        if result is None:
            return None
        description, score, index = result
        category_id = recent[index].category_id
        if category_id is None:
            return None
        return CategoryMatch(
            category_id=category_id,
            confidence=score * SIMILAR_MATCH_WEIGHT,
            source=SuggestionSource.SIMILAR_MATCH,
            reasoning=f"Similar to '{description}' ({score:.2f})",
        )

    def match(self, transaction: Transaction) -> CategoryMatch | None:
        return self.exact(transaction) or self.similar(transaction)

    def learn(self, transaction: Transaction) -> None:
        if not transaction.category_id:
            return
        key = normalize(transaction.description)
        if key:
            exact = dict(self._exact)
            exact[key] = transaction.category_id
            self._exact = exact
        self._recent = ((transaction,) + self._recent)[: self.sample_size]

    def clear(self) -> None:
        self._exact, self._recent = {}, ()
