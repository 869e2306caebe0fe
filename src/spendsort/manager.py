import asyncio
from collections import defaultdict, deque
from collections.abc import Awaitable, Callable, Iterable, Sequence
from time import perf_counter
from typing import Any

from spendsort.classifiers.bayes import BayesClassifier
from spendsort.classifiers.history import HistoryMatcher
from spendsort.core.configuration import CategorizerConfig
from spendsort.domain.similarity import MATCH_THRESHOLD, overlap
from spendsort.domain.text import normalize
from spendsort.domain.timefmt import format_duration
from spendsort.integration.external import ExternalCategorizationClient, find_matching_category
from spendsort.integration.repository import TransactionRepository
from spendsort.logger import get_logger
from spendsort.models import (
    BatchSuggestionResult,
    Category,
    CategoryMatch,
    CategoryTally,
    ConfidenceLevels,
    ExternalCategorization,
    Suggestion,
    SuggestionSource,
    Transaction,
)

logger = get_logger(__name__)

AI_CONFIDENCE_WEIGHT = 0.7
NAME_MATCH_WEIGHT = 0.3
TOP_CATEGORY_LIMIT = 5

Step = Callable[[Transaction, Sequence[Category]], Awaitable[CategoryMatch | None]]


def _preview(transaction: Transaction) -> str:
    return transaction.description[:50]


def summarize_suggestions(
    suggestions: Sequence[Suggestion],
    threshold: float,
    *,
    timed_out: bool = False,
) -> BatchSuggestionResult:
    """
    Aggregate per-transaction suggestions into a batch verdict.

    The top category is the one with the highest frequency-weighted average
    confidence (share of the batch times mean confidence). The batch needs
    review when that score is below the threshold or any single suggestion is.
    """
    total = len(suggestions)
    confidences: dict[str, list[float]] = defaultdict(list)
    for suggestion in suggestions:
        if suggestion.category_id:
            confidences[suggestion.category_id].append(suggestion.confidence)

    tallies = [
        CategoryTally(
            category_id=category_id,
            count=len(values),
            average_confidence=sum(values) / len(values),
            weighted_confidence=(len(values) / total) * (sum(values) / len(values)),
        )
        for category_id, values in confidences.items()
    ]
    best = max(tallies, key=lambda tally: tally.weighted_confidence, default=None)
    ranked = sorted(tallies, key=lambda tally: (-tally.count, -tally.average_confidence))

    levels = ConfidenceLevels()
    for suggestion in suggestions:
        if suggestion.confidence >= 0.9:
            levels.high += 1
        elif suggestion.confidence >= 0.7:
            levels.medium += 1
        elif suggestion.confidence >= 0.5:
            levels.low += 1
        else:
            levels.very_low += 1

    below = [s for s in suggestions if s.confidence < threshold]
    needs_review = best is None or best.weighted_confidence < threshold or bool(below)
    return BatchSuggestionResult(
        suggestions=list(suggestions),
        top_category=best.category_id if best else None,
        top_categories=ranked[:TOP_CATEGORY_LIMIT],
        average_confidence=sum(s.confidence for s in suggestions) / total if total else 0.0,
        needs_review=needs_review,
        timed_out=timed_out,
        confidence_levels=levels,
        auto_count=total - len(below),
        review_count=len(below),
    )


class CategorizerService:
    """
    The suggestion cascade.

    Order for established users: exact history match, similar history match,
    external AI, Bayes classifier. Users with little history try the external
    AI first. The first strategy that produces a category wins.
    """

    def __init__(
        self,
        repository: TransactionRepository,
        external: ExternalCategorizationClient | None = None,
        config: CategorizerConfig | None = None,
        *,
        classifier: BayesClassifier | None = None,
        history: HistoryMatcher | None = None,
    ):
        self.config = config or CategorizerConfig()
        self.repository = repository
        self.external = external
        self.classifier = classifier or BayesClassifier(sample_size=self.config.training_sample_size)
        self.history = history or HistoryMatcher(
            threshold=self.config.match_threshold,
            sample_size=self.config.recent_sample_size,
        )
        self.categories: list[Category] = []
        self._learned: deque[Transaction] = deque(maxlen=self.config.recent_sample_size)
        self._train_lock = asyncio.Lock()

    async def train(self) -> bool:
        logger.info("[TRAIN] Loading categorized history...")
        categorized = await self.repository.find_categorized_transactions(self.config.training_sample_size)
        recent = await self.repository.find_recent_categorized(self.config.recent_sample_size)
        categories = await self.repository.find_categories()
        self.categories = categories
        self.history.load(categorized, recent)
        # Feedback not yet visible through the repository survives a reload.
        for transaction in self._learned:
            self.history.learn(transaction)
        return await asyncio.to_thread(self.classifier.train, categorized, categories)

    async def ensure_trained(self) -> None:
        if not self.classifier.stale:
            return
        async with self._train_lock:
            if self.classifier.stale:
                await self.train()

    def mark_stale(self) -> None:
        self.classifier.mark_stale()

    def learn(self, transaction: Transaction, category_id: str | None = None) -> None:
        """Feed back a transaction whose category was confirmed."""
        if category_id is not None:
            transaction = transaction.model_copy(update={"category_id": category_id})
        if not transaction.category_id:
            return
        self._learned.append(transaction)
        self.history.learn(transaction)
        self.classifier.learn(transaction)

    async def is_new_user(self) -> bool:
        return await self.repository.count_categorized() < self.config.new_user_threshold

    async def _exact(self, transaction: Transaction, categories: Sequence[Category]) -> CategoryMatch | None:
        return self.history.exact(transaction)

    async def _similar(self, transaction: Transaction, categories: Sequence[Category]) -> CategoryMatch | None:
        return self.history.similar(transaction)

    def _from_external(
        self,
        result: ExternalCategorization,
        transaction: Transaction,
        categories: Sequence[Category],
    ) -> CategoryMatch | None:
        if result.error or not result.category_name:
            logger.debug("[CASCADE] External AI gave no category: %s", result.reasoning)
            return None
        category_id, name_confidence = find_matching_category(
            result.category_name,
            categories,
            transaction.type,
        )
        if category_id is None:
            logger.debug("[CASCADE] External category '%s' matches no known category", result.category_name)
            return None
        return CategoryMatch(
            category_id=category_id,
            confidence=result.confidence * AI_CONFIDENCE_WEIGHT + name_confidence * NAME_MATCH_WEIGHT,
            source=SuggestionSource.EXTERNAL_AI_CACHE if result.from_cache else SuggestionSource.EXTERNAL_AI,
            reasoning=result.reasoning,
        )

    async def _external(self, transaction: Transaction, categories: Sequence[Category]) -> CategoryMatch | None:
        external = self.external
        if external is None or not external.available:
            return None
        result = await external.categorize(
            transaction.description,
            transaction.amount,
            transaction.type,
            categories,
        )
        return self._from_external(result, transaction, categories)

    async def _bayes(self, transaction: Transaction, categories: Sequence[Category]) -> CategoryMatch | None:
        return self.classifier.match(transaction)

    def _steps(self, new_user: bool) -> list[tuple[str, Step]]:
        if new_user:
            return [
                ("external", self._external),
                ("exact", self._exact),
                ("similar", self._similar),
                ("bayes", self._bayes),
            ]
        return [
            ("exact", self._exact),
            ("similar", self._similar),
            ("external", self._external),
            ("bayes", self._bayes),
        ]

    async def _cascade(self, transaction: Transaction, new_user: bool) -> CategoryMatch | None:
        categories = self.categories
        for name, step in self._steps(new_user):
            logger.debug("[CASCADE] Trying %s for '%s'", name, _preview(transaction))
            match = await step(transaction, categories)
            if match is not None:
                logger.debug(
                    "[CASCADE] %s returned %s (confidence: %.2f)",
                    name,
                    match.category_id,
                    match.confidence,
                )
                return match
        logger.debug("[CASCADE] No strategy matched '%s'", _preview(transaction))
        return None

    async def suggest(
        self,
        transaction: Transaction,
        *,
        threshold: float | None = None,
        new_user: bool | None = None,
    ) -> Suggestion:
        """Suggest a category. Never raises; failures come back as ``source=error``."""
        if threshold is None:
            threshold = self.config.confidence_threshold
        try:
            await self.ensure_trained()
            if new_user is None:
                new_user = await self.is_new_user()
            match = await self._cascade(transaction, new_user)
        except Exception as exc:
            logger.exception("[CASCADE] Suggestion failed for transaction %s", transaction.id)
            return Suggestion(
                transaction_id=transaction.id,
                source=SuggestionSource.ERROR,
                reasoning=str(exc),
                needs_review=True,
            )

        if match is None:
            return Suggestion(
                transaction_id=transaction.id,
                source=SuggestionSource.NONE,
                reasoning="No matching category found",
                needs_review=True,
            )
        suggestion = Suggestion(
            transaction_id=transaction.id,
            category_id=match.category_id,
            confidence=match.confidence,
            source=match.source,
            reasoning=match.reasoning,
        )
        return suggestion.model_copy(update={"needs_review": suggestion.confidence < threshold})

    async def suggest_batch(
        self,
        transactions: Iterable[Transaction],
        confidence_threshold: float | None = None,
    ) -> BatchSuggestionResult:
        threshold = self.config.confidence_threshold if confidence_threshold is None else confidence_threshold
        transactions = list(transactions)
        results: dict[int, Suggestion] = {}
        started = perf_counter()

        timed_out = False
        try:
            await asyncio.wait_for(
                self._run_sub_batches(transactions, threshold, results),
                timeout=self.config.batch_timeout,
            )
        except asyncio.TimeoutError:
            timed_out = True
            logger.warning(
                "[CASCADE] Batch suggestion timed out after %.1fs; %d of %d transactions unprocessed",
                self.config.batch_timeout,
                len(transactions) - len(results),
                len(transactions),
            )

        suggestions = [
            results.get(index) or Suggestion(
                transaction_id=transaction.id,
                source=SuggestionSource.TIMEOUT,
                reasoning="Suggestion timed out",
                needs_review=True,
            )
            for index, transaction in enumerate(transactions)
        ]
        summary = summarize_suggestions(suggestions, threshold, timed_out=timed_out)
        logger.info(
            "[CASCADE] Suggested %d transactions in %s (avg confidence %.2f, review: %s)",
            len(suggestions),
            format_duration(perf_counter() - started),
            summary.average_confidence,
            summary.needs_review,
        )
        return summary

    async def _run_sub_batches(
        self,
        transactions: list[Transaction],
        threshold: float,
        results: dict[int, Suggestion],
    ) -> None:
        new_user: bool | None = None
        try:
            await self.ensure_trained()
            new_user = await self.is_new_user()
        except Exception:
            # suggest() retries per transaction and reports the failure there.
            logger.exception("[CASCADE] Batch preparation failed")
        size = self.config.sub_batch_size

        async def run(index: int, transaction: Transaction) -> None:
            results[index] = await self.suggest(transaction, threshold=threshold, new_user=new_user)

        for start in range(0, len(transactions), size):
            chunk = range(start, min(start + size, len(transactions)))
            await asyncio.gather(*(run(index, transactions[index]) for index in chunk))
            more = start + size < len(transactions)
            if more and self.external is not None and self.external.available and self.config.sub_batch_pause > 0:
                await asyncio.sleep(self.config.sub_batch_pause)

    async def categorize_with_external(
        self,
        transactions: Sequence[Transaction],
        confidence_threshold: float | None = None,
    ) -> list[Suggestion]:
        """Categorize transactions with batched external AI requests only, skipping the local strategies."""
        threshold = self.config.confidence_threshold if confidence_threshold is None else confidence_threshold
        if self.external is None:
            return [
                Suggestion(
                    transaction_id=t.id,
                    source=SuggestionSource.ERROR,
                    reasoning="External categorization is not configured",
                )
                for t in transactions
            ]
        await self.ensure_trained()
        categories = self.categories
        results = await self.external.categorize_batch(transactions, categories)

        suggestions = []
        for transaction, result in zip(transactions, results):
            match = self._from_external(result, transaction, categories)
            if match is not None:
                suggestions.append(Suggestion(
                    transaction_id=transaction.id,
                    category_id=match.category_id,
                    confidence=match.confidence,
                    source=match.source,
                    reasoning=match.reasoning,
                    needs_review=match.confidence < threshold,
                ))
            else:
                suggestions.append(Suggestion(
                    transaction_id=transaction.id,
                    source=SuggestionSource.ERROR if result.error else SuggestionSource.NONE,
                    reasoning=result.reasoning or "No matching category found",
                ))
        logger.info(
            "[CASCADE] External batch: %d of %d transactions categorized",
            sum(1 for s in suggestions if s.category_id),
            len(suggestions),
        )
        return suggestions

    def find_similar_transactions(
        self,
        transaction: Transaction,
        candidates: Iterable[Transaction],
        threshold: float = MATCH_THRESHOLD,
    ) -> list[tuple[Transaction, float]]:
        """Uncategorized candidates whose description overlaps the transaction's, best first."""
        if not normalize(transaction.description):
            return []
        similar = []
        for candidate in candidates:
            if candidate.id == transaction.id or candidate.category_id:
                continue
            score = overlap(transaction.description, candidate.description)
            if score >= threshold:
                similar.append((candidate, score))
        return sorted(similar, key=lambda item: item[1], reverse=True)

    def status(self) -> dict[str, Any]:
        return {
            "classifier": self.classifier.status(),
            "history": {"descriptions": self.history.size},
            "external": self.external.status() if self.external else {"available": False, "configured": False},
        }
