import asyncio
import math
import re
from collections import OrderedDict
from collections.abc import Awaitable, Callable, Sequence
from decimal import Decimal
from time import monotonic
from typing import Any, TypeVar

from spendsort.core.configuration import CategorizerConfig
from spendsort.integration.metrics import ExternalServiceMetrics
from spendsort.integration.provider import CategorizationProvider, ProviderError, RateLimitedError
from spendsort.logger import get_logger
from spendsort.models import BatchSummary, Category, ExternalCategorization, Transaction, TransactionType

logger = get_logger(__name__)

T = TypeVar("T")
CachedResult = ExternalCategorization | BatchSummary

_TYPE_SUFFIX = re.compile(r"^(.+?)\s*\((expense|income|transfer)\)$", re.IGNORECASE)
MIN_CATEGORY_MATCH_SCORE = 0.3


def fingerprint(description: str, amount: Decimal | None, type: TransactionType) -> str:
    amount_text = f"{amount:.2f}" if amount is not None else "none"
    return f"{description}_{amount_text}_{type.value}".lower()


def find_matching_category(
    suggested_name: str | None,
    categories: Sequence[Category],
    transaction_type: TransactionType | str | None = None,
) -> tuple[str | None, float]:
    """
    Resolve a free-text category name to ``(category_id, score)``.

    A trailing ``(expense)``/``(income)`` qualifier overrides the transaction
    type. Exact name match scores 1.0, containment ``0.7 + 0.3 * length
    ratio``, word overlap ``0.5 + 0.4 * overlap``. Scores of 0.3 or less are
    treated as no match.
    """
    if not suggested_name or not categories:
        return None, 0.0

    wanted_type = TransactionType(transaction_type) if transaction_type else None
    clean = suggested_name.strip()
    qualified = _TYPE_SUFFIX.match(clean)
    if qualified:
        clean = qualified.group(1).strip()
        qualifier = qualified.group(2).lower()
        wanted_type = TransactionType(qualifier) if qualifier != "transfer" else None

    suggestion = clean.lower()
    typed = [c for c in categories if wanted_type is None or c.type == wanted_type]

    for category in typed:
        if category.name.lower() == suggestion:
            return category.id, 1.0

    candidates = typed or list(categories)
    best_id: str | None = None
    best_score = 0.0
    suggestion_words = set(suggestion.split())
    for category in candidates:
        name = category.name.lower()
        if name and (name in suggestion or suggestion in name):
            ratio = min(len(name), len(suggestion)) / max(len(name), len(suggestion))
            score = 0.7 + 0.3 * ratio
        else:
            name_words = set(name.split())
            shared = name_words & suggestion_words
            if shared:
                score = 0.5 + 0.4 * len(shared) / max(len(name_words), len(suggestion_words))
            else:
                score = 0.1
        if score > best_score:
            best_id, best_score = category.id, score

    if best_id is None or best_score <= MIN_CATEGORY_MATCH_SCORE:
        logger.debug("[AI] No category matches '%s'", suggested_name)
        return None, 0.0
    return best_id, best_score


def candidate_names(categories: Sequence[Category], type: TransactionType | None = None) -> list[str]:
    if type is None:
        return [f"{c.name} ({c.type.value})" for c in categories]
    return [c.name for c in categories if c.type == type]


def _error(reasoning: str, error_type: str) -> ExternalCategorization:
    return ExternalCategorization(
        category_name=None,
        confidence=0.0,
        reasoning=reasoning,
        error=True,
        error_type=error_type,
    )


class ExternalCategorizationClient:
    """
    Wraps a categorization provider with caching, rate limiting, retries and metrics.

    Every failure is returned as an ``ExternalCategorization`` with
    ``error=True``; nothing raised by the provider escapes this class.
    """

    def __init__(
        self,
        provider: CategorizationProvider | None,
        metrics: ExternalServiceMetrics | None = None,
        config: CategorizerConfig | None = None,
        *,
        enabled: bool = True,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.provider = provider
        self.config = config or CategorizerConfig()
        self.metrics = metrics or ExternalServiceMetrics(cooldown=self.config.rate_limit_cooldown)
        self.enabled = enabled
        self._sleep = sleep
        self._cache: OrderedDict[str, tuple[float, CachedResult]] = OrderedDict()

    @property
    def configured(self) -> bool:
        return self.provider is not None and self.enabled

    @property
    def available(self) -> bool:
        return self.configured and not self.metrics.check_rate_limited()

    @property
    def cache_size(self) -> int:
        return len(self._cache)

    def _get_cached(self, key: str) -> CachedResult | None:
        entry = self._cache.get(key)
        if entry is None:
            return None
        stored_at, value = entry
        if monotonic() - stored_at > self.config.cache_ttl:
            self._cache.pop(key, None)
            return None
        self.metrics.increment("cache_hits")
        return value.model_copy(update={"from_cache": True})

    def _store(self, key: str, value: CachedResult) -> None:
        if value.error:
            return
        if len(self._cache) >= self.config.cache_size:
            evict = math.ceil(self.config.cache_size * 0.1)
            for _ in range(min(evict, len(self._cache))):
                self._cache.popitem(last=False)
        self._cache[key] = (monotonic(), value)

    def clear_cache(self) -> None:
        self._cache.clear()
        logger.info("[AI] Response cache cleared")

    def use_provider(self, provider: CategorizationProvider | None) -> None:
        """Swap the provider at runtime. Cached answers from the old one are dropped."""
        self.provider = provider
        self._cache.clear()
        logger.info("[AI] Provider %s", "replaced" if provider is not None else "removed")

    async def _call_with_retry(self, factory: Callable[[], Awaitable[T]]) -> T:
        attempt = 0
        while True:
            if attempt:
                delay = self.config.retry_base_delay * (2 ** (attempt - 1))
                logger.info("[AI] Retry %d/%d after %.2fs", attempt, self.config.max_retries, delay)
                self.metrics.increment("retries")
                await self._sleep(delay)
            try:
                return await asyncio.wait_for(factory(), timeout=self.config.request_timeout)
            except asyncio.TimeoutError as exc:
                self.metrics.record_error("request timed out", timeout=True)
                logger.warning("[AI] Request timed out after %.1fs", self.config.request_timeout)
                last_error: Exception = exc
            except RateLimitedError:
                self.metrics.mark_rate_limited()
                raise
            except ProviderError as exc:
                if not exc.retryable:
                    raise
                self.metrics.record_error(str(exc))
                logger.warning("[AI] Transient provider error: %s", exc)
                last_error = exc
            if attempt >= self.config.max_retries:
                raise last_error
            attempt += 1

    def _precheck(self) -> ExternalCategorization | None:
        if not self.configured:
            return _error("External categorization is not configured", "api_not_configured")
        if self.metrics.check_rate_limited():
            return _error("rate limited", "rate_limited")
        return None

    def _failure(self, exc: Exception) -> ExternalCategorization:
        if isinstance(exc, asyncio.TimeoutError):
            return _error("Error: request timed out", "timeout")
        if isinstance(exc, RateLimitedError):
            return _error("rate limited", "rate_limited")
        if isinstance(exc, ProviderError):
            if not exc.retryable:
                self.metrics.record_error(str(exc))
            return _error(f"Error: {exc}", exc.error_type)
        self.metrics.record_error(str(exc))
        return _error(f"Error: {exc}", "api_error")

    async def categorize(
        self,
        description: str,
        amount: Decimal | None,
        type: TransactionType,
        categories: Sequence[Category] = (),
    ) -> ExternalCategorization:
        key = fingerprint(description, amount, type)
        cached = self._get_cached(key) if self.configured else None
        if cached is not None:
            logger.debug("[AI] Cache hit for '%s'", description)
            return cached

        blocked = self._precheck()
        if blocked is not None:
            return blocked

        names = candidate_names(categories, type)
        provider = self.provider
        if provider is None:
            return _error("External categorization is not configured", "api_not_configured")
        self.metrics.increment("api_calls")
        logger.debug("[AI] Categorizing '%s' (%s %s)", description, amount, type.value)
        try:
            result = await self._call_with_retry(
                lambda: provider.request_categorization(description, amount, type, names)
            )
        except Exception as exc:
            logger.error("[AI] Categorization failed for '%s': %s", description, exc)
            return self._failure(exc)

        self.metrics.increment("successful_calls")
        self._store(key, result)
        return result

    async def categorize_batch(
        self,
        transactions: Sequence[Transaction],
        categories: Sequence[Category] = (),
    ) -> list[ExternalCategorization]:
        """One result per transaction, in input order. Failed chunks fall back to single calls."""
        if not transactions:
            return []
        blocked = self._precheck()
        if blocked is not None and blocked.error_type == "api_not_configured":
            return [blocked.model_copy() for _ in transactions]

        self.metrics.increment("batch_requests")
        results: list[ExternalCategorization | None] = [None] * len(transactions)
        pending: list[int] = []
        for index, transaction in enumerate(transactions):
            cached = self._get_cached(fingerprint(transaction.description, transaction.amount, transaction.type))
            if cached is not None:
                results[index] = cached
            else:
                pending.append(index)

        names = candidate_names(categories)
        size = self.config.ai_batch_size
        chunks = [pending[start:start + size] for start in range(0, len(pending), size)]
        for chunk_number, chunk in enumerate(chunks, start=1):
            logger.info("[AI] Processing batch chunk %d/%d (%d items)", chunk_number, len(chunks), len(chunk))
            chunk_results = await self._request_chunk([transactions[i] for i in chunk], names)
            for index, result in zip(chunk, chunk_results):
                transaction = transactions[index]
                if result is None:
                    result = await self.categorize(
                        transaction.description, transaction.amount, transaction.type, categories
                    )
                else:
                    self._store(fingerprint(transaction.description, transaction.amount, transaction.type), result)
                results[index] = result
            if chunk_number < len(chunks) and self.config.ai_batch_pause > 0:
                await self._sleep(self.config.ai_batch_pause)

        return [r if r is not None else _error("No result", "api_error") for r in results]

    async def _request_chunk(
        self,
        chunk: list[Transaction],
        names: list[str],
    ) -> list[ExternalCategorization | None]:
        if self._precheck() is not None:
            return [None] * len(chunk)
        provider = self.provider
        if provider is None:
            return [None] * len(chunk)
        self.metrics.increment("api_calls")
        try:
            answers = await self._call_with_retry(lambda: provider.request_batch(chunk, names))
        except Exception as exc:
            self.metrics.record_error(str(exc))
            logger.warning("[AI] Batch request failed (%s); falling back to individual calls", exc)
            return [None] * len(chunk)
        if len(answers) != len(chunk):
            self.metrics.record_error(f"batch returned {len(answers)} results for {len(chunk)} items")
            logger.warning(
                "[AI] Batch returned %d results for %d items; falling back to individual calls",
                len(answers),
                len(chunk),
            )
            return [None] * len(chunk)
        self.metrics.increment("successful_calls")
        return answers

    async def summarize_batch(self, transactions: Sequence[Transaction]) -> BatchSummary:
        """
        Ask for a short summary and insights for a group of transactions.

        Shares the response cache, rate-limit state and retry policy with the
        categorization calls, under an overall ``summary_timeout`` deadline.
        Failures come back with ``error=True`` and no summary.
        """
        if not transactions:
            return BatchSummary()
        key = "summary:" + "|".join(
            sorted(fingerprint(t.description, t.amount, t.type) for t in transactions)
        )
        cached = self._get_cached(key) if self.configured else None
        if cached is not None:
            logger.debug("[AI] Summary cache hit for %d transactions", len(transactions))
            return cached

        blocked = self._precheck()
        provider = self.provider
        if blocked is not None or provider is None:
            error_type = blocked.error_type if blocked is not None else "api_not_configured"
            return BatchSummary(error=True, error_type=error_type)

        self.metrics.increment("api_calls")
        logger.info("[AI] Summarizing %d transactions", len(transactions))
        try:
            summary = await asyncio.wait_for(
                self._call_with_retry(lambda: provider.request_summary(transactions)),
                timeout=self.config.summary_timeout,
            )
        except asyncio.TimeoutError:
            self.metrics.record_error("summary timed out", timeout=True)
            logger.warning("[AI] Summary timed out after %.1fs", self.config.summary_timeout)
            return BatchSummary(error=True, error_type="timeout", timed_out=True)
        except Exception as exc:
            logger.error("[AI] Summary failed: %s", exc)
            return BatchSummary(error=True, error_type=self._failure(exc).error_type)

        self.metrics.increment("successful_calls")
        self._store(key, summary)
        return summary

    def status(self) -> dict[str, Any]:
        rate_limited = self.metrics.check_rate_limited()
        return {
            "available": self.configured and not rate_limited,
            "configured": self.provider is not None,
            "enabled": self.enabled,
            "rate_limited": rate_limited,
            "cache_size": self.cache_size,
            "metrics": self.metrics.snapshot(cache_size=self.cache_size),
        }
