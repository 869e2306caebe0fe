import asyncio
from decimal import Decimal
from unittest.mock import AsyncMock, MagicMock

import pytest

from spendsort.core.configuration import CategorizerConfig
from spendsort.integration.external import (
    ExternalCategorizationClient,
    candidate_names,
    find_matching_category,
    fingerprint,
)
from spendsort.integration.metrics import ExternalServiceMetrics
from spendsort.integration.provider import (
    CategorizationProvider,
    ProviderClientError,
    RateLimitedError,
    TransientProviderError,
)
from spendsort.models import BatchSummary, Category, ExternalCategorization, Transaction, TransactionType

CATEGORIES = [
    Category(id="1", name="Groceries"),
    Category(id="2", name="Dining Out"),
    Category(id="3", name="Food & Dining"),
    Category(id="4", name="Salary", type=TransactionType.INCOME),
]


def _answer(name: str = "Groceries", confidence: float = 0.8) -> ExternalCategorization:
    return ExternalCategorization(category_name=name, confidence=confidence, reasoning="looks right")


def _provider(**methods) -> MagicMock:
    provider = MagicMock(spec=CategorizationProvider)
    provider.request_categorization = methods.get("single", AsyncMock(return_value=_answer()))
    provider.request_batch = methods.get("batch", AsyncMock(return_value=[]))
    provider.request_summary = methods.get(
        "summary",
        AsyncMock(return_value=BatchSummary(summary="Weekly grocery runs", insights=["Mostly Safeway"])),
    )
    return provider


def _client(provider, **config) -> ExternalCategorizationClient:
    return ExternalCategorizationClient(
        provider,
        metrics=ExternalServiceMetrics(cooldown=60),
        config=CategorizerConfig(**config),
        sleep=AsyncMock(),
    )


def test_fingerprint_is_case_insensitive():
    assert fingerprint("Whole FOODS", Decimal("12.5"), TransactionType.EXPENSE) == fingerprint(
        "whole foods", Decimal("12.50"), TransactionType.EXPENSE
    )


def test_find_matching_category_exact():
    assert find_matching_category("groceries", CATEGORIES, TransactionType.EXPENSE) == ("1", 1.0)


def test_find_matching_category_strips_type_suffix():
    assert find_matching_category("Salary (income)", CATEGORIES, TransactionType.EXPENSE) == ("4", 1.0)


def test_find_matching_category_containment():
    category_id, score = find_matching_category("Dining", CATEGORIES, TransactionType.EXPENSE)
    assert category_id == "2"
    assert score == pytest.approx(0.7 + 0.3 * 6 / 10)


def test_find_matching_category_word_overlap():
    category_id, score = find_matching_category("Fast Food", CATEGORIES, TransactionType.EXPENSE)
    assert category_id == "3"
    assert score == pytest.approx(0.5 + 0.4 * 1 / 3)


def test_find_matching_category_no_match():
    assert find_matching_category("Zebra", CATEGORIES, TransactionType.EXPENSE) == (None, 0.0)
    assert find_matching_category(None, CATEGORIES) == (None, 0.0)


def test_candidate_names():
    assert candidate_names(CATEGORIES, TransactionType.INCOME) == ["Salary"]
    assert "Salary (income)" in candidate_names(CATEGORIES)


@pytest.mark.anyio
async def test_cache_hit_skips_provider():
    provider = _provider()
    client = _client(provider)

    first = await client.categorize("Whole Foods", Decimal("42.10"), TransactionType.EXPENSE, CATEGORIES)
    second = await client.categorize("WHOLE FOODS", Decimal("42.10"), TransactionType.EXPENSE, CATEGORIES)

    assert first.from_cache is False
    assert second.from_cache is True
    assert second.category_name == "Groceries"
    assert provider.request_categorization.await_count == 1
    assert client.metrics.cache_hits == 1
    assert client.metrics.api_calls == 1


@pytest.mark.anyio
async def test_errors_are_not_cached():
    provider = _provider(single=AsyncMock(side_effect=ProviderClientError("400: bad request")))
    client = _client(provider)

    await client.categorize("Whole Foods", Decimal("1"), TransactionType.EXPENSE)
    assert client.cache_size == 0


@pytest.mark.anyio
async def test_rate_limit_fails_fast_until_cooldown():
    provider = _provider(single=AsyncMock(side_effect=RateLimitedError("429")))
    client = _client(provider)

    first = await client.categorize("Coffee", Decimal("3"), TransactionType.EXPENSE)
    second = await client.categorize("Tea", Decimal("3"), TransactionType.EXPENSE)

    assert first.error is True
    assert first.error_type == "rate_limited"
    assert second.error is True
    assert second.reasoning == "rate limited"
    assert provider.request_categorization.await_count == 1
    assert client.metrics.rate_limit_errors == 1
    assert client.metrics.is_rate_limited is True
    assert client.available is False


@pytest.mark.anyio
async def test_transient_error_is_retried_with_backoff():
    provider = _provider(single=AsyncMock(side_effect=[TransientProviderError("503"), _answer()]))
    client = _client(provider)

    res = await client.categorize("Coffee", Decimal("3"), TransactionType.EXPENSE)

    assert res.error is False
    assert provider.request_categorization.await_count == 2
    assert client.metrics.retries == 1
    client._sleep.assert_awaited_once_with(1.0)


@pytest.mark.anyio
async def test_retries_are_capped():
    provider = _provider(single=AsyncMock(side_effect=TransientProviderError("503")))
    client = _client(provider, max_retries=2)

    res = await client.categorize("Coffee", Decimal("3"), TransactionType.EXPENSE)

    assert res.error is True
    assert provider.request_categorization.await_count == 3
    assert [call.args[0] for call in client._sleep.await_args_list] == [1.0, 2.0]


@pytest.mark.anyio
async def test_client_error_is_not_retried():
    provider = _provider(single=AsyncMock(side_effect=ProviderClientError("401: bad key")))
    client = _client(provider)

    res = await client.categorize("Coffee", Decimal("3"), TransactionType.EXPENSE)

    assert res.error is True
    assert provider.request_categorization.await_count == 1
    assert client.metrics.errors == 1
    assert client.metrics.retries == 0


@pytest.mark.anyio
async def test_request_timeout():
    async def hang(*args, **kwargs):
        await asyncio.Event().wait()

    provider = _provider(single=AsyncMock(side_effect=hang))
    client = _client(provider, request_timeout=0.01, max_retries=0)

    res = await client.categorize("Coffee", Decimal("3"), TransactionType.EXPENSE)

    assert res.error is True
    assert res.error_type == "timeout"
    assert client.metrics.timeout_errors == 1


@pytest.mark.anyio
async def test_not_configured():
    client = _client(None)
    res = await client.categorize("Coffee", Decimal("3"), TransactionType.EXPENSE)

    assert res.error is True
    assert res.error_type == "api_not_configured"
    assert client.available is False


@pytest.mark.anyio
async def test_cache_evicts_oldest_tenth():
    provider = _provider()
    client = _client(provider, cache_size=10)

    for index in range(11):
        await client.categorize(f"Shop {index}", Decimal("1"), TransactionType.EXPENSE)

    assert client.cache_size == 10
    await client.categorize("Shop 0", Decimal("1"), TransactionType.EXPENSE)
    assert provider.request_categorization.await_count == 12


@pytest.mark.anyio
async def test_batch_failure_falls_back_to_individual_calls():
    provider = _provider(batch=AsyncMock(side_effect=ProviderClientError("400")))
    client = _client(provider)
    transactions = [
        Transaction(id=str(index), description=f"Market {index}", amount=index)
        for index in range(3)
    ]

    results = await client.categorize_batch(transactions, CATEGORIES)

    assert len(results) == 3
    assert all(result.category_name == "Groceries" for result in results)
    assert provider.request_categorization.await_count == 3


@pytest.mark.anyio
async def test_batch_is_chunked_and_keeps_order():
    async def answer(chunk, names):
        return [_answer(name=t.description) for t in chunk]

    provider = _provider(batch=AsyncMock(side_effect=answer))
    client = _client(provider, ai_batch_size=2)
    transactions = [Transaction(id=str(i), description=f"Item {i}") for i in range(3)]

    results = await client.categorize_batch(transactions, CATEGORIES)

    assert [r.category_name for r in results] == ["Item 0", "Item 1", "Item 2"]
    assert provider.request_batch.await_count == 2
    client._sleep.assert_awaited_once_with(0.5)
    assert client.metrics.batch_requests == 1


@pytest.mark.anyio
async def test_batch_fills_missing_answers_individually():
    provider = _provider(batch=AsyncMock(return_value=[_answer(name="Dining Out"), None]))
    client = _client(provider)
    transactions = [Transaction(id="a", description="Diner"), Transaction(id="b", description="Market")]

    results = await client.categorize_batch(transactions, CATEGORIES)

    assert [r.category_name for r in results] == ["Dining Out", "Groceries"]
    assert provider.request_categorization.await_count == 1


def test_metrics_cooldown_expires():
    metrics = ExternalServiceMetrics(cooldown=0)
    metrics.mark_rate_limited()
    assert metrics.check_rate_limited() is False
    assert metrics.last_rate_limit_time is not None


def test_metrics_reset_keeps_rate_limit():
    metrics = ExternalServiceMetrics(cooldown=60)
    metrics.increment("api_calls", 3)
    metrics.mark_rate_limited()

    metrics.reset()

    assert metrics.api_calls == 0
    assert metrics.is_rate_limited is True
    snapshot = metrics.snapshot(cache_size=4)
    assert snapshot["cache_size"] == 4
    assert snapshot["is_rate_limited"] is True


@pytest.mark.anyio
async def test_batch_with_wrong_result_count_falls_back_for_whole_chunk():
    provider = _provider(batch=AsyncMock(return_value=[_answer(name="Dining Out")]))
    client = _client(provider)
    transactions = [Transaction(id="a", description="Diner"), Transaction(id="b", description="Market")]

    results = await client.categorize_batch(transactions, CATEGORIES)

    assert [r.category_name for r in results] == ["Groceries", "Groceries"]
    assert provider.request_categorization.await_count == 2
    assert client.metrics.errors == 1


def _groceries() -> list[Transaction]:
    return [
        Transaction(id=str(index), description="Safeway", amount=Decimal("40") + index)
        for index in range(3)
    ]


@pytest.mark.anyio
async def test_summary_is_cached():
    provider = _provider()
    client = _client(provider)

    first = await client.summarize_batch(_groceries())
    second = await client.summarize_batch(list(reversed(_groceries())))

    assert first.summary == "Weekly grocery runs"
    assert first.insights == ["Mostly Safeway"]
    assert second.from_cache is True
    assert provider.request_summary.await_count == 1
    assert client.metrics.cache_hits == 1


@pytest.mark.anyio
async def test_summary_failure_returns_no_summary():
    provider = _provider(summary=AsyncMock(side_effect=ProviderClientError("400")))
    client = _client(provider)

    res = await client.summarize_batch(_groceries())

    assert res.error is True
    assert res.summary is None
    assert client.cache_size == 0


@pytest.mark.anyio
async def test_summary_respects_rate_limit():
    provider = _provider(summary=AsyncMock(side_effect=RateLimitedError("429")))
    client = _client(provider)

    await client.summarize_batch(_groceries())
    res = await client.summarize_batch(_groceries()[:1])

    assert res.error_type == "rate_limited"
    assert provider.request_summary.await_count == 1


@pytest.mark.anyio
async def test_summary_timeout():
    async def hang(*args, **kwargs):
        await asyncio.Event().wait()

    provider = _provider(summary=AsyncMock(side_effect=hang))
    client = _client(provider, summary_timeout=0.01)

    res = await client.summarize_batch(_groceries())

    assert res.timed_out is True
    assert res.summary is None
    assert client.metrics.timeout_errors >= 1


@pytest.mark.anyio
async def test_summary_not_configured():
    res = await _client(None).summarize_batch(_groceries())
    assert res.error_type == "api_not_configured"


@pytest.mark.anyio
async def test_use_provider_clears_cache():
    provider = _provider()
    client = _client(provider)
    await client.categorize("Coffee", Decimal("3"), TransactionType.EXPENSE)

    client.use_provider(None)

    assert client.cache_size == 0
    assert client.configured is False
