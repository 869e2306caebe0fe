from datetime import date
from unittest.mock import AsyncMock, MagicMock

import pytest

from spendsort.core.configuration import CategorizerConfig
from spendsort.integration.external import ExternalCategorizationClient
from spendsort.integration.metrics import ExternalServiceMetrics
from spendsort.integration.provider import CategorizationProvider, TransientProviderError
from spendsort.integration.repository import InMemoryRepository
from spendsort.manager import CategorizerService
from spendsort.models import BatchSummary, Category, ExternalCategorization, Transaction
from spendsort.services.batching import BatchOrganizer
from spendsort.services.enrichment import EnrichmentPipeline

CATEGORIES = [
    Category(id="dining", name="Dining"),
    Category(id="groceries", name="Groceries"),
]


def _starbucks() -> list[Transaction]:
    return [
        Transaction(id=str(i), merchant="Starbucks", description="Coffee", amount=amount, date=date(2025, 3, i + 1))
        for i, amount in enumerate(["5.75", "8.45", "15.99", "4.50"])
    ]


def _provider(**summary) -> MagicMock:
    provider = MagicMock(spec=CategorizationProvider)
    provider.request_categorization = AsyncMock(
        return_value=ExternalCategorization(category_name="Dining", confidence=0.9),
    )
    provider.request_batch = AsyncMock(return_value=[])
    provider.request_summary = AsyncMock(**summary)
    return provider


def _pipeline(provider: CategorizationProvider | None) -> EnrichmentPipeline:
    config = CategorizerConfig(sub_batch_pause=0)
    external = ExternalCategorizationClient(
        provider,
        metrics=ExternalServiceMetrics(),
        config=config,
        sleep=AsyncMock(),
    )
    service = CategorizerService(InMemoryRepository([], CATEGORIES), external=external, config=config)
    return EnrichmentPipeline(BatchOrganizer(config), service)


@pytest.mark.anyio
async def test_summary_retitles_batch():
    provider = _provider(
        return_value=BatchSummary(summary="Coffee shop visits", insights=["Four Starbucks stops in March"]),
    )

    enriched = await _pipeline(provider).enrich(_starbucks())

    batch = enriched[0].batch
    assert batch.title == "Coffee shop visits"
    assert batch.metadata.summary == "Coffee shop visits"
    assert batch.metadata.insights == ["Four Starbucks stops in March"]
    provider.request_summary.assert_awaited_once()


@pytest.mark.anyio
async def test_failed_summary_keeps_heuristic_title():
    provider = _provider(side_effect=TransientProviderError("down"))

    enriched = await _pipeline(provider).enrich(_starbucks())

    batch = enriched[0].batch
    assert batch.title == "Starbucks - Expenses"
    assert batch.metadata.summary is None
    assert batch.metadata.insights == []


@pytest.mark.anyio
async def test_no_provider_skips_summary():
    enriched = await _pipeline(None).enrich(_starbucks())

    assert enriched[0].batch.title == "Starbucks - Expenses"
