from collections.abc import Iterable
from time import perf_counter

from spendsort.domain.timefmt import format_duration
from spendsort.logger import get_logger
from spendsort.manager import CategorizerService
from spendsort.models import Batch, EnrichedBatch, EnrichmentStatus, Suggestion, Transaction
from spendsort.services.batching import BatchOrganizer
from spendsort.services.statistics import generate_title

logger = get_logger(__name__)


def _propose(transaction: Transaction, suggestion: Suggestion) -> Transaction:
    if transaction.category_id or not suggestion.category_id:
        return transaction
    update: dict[str, object] = {"category_id": suggestion.category_id}
    if not suggestion.needs_review:
        update["enrichment_status"] = EnrichmentStatus.ENRICHED
    return transaction.model_copy(update=update)


class EnrichmentPipeline:
    """Organizes transactions into batches and attaches category suggestions to each."""

    def __init__(self, organizer: BatchOrganizer, service: CategorizerService) -> None:
        self.organizer = organizer
        self.service = service

    async def _summarize(self, batch: Batch) -> Batch:
        """Retitle the batch from an AI summary when one is available. Keeps the heuristic title otherwise."""
        external = self.service.external
        if external is None or not external.available:
            return batch
        summary = await external.summarize_batch(batch.transactions)
        if summary.error or not summary.summary:
            logger.debug("[BATCH] %s keeps heuristic title (%s)", batch.id, summary.error_type or "empty summary")
            return batch
        metadata = batch.metadata.model_copy(update={"summary": summary.summary, "insights": summary.insights})
        return batch.model_copy(update={
            "metadata": metadata,
            "title": generate_title(batch.id, batch.transactions, metadata),
        })

    async def enrich(
        self,
        transactions: Iterable[Transaction],
        confidence_threshold: float | None = None,
    ) -> list[EnrichedBatch]:
        started = perf_counter()
        batches = self.organizer.organize(transactions)
        enriched: list[EnrichedBatch] = []
        for batch in batches:
            batch = await self._summarize(batch)
            result = await self.service.suggest_batch(batch.transactions, confidence_threshold)
            proposed = [_propose(t, s) for t, s in zip(batch.transactions, result.suggestions)]
            status = EnrichmentStatus.PENDING if result.needs_review else EnrichmentStatus.ENRICHED
            logger.info(
                "[BATCH] %s '%s': top category %s (%d auto, %d review)",
                batch.id,
                batch.title,
                result.top_category,
                result.auto_count,
                result.review_count,
            )
            enriched.append(EnrichedBatch(
                batch=batch.model_copy(update={"transactions": proposed, "status": status}),
                suggestions=result,
            ))
        logger.info(
            "[BATCH] Enriched %d batches in %s",
            len(enriched),
            format_duration(perf_counter() - started),
        )
        return enriched
