from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from spendsort.api.dependencies import get_external_optional, get_organizer, get_pipeline
from spendsort.api.schemas import BatchRequest
from spendsort.integration.external import ExternalCategorizationClient
from spendsort.models import Batch, BatchSummary, EnrichedBatch
from spendsort.services.batching import BatchOrganizer
from spendsort.services.enrichment import EnrichmentPipeline

router = APIRouter(prefix="/batches")


@router.post("/organize", response_model=list[Batch])
async def organize_batches(
    req: BatchRequest,
    organizer: Annotated[BatchOrganizer, Depends(get_organizer)],
) -> list[Batch]:
    if not req.transactions:
        raise HTTPException(status_code=400, detail="No transactions provided")
    return organizer.organize(req.transactions)


@router.post("/enrich", response_model=list[EnrichedBatch])
async def enrich_batches(
    req: BatchRequest,
    pipeline: Annotated[EnrichmentPipeline, Depends(get_pipeline)],
) -> list[EnrichedBatch]:
    if not req.transactions:
        raise HTTPException(status_code=400, detail="No transactions provided")
    return await pipeline.enrich(req.transactions, req.confidence_threshold)


@router.post("/summary", response_model=BatchSummary)
async def summarize_batch(
    req: BatchRequest,
    external: Annotated[ExternalCategorizationClient | None, Depends(get_external_optional)],
) -> BatchSummary:
    if not req.transactions:
        raise HTTPException(status_code=400, detail="No transactions provided")
    if external is None:
        return BatchSummary(error=True, error_type="api_not_configured")
    return await external.summarize_batch(req.transactions)
