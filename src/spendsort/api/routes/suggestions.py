from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from spendsort.api.dependencies import get_service
from spendsort.api.schemas import BatchRequest, SimilarRequest, SimilarTransaction, SuggestRequest
from spendsort.logger import get_logger
from spendsort.manager import CategorizerService
from spendsort.models import BatchSuggestionResult, Suggestion

logger = get_logger(__name__)

router = APIRouter(prefix="/suggestions")


@router.post("/category", response_model=Suggestion)
async def suggest_category(
    req: SuggestRequest,
    service: Annotated[CategorizerService, Depends(get_service)],
) -> Suggestion:
    return await service.suggest(req.transaction, threshold=req.confidence_threshold)


@router.post("/batch", response_model=BatchSuggestionResult)
async def suggest_batch(
    req: BatchRequest,
    service: Annotated[CategorizerService, Depends(get_service)],
) -> BatchSuggestionResult:
    if not req.transactions:
        raise HTTPException(status_code=400, detail="No transactions provided")
    logger.info("[CASCADE] Batch suggestion requested for %d transactions", len(req.transactions))
    return await service.suggest_batch(req.transactions, req.confidence_threshold)


@router.post("/similar", response_model=list[SimilarTransaction])
async def find_similar(
    req: SimilarRequest,
    service: Annotated[CategorizerService, Depends(get_service)],
) -> list[SimilarTransaction]:
    matches = service.find_similar_transactions(req.transaction, req.candidates, req.threshold)
    return [SimilarTransaction(transaction=t, score=score) for t, score in matches]
