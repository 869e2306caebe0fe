from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from spendsort.api.dependencies import get_service
from spendsort.api.schemas import BatchRequest
from spendsort.manager import CategorizerService
from spendsort.models import Suggestion

router = APIRouter(prefix="/categorize")

MAX_EXTERNAL_BATCH = 20


@router.post("/batch", response_model=list[Suggestion])
async def categorize_batch(
    req: BatchRequest,
    service: Annotated[CategorizerService, Depends(get_service)],
) -> list[Suggestion]:
    if not req.transactions:
        raise HTTPException(status_code=400, detail="No transactions provided")
    if len(req.transactions) > MAX_EXTERNAL_BATCH:
        raise HTTPException(
            status_code=400,
            detail=f"Batch size exceeds maximum limit of {MAX_EXTERNAL_BATCH} transactions",
        )
    return await service.categorize_with_external(req.transactions, req.confidence_threshold)
