from typing import Annotated

from fastapi import APIRouter, Depends

from spendsort.api.dependencies import get_repository, get_service
from spendsort.api.schemas import HistoryRequest, LearnRequest
from spendsort.integration.repository import InMemoryRepository
from spendsort.logger import get_logger
from spendsort.manager import CategorizerService

logger = get_logger(__name__)

router = APIRouter(prefix="/history")


@router.post("")
async def load_history(
    req: HistoryRequest,
    service: Annotated[CategorizerService, Depends(get_service)],
    repository: Annotated[InMemoryRepository, Depends(get_repository)],
) -> dict[str, int]:
    for transaction in req.transactions:
        repository.add(transaction)
    if req.categories:
        repository.categories = list(req.categories)
    service.mark_stale()
    logger.info(
        "[TRAIN] History updated: %d transactions, %d categories",
        len(req.transactions),
        len(req.categories),
    )
    return {
        "transactions": len(repository.transactions),
        "categories": len(repository.categories),
    }


@router.post("/learn")
async def learn(
    req: LearnRequest,
    service: Annotated[CategorizerService, Depends(get_service)],
    repository: Annotated[InMemoryRepository, Depends(get_repository)],
) -> dict[str, str]:
    transaction = req.transaction.model_copy(update={"category_id": req.category_id})
    repository.add(transaction)
    service.learn(transaction)
    return {"status": "learned", "transaction_id": transaction.id, "category_id": req.category_id}


@router.post("/train")
async def train(
    service: Annotated[CategorizerService, Depends(get_service)],
) -> dict:
    await service.train()
    return service.status()
