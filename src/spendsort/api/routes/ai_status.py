from typing import Annotated

from fastapi import APIRouter, Depends, HTTPException

from spendsort.api.dependencies import get_config, get_external_optional, get_service
from spendsort.api.schemas import ApiKeyRequest
from spendsort.core.configuration import CategorizerConfig, ProviderConfig
from spendsort.integration.external import ExternalCategorizationClient
from spendsort.integration.provider import build_provider, is_api_key_format
from spendsort.logger import get_logger
from spendsort.manager import CategorizerService

logger = get_logger(__name__)

router = APIRouter(prefix="/ai-status")

RESET_TO_ENV = "RESET_TO_ENV"


@router.get("")
async def ai_status(
    service: Annotated[CategorizerService, Depends(get_service)],
) -> dict:
    return service.status()


@router.post("/reset-metrics")
async def reset_metrics(
    external: Annotated[ExternalCategorizationClient | None, Depends(get_external_optional)],
) -> dict[str, str]:
    if external is None:
        return {"status": "unavailable"}
    external.metrics.reset()
    return {"status": "reset"}


@router.post("/clear-cache")
async def clear_cache(
    external: Annotated[ExternalCategorizationClient | None, Depends(get_external_optional)],
) -> dict[str, str | int]:
    if external is None:
        return {"status": "unavailable", "cleared": 0}
    cleared = external.cache_size
    external.clear_cache()
    return {"status": "cleared", "cleared": cleared}


@router.post("/check-key")
async def check_key(req: ApiKeyRequest) -> dict[str, str | bool]:
    if not is_api_key_format(req.api_key):
        raise HTTPException(status_code=400, detail='Invalid API key format. OpenAI API keys start with "sk-"')
    return {"valid": True, "message": "API key format is valid. Use the configure endpoint to apply it."}


@router.post("/configure")
async def configure(
    req: ApiKeyRequest,
    external: Annotated[ExternalCategorizationClient | None, Depends(get_external_optional)],
    config: Annotated[CategorizerConfig, Depends(get_config)],
) -> dict[str, str | bool]:
    """Replace the provider for this process. ``RESET_TO_ENV`` restores the environment's key."""
    if external is None:
        raise HTTPException(status_code=500, detail="Service not initialized")
    provider_config = ProviderConfig.from_env()
    if req.api_key != RESET_TO_ENV:
        if not is_api_key_format(req.api_key):
            raise HTTPException(status_code=400, detail='Invalid API key format. OpenAI API keys start with "sk-"')
        provider_config = provider_config.model_copy(update={"api_key": req.api_key, "simulate_failure": False})
    external.use_provider(build_provider(provider_config, config))
    logger.info("[AI] Provider reconfigured (configured: %s)", external.configured)
    return {"success": external.configured, "configured": external.configured}
