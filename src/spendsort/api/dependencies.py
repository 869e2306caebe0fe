from fastapi import HTTPException, Request

from spendsort.core.configuration import CategorizerConfig
from spendsort.integration.external import ExternalCategorizationClient
from spendsort.integration.repository import InMemoryRepository
from spendsort.manager import CategorizerService
from spendsort.services.batching import BatchOrganizer
from spendsort.services.enrichment import EnrichmentPipeline


def get_service(request: Request) -> CategorizerService:
    service = getattr(request.app.state, "service", None)
    if not service:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return service


def get_organizer(request: Request) -> BatchOrganizer:
    organizer = getattr(request.app.state, "organizer", None)
    if not organizer:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return organizer


def get_pipeline(request: Request) -> EnrichmentPipeline:
    pipeline = getattr(request.app.state, "pipeline", None)
    if not pipeline:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return pipeline


def get_repository(request: Request) -> InMemoryRepository:
    repository = getattr(request.app.state, "repository", None)
    if repository is None:
        raise HTTPException(status_code=500, detail="Service not initialized")
    return repository


def get_external_optional(request: Request) -> ExternalCategorizationClient | None:
    return getattr(request.app.state, "external", None)


def get_config(request: Request) -> CategorizerConfig:
    return getattr(request.app.state, "config", None) or CategorizerConfig()
