from collections.abc import AsyncGenerator
from contextlib import asynccontextmanager

from fastapi import FastAPI

from spendsort.api.routes import ai_status, batches, categorize, history, suggestions
from spendsort.core import settings
from spendsort.core.configuration import CategorizerConfig, ProviderConfig
from spendsort.integration.external import ExternalCategorizationClient
from spendsort.integration.metrics import ExternalServiceMetrics
from spendsort.integration.provider import CategorizationProvider, build_provider
from spendsort.integration.repository import InMemoryRepository
from spendsort.logger import get_logger, setup_logging
from spendsort.manager import CategorizerService
from spendsort.services.batching import BatchOrganizer
from spendsort.services.enrichment import EnrichmentPipeline

logger = get_logger(__name__)


def wire_services(
    app: FastAPI,
    config: CategorizerConfig,
    provider: CategorizationProvider | None,
    repository: InMemoryRepository | None = None,
) -> None:
    repository = repository if repository is not None else InMemoryRepository()
    metrics = ExternalServiceMetrics(cooldown=config.rate_limit_cooldown)
    external = ExternalCategorizationClient(provider, metrics=metrics, config=config)
    service = CategorizerService(repository, external=external, config=config)
    organizer = BatchOrganizer(config)

    app.state.config = config
    app.state.repository = repository
    app.state.external = external
    app.state.service = service
    app.state.organizer = organizer
    app.state.pipeline = EnrichmentPipeline(organizer, service)


def create_app() -> FastAPI:
    setup_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        logger.info("Initializing services...")
        settings.log_environment()

        config = CategorizerConfig.from_env()
        wire_services(app, config, build_provider(ProviderConfig.from_env(), config))

        logger.info("Services initialized.")
        yield
        logger.info("Service shutting down.")

    app = FastAPI(title="spendsort", lifespan=lifespan)

    app.include_router(suggestions.router)
    app.include_router(batches.router)
    app.include_router(categorize.router)
    app.include_router(history.router)
    app.include_router(ai_status.router)

    return app


app = create_app()
