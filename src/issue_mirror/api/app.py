"""FastAPI application: issue listing, health probes and Prometheus metrics.

The lifespan builds the process-wide services (engine, cache, sync workers)
once and tears them down on shutdown.
"""

import logging
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Optional

from fastapi import FastAPI, Request, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from prometheus_client import make_asgi_app
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

from ..__version__ import __version__
from ..cache import CachePort, RedisCache, create_cache
from ..config import MirrorConfig, get_config
from ..connectors.github import GitHubClient
from ..db import create_engine, create_session_factory
from ..exceptions import ValidationError
from ..reader import ReadPath
from ..sync.orchestrator import SyncOrchestrator
from ..sync.queue import InProcessSyncQueue
from .issues import router as issues_router

logger = logging.getLogger("issue_mirror.api")

__all__ = ["AppServices", "build_services", "create_app"]


@dataclass
class AppServices:
    """Long-lived collaborators shared by every request."""

    config: MirrorConfig
    session_factory: async_sessionmaker[AsyncSession]
    read_path: ReadPath
    sync_queue: InProcessSyncQueue
    cache: CachePort
    engine: Optional[AsyncEngine] = None

    async def aclose(self) -> None:
        await self.sync_queue.stop()
        if isinstance(self.cache, RedisCache):
            await self.cache.close()
        if self.engine is not None:
            await self.engine.dispose()


ServicesFactory = Callable[[MirrorConfig], Awaitable[AppServices]]


async def build_services(config: MirrorConfig) -> AppServices:
    """Wire the production services from configuration."""
    engine = create_engine(config)
    session_factory = create_session_factory(engine)
    cache = create_cache(config.redis_url)

    def source_factory() -> GitHubClient:
        return GitHubClient.from_config(config)

    orchestrator = SyncOrchestrator.from_config(config, session_factory, source_factory, cache)
    sync_queue = InProcessSyncQueue(
        orchestrator.run,
        workers=config.sync_workers,
        maxsize=config.sync_queue_maxsize,
        max_retries=config.sync_max_retries,
        retry_backoff_seconds=config.sync_retry_backoff_seconds,
    )
    read_path = ReadPath.from_config(config, cache, sync_queue, source_factory)
    return AppServices(
        config=config,
        session_factory=session_factory,
        read_path=read_path,
        sync_queue=sync_queue,
        cache=cache,
        engine=engine,
    )


def create_app(
    config: Optional[MirrorConfig] = None,
    services_factory: ServicesFactory = build_services,
) -> FastAPI:
    """Create the API application.

    Args:
        config: Settings (default: get_config())
        services_factory: Builds AppServices inside the running event loop
    """
    config = config or get_config()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        services = await services_factory(config)
        services.sync_queue.start()
        app.state.services = services
        logger.info("api_started", extra={"version": __version__})
        try:
            yield
        finally:
            await services.aclose()
            logger.info("api_stopped")

    app = FastAPI(
        title="Issue Mirror API",
        description="Cache-aware paginated reads over a local mirror of GitHub issues",
        version=__version__,
        lifespan=lifespan,
    )
    app.mount("/metrics", make_asgi_app())
    app.include_router(issues_router)

    @app.exception_handler(ValidationError)
    async def validation_error_handler(request: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})

    @app.exception_handler(RequestValidationError)
    async def request_validation_handler(
        request: Request, exc: RequestValidationError
    ) -> JSONResponse:
        errors = exc.errors()
        message = "; ".join(
            f"{'.'.join(str(p) for p in err.get('loc', ())[1:])}: {err.get('msg')}"
            for err in errors
        )
        return JSONResponse(
            status_code=status.HTTP_400_BAD_REQUEST,
            content={"error": message or "invalid request parameters"},
        )

    @app.exception_handler(Exception)
    async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
        logger.error(
            "request_failed",
            extra={
                "path": request.url.path,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )
        return JSONResponse(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            content={"error": "internal server error"},
        )

    @app.get("/health", tags=["Health"])
    async def health(request: Request) -> dict[str, Any]:
        """Liveness plus the sync worker pool state."""
        services: AppServices = request.app.state.services
        return {
            "status": "healthy",
            "version": __version__,
            "sync_workers_running": services.sync_queue.running,
            "sync_queue_depth": services.sync_queue.qsize(),
        }

    return app
