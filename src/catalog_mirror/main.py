"""FastAPI application entry point."""

import structlog
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from catalog_mirror import __version__
from catalog_mirror.api.v1.router import api_router
from catalog_mirror.config import get_settings
from catalog_mirror.exceptions import CatalogMirrorError
from catalog_mirror.infrastructure.database.connection import close_engine, get_session_factory
from catalog_mirror.infrastructure.redis import close_redis
from catalog_mirror.middleware.timing import TimingMiddleware
from catalog_mirror.services.sync_controller import SyncJobController
from catalog_mirror.services.sync_status import SyncStatePublisher

structlog.configure(
    processors=[
        structlog.contextvars.merge_contextvars,
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.dev.set_exc_info,
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.dev.ConsoleRenderer() if get_settings().debug else structlog.processors.JSONRenderer(),
    ],
    wrapper_class=structlog.make_filtering_bound_logger(get_settings().log_level),
    context_class=dict,
    logger_factory=structlog.PrintLoggerFactory(),
    cache_logger_on_first_use=True,
)

logger = structlog.get_logger()


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """Application lifespan manager for startup and shutdown events."""
    settings = get_settings()
    logger.info(
        "Starting Catalog Mirror Service",
        app_env=settings.app_env,
        debug=settings.debug,
    )

    yield

    await close_redis()
    await close_engine()
    logger.info("Shutting down Catalog Mirror Service")


async def catalog_mirror_error_handler(request: Request, exc: CatalogMirrorError) -> JSONResponse:
    logger.info(
        "Request rejected",
        path=request.url.path,
        error=exc.code,
        detail=exc.message,
    )
    return JSONResponse(status_code=exc.status_code, content=exc.to_dict())


def create_app(sync_controller: SyncJobController | None = None) -> FastAPI:
    """Create and configure the FastAPI application."""
    settings = get_settings()

    app = FastAPI(
        title="Catalog Mirror API",
        description="Tenant-scoped catalog mirror with stock adjustment ledger and sync control",
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        openapi_url="/openapi.json",
        lifespan=lifespan,
    )

    app.add_middleware(TimingMiddleware)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    app.add_exception_handler(CatalogMirrorError, catalog_mirror_error_handler)
    app.include_router(api_router, prefix="/api/v1")

    app.state.sync_controller = sync_controller or SyncJobController(
        publisher=SyncStatePublisher(session_factory=get_session_factory())
    )
    return app


app = create_app()


def run() -> None:
    """Run the application using uvicorn."""
    import uvicorn

    settings = get_settings()
    uvicorn.run(
        "catalog_mirror.main:app",
        host=settings.api_host,
        port=settings.api_port,
        reload=settings.debug,
        workers=1 if settings.debug else settings.api_workers,
    )


if __name__ == "__main__":
    run()
