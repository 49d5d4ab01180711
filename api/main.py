import asyncio
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from starlette.exceptions import HTTPException

from api.config.logging import get_logger, setup_logging
from api.config.settings import Settings, get_settings, settings as default_settings
from api.infra.broker import BrokerConnector
from api.infra.status_store import StatusStore
from api.v1.core.exceptions import (
    OffloadException,
    RequestContextMiddleware,
    general_exception_handler,
    http_exception_handler,
    offload_exception_handler,
    request_validation_exception_handler,
)
from api.v1.core.registries import task_registry
from api.v1.healthz import router as health_router
from api.v1.infra.jobs.dispatcher import Dispatcher
from api.v1.infra.jobs.routes import router as jobs_router

logger = get_logger(__name__)


def _build_lifespan(
    settings: Settings,
    connector: BrokerConnector | None,
    status_store: StatusStore | None,
):
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        owns_connector = connector is None
        owns_store = status_store is None
        app.state.connector = connector or BrokerConnector(settings)
        app.state.status_store = status_store or StatusStore(settings)
        app.state.dispatcher = None

        # Exhausting the retry budget aborts startup
        if owns_connector:
            await app.state.connector.connect()

        dispatcher_task = None
        if settings.run_dispatcher_in_app:
            app.state.dispatcher = Dispatcher(
                settings, app.state.connector, app.state.status_store
            )
            dispatcher_task = asyncio.create_task(app.state.dispatcher.run())

        try:
            yield
        finally:
            if dispatcher_task is not None:
                await app.state.dispatcher.stop()
                results = await asyncio.gather(dispatcher_task, return_exceptions=True)
                if isinstance(results[0], Exception):
                    logger.error(
                        "In-process dispatcher exited with error",
                        error=str(results[0]),
                    )
            if owns_connector:
                await app.state.connector.close()
            if owns_store:
                await app.state.status_store.close()

    return lifespan


def create_app(
    settings: Settings | None = None,
    *,
    connector: BrokerConnector | None = None,
    status_store: StatusStore | None = None,
) -> FastAPI:
    """
    Create and configure the FastAPI application.

    The broker connector and status store are built and torn down by the
    application lifespan unless they are passed in, in which case the caller
    owns them.
    """
    settings = settings or default_settings

    # Initialize structured logging
    setup_logging(settings)

    app = FastAPI(
        title=settings.app_name,
        description="Asynchronous execution of CPU-bound jobs",
        version=settings.version,
        debug=settings.debug,
        openapi_url="/v1/openapi.json" if settings.debug else None,
        docs_url="/v1/docs" if settings.debug else None,
        redoc_url="/v1/redoc" if settings.debug else None,
        lifespan=_build_lifespan(settings, connector, status_store),
    )
    app.state.settings = settings
    app.state.connector = connector
    app.state.status_store = status_store
    app.state.dispatcher = None
    app.dependency_overrides[get_settings] = lambda: settings

    # Add middleware
    app.add_middleware(RequestContextMiddleware)

    # Add CORS middleware for development
    if settings.debug:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )

    # Add exception handlers
    app.add_exception_handler(OffloadException, offload_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, request_validation_exception_handler)
    app.add_exception_handler(Exception, general_exception_handler)

    # Include routers with /v1 prefix
    app.include_router(health_router, prefix="/v1", tags=["health"])
    app.include_router(jobs_router, prefix="/v1")

    # Freeze registries in non-development environments to prevent runtime modifications
    if settings.environment != "development":
        task_registry.freeze()

    return app


def run() -> None:
    """Console entry point for the API server."""
    import uvicorn

    uvicorn.run(
        "api.main:create_app",
        factory=True,
        host=default_settings.host,
        port=default_settings.port,
        reload=default_settings.debug,
    )


if __name__ == "__main__":
    run()
