from __future__ import annotations

from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from starlette.responses import Response

from . import __version__
from .api.routes import router as api_router
from .broker.service import TaskBroker
from .core.audit import AuditLoggingMiddleware
from .core.config import Settings, get_settings
from .core.exceptions import TaskNotFoundError, TaskValidationError
from .core.logging import configure_logging, get_logger
from .schemas.tasks import HealthResponse

logger = get_logger(name=__name__)


async def _validation_error_handler(request: Request, exc: TaskValidationError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_400_BAD_REQUEST, content={"error": str(exc)})


async def _not_found_handler(request: Request, exc: TaskNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"error": str(exc)})


def create_app(settings: Settings | None = None, *, broker: TaskBroker | None = None) -> FastAPI:
    settings = settings or get_settings()
    configure_logging(
        settings.observability.log_level,
        component="broker",
        json_output=settings.environment != "local",
    )
    broker = broker or TaskBroker.from_settings(settings)

    @asynccontextmanager
    async def app_lifespan(app: FastAPI):
        async with broker.lifecycle():
            logger.info(
                "broker_started",
                host=settings.broker.host,
                port=settings.broker.port,
                sweep_interval_s=settings.broker.sweep_interval_seconds,
            )
            yield
        logger.info("broker_stopped", **broker.stats())

    app = FastAPI(title="taskrelay broker", version=__version__, lifespan=app_lifespan)
    app.state.settings = settings
    app.state.broker = broker
    app.add_middleware(AuditLoggingMiddleware)
    app.add_exception_handler(TaskValidationError, _validation_error_handler)  # type: ignore[arg-type]
    app.add_exception_handler(TaskNotFoundError, _not_found_handler)  # type: ignore[arg-type]
    app.include_router(api_router)

    @app.get("/health", tags=["health"])
    async def healthcheck() -> dict[str, object]:
        return HealthResponse(**broker.stats()).model_dump()

    if settings.observability.prometheus_enabled:

        @app.get("/metrics", tags=["observability"])
        async def metrics() -> Response:
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()
