from contextlib import asynccontextmanager
import logging

from fastapi import Depends, FastAPI, Request, status
from fastapi.responses import JSONResponse, Response
from opentelemetry.instrumentation.fastapi import FastAPIInstrumentor
from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

import supplyhub.models  # noqa: F401
from supplyhub.context import get_correlation_id
from supplyhub.core.config import get_settings
from supplyhub.core.database import get_db
from supplyhub.core.errors import (
    ConflictError,
    DataIncompleteError,
    MalformedInput,
    NotFoundError,
    SupplyHubError,
    TransientExternalFailure,
    ValidationError,
)
from supplyhub.events import DomainEvent, event_bus
from supplyhub.logging import configure_logging
from supplyhub.metrics import generate_metrics_payload, metrics_content_type
from supplyhub.middleware.correlation_id import CorrelationIdMiddleware
from supplyhub.middleware.request_logging import RequestLoggingMiddleware
from supplyhub.otel import get_fastapi_server_request_hook, setup_otel


configure_logging()
logger = logging.getLogger("supplyhub.ops")
_subscriptions_registered = False

_ERROR_STATUS: list[tuple[type[SupplyHubError], int, str]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND, "NOT_FOUND"),
    (ConflictError, status.HTTP_409_CONFLICT, "CONFLICT"),
    (ValidationError, status.HTTP_422_UNPROCESSABLE_ENTITY, "VALIDATION_ERROR"),
    (MalformedInput, status.HTTP_422_UNPROCESSABLE_ENTITY, "MALFORMED_INPUT"),
    (DataIncompleteError, status.HTTP_422_UNPROCESSABLE_ENTITY, "DATA_INCOMPLETE"),
    (TransientExternalFailure, status.HTTP_503_SERVICE_UNAVAILABLE, "UPSTREAM_UNAVAILABLE"),
]


def _on_system_started(event: DomainEvent) -> None:
    logger.info("system.started", extra={"status": event.payload.get("service")})


def error_response(exc: SupplyHubError) -> JSONResponse:
    for error_type, status_code, code in _ERROR_STATUS:
        if isinstance(exc, error_type):
            break
    else:
        status_code, code = status.HTTP_500_INTERNAL_SERVER_ERROR, "INTERNAL_ERROR"
    return JSONResponse(
        status_code=status_code,
        content={
            "code": code,
            "message": str(exc),
            "details": getattr(exc, "missing", None),
            "correlation_id": get_correlation_id(),
        },
    )


async def _handle_domain_error(request: Request, exc: SupplyHubError) -> JSONResponse:
    return error_response(exc)


@asynccontextmanager
async def lifespan(app: FastAPI):
    global _subscriptions_registered
    if not _subscriptions_registered:
        event_bus.subscribe("system.started", _on_system_started)
        _subscriptions_registered = True
    event_bus.publish("system.started", {"service": "supplyhub"})
    yield


def create_app() -> FastAPI:
    settings = get_settings()
    app = FastAPI(title="supplyhub ops", version="0.1.0", lifespan=lifespan)
    app.add_middleware(RequestLoggingMiddleware)
    app.add_middleware(CorrelationIdMiddleware)
    app.add_exception_handler(SupplyHubError, _handle_domain_error)

    @app.get("/health", tags=["system"])
    def health() -> dict[str, str]:
        return {
            "status": "ok",
            "service": settings.app_name,
            "environment": settings.app_env,
        }

    @app.get("/health/ready", tags=["system"])
    def ready(db: Session = Depends(get_db)) -> JSONResponse:
        try:
            db.execute(text("SELECT 1"))
        except SQLAlchemyError as exc:
            logger.error("health.database_unavailable", extra={"error": str(exc)})
            return JSONResponse(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, content={"status": "unavailable"})
        return JSONResponse(content={"status": "ready"})

    @app.get("/metrics", tags=["system"])
    def metrics() -> Response:
        if not get_settings().metrics_enabled:
            return JSONResponse(status_code=status.HTTP_404_NOT_FOUND, content={"detail": "not found"})
        return Response(content=generate_metrics_payload(), media_type=metrics_content_type())

    setup_otel("ops", settings)
    if not getattr(app, "_is_instrumented_by_opentelemetry", False):
        FastAPIInstrumentor().instrument_app(app, server_request_hook=get_fastapi_server_request_hook())
    return app


app = create_app()
