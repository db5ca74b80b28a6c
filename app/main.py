"""Application entrypoint for the CI remediation control loop service."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI, Request, status
from fastapi.responses import JSONResponse, PlainTextResponse

from app.core.config import settings
from app.core.errors import (
    AuditWriteError,
    RemediationError,
    UpstreamAccessDeniedError,
    UpstreamNotFoundError,
    UpstreamRejectedError,
)
from app.dependencies import get_event_sink
from app.routers import audit, checks, lawbook, pulls, registry
from app.telemetry import collect_prometheus_metrics, configure_metrics, shutdown_metrics

_logger = logging.getLogger(__name__)

_ERROR_STATUS = {
    UpstreamNotFoundError: status.HTTP_404_NOT_FOUND,
    UpstreamAccessDeniedError: status.HTTP_403_FORBIDDEN,
    UpstreamRejectedError: status.HTTP_409_CONFLICT,
    AuditWriteError: status.HTTP_503_SERVICE_UNAVAILABLE,
}


@asynccontextmanager
async def lifespan(app: FastAPI):
    configure_metrics()
    yield
    get_event_sink().close()
    shutdown_metrics()


async def remediation_error_handler(request: Request, exc: RemediationError) -> JSONResponse:
    status_code = _ERROR_STATUS.get(type(exc), status.HTTP_503_SERVICE_UNAVAILABLE)
    if status_code >= 500:
        _logger.warning("%s failed with %s: %s", request.url.path, exc.kind, exc)
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": exc.kind, "resource": exc.resource},
    )


def create_app() -> FastAPI:
    app = FastAPI(
        title="CI Remediation Control Loop",
        description="Triages failing checks, decides when to stop retrying, reruns jobs, waits for reviews and gates merges.",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.add_exception_handler(RemediationError, remediation_error_handler)

    app.include_router(checks.router)
    app.include_router(pulls.router)
    app.include_router(registry.router)
    app.include_router(lawbook.router)
    app.include_router(audit.router)

    @app.get("/healthz", tags=["health"])
    def healthcheck() -> dict[str, str]:
        return {"status": "ok", "deployment_env": settings.deployment_tag}

    if settings.otel_exporter.lower().strip() == "prometheus":

        @app.get("/metrics", tags=["metrics"])
        def metrics_endpoint() -> PlainTextResponse:
            payload, content_type = collect_prometheus_metrics()
            return PlainTextResponse(payload, media_type=content_type)

    return app


app = create_app()
