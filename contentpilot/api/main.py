"""FastAPI application entrypoint for contentpilot."""

from __future__ import annotations

from time import perf_counter
from uuid import uuid4

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from contentpilot.auth.middleware import attach_caller
from contentpilot.billing.router import router as billing_router
from contentpilot.core.config import get_settings
from contentpilot.core.errors import ContentPilotError
from contentpilot.core.logger import bind_request_context, clear_request_context, get_logger
from contentpilot.core.metrics import record_http_request, render_prometheus_metrics
from contentpilot.core.observability import init_sentry, sentry_scope
from contentpilot.publishing.router import router as publishing_router
from contentpilot.storage.db import load_models
from contentpilot.storage.db import test_connection as test_db_connection
from contentpilot.storage.redis_client import check_lock_store
from contentpilot.usage.router import router as usage_router


settings = get_settings()
logger = get_logger("contentpilot.api")

app = FastAPI(title=settings.app_name, version=settings.app_version)


@app.middleware("http")
async def request_context_middleware(request: Request, call_next):
    started_at = perf_counter()
    request_id = request.headers.get("x-request-id", str(uuid4()))
    caller = attach_caller(request)

    user_id = caller.user_id if caller is not None else None
    bind_request_context(request_id=request_id, user_id=user_id)

    status_code = 500
    try:
        with sentry_scope(user_id=user_id, request_id=request_id):
            response = await call_next(request)
        status_code = int(response.status_code)
    finally:
        duration = perf_counter() - started_at
        if settings.metrics_enabled:
            record_http_request(
                method=request.method,
                path=request.url.path,
                status_code=status_code,
                duration_seconds=duration,
            )
        clear_request_context()

    response.headers["x-request-id"] = request_id
    return response


@app.exception_handler(ContentPilotError)
async def contentpilot_error_handler(request: Request, exc: ContentPilotError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("request_failed", code=exc.code, error=exc.message, path=request.url.path)
    else:
        logger.info("request_rejected", code=exc.code, error=exc.message, path=request.url.path)
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.message, "code": exc.code, "details": exc.details},
    )


@app.on_event("startup")
def on_startup() -> None:
    load_models()
    sentry_enabled = init_sentry()
    logger.info(
        "application_startup",
        env=settings.env,
        version=settings.app_version,
        sentry_enabled=sentry_enabled,
        metrics_enabled=settings.metrics_enabled,
    )


@app.get("/health")
def health() -> JSONResponse:
    db_ok, db_error = test_db_connection()
    redis_ok, redis_error = check_lock_store()

    healthy = db_ok and redis_ok
    status = "ok" if healthy else "degraded"

    payload = {
        "status": status,
        "env": settings.env,
        "services": {
            "database": {"ok": db_ok, "error": db_error},
            "redis": {"ok": redis_ok, "error": redis_error},
        },
    }

    return JSONResponse(content=payload, status_code=200 if healthy else 503)


@app.get("/version")
def version() -> dict[str, str]:
    return {
        "name": settings.app_name,
        "version": settings.app_version,
        "env": settings.env,
    }


@app.get("/metrics")
def metrics() -> PlainTextResponse:
    if not settings.metrics_enabled:
        return PlainTextResponse("metrics disabled\n", status_code=404)

    payload = render_prometheus_metrics(
        app_name=settings.app_name,
        app_version=settings.app_version,
        env=settings.env,
    )
    return PlainTextResponse(
        payload,
        media_type="text/plain; version=0.0.4; charset=utf-8",
    )


app.include_router(billing_router)
app.include_router(usage_router)
app.include_router(publishing_router)
