from __future__ import annotations

import os
import time
import uuid

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel

from aura_core.errors import AuraError, ValidationError, error_payload
from aura_core.logging import get_logger

logger = get_logger(__name__)


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    commit: str
    timestamp: str


def cors_origins(
    *,
    raw: str | None = None,
    env: str | None = None,
    default_allow_all: bool = False,
) -> list[str]:
    raw_value = raw if raw is not None else os.getenv("CORS_ALLOW_ORIGINS", "")
    if raw_value:
        return [origin.strip() for origin in raw_value.split(",") if origin.strip()]
    if default_allow_all:
        return ["*"]
    env_value = (env or os.getenv("ENV", "dev")).lower()
    if env_value in {"dev", "local", "test"}:
        return ["*"]
    return []


def apply_cors_middleware(
    app: FastAPI,
    *,
    raw_origins: str | None = None,
    env: str | None = None,
) -> list[str]:
    origins = cors_origins(raw=raw_origins, env=env)
    if origins:
        app.add_middleware(
            CORSMiddleware,
            allow_origins=origins,
            allow_credentials=False,
            allow_methods=["*"],
            allow_headers=["*"],
        )
    return origins


def correlation_id(header_value: str | None) -> str:
    if header_value:
        return header_value
    return str(uuid.uuid4())


def add_correlation_id_middleware(app: FastAPI) -> None:
    @app.middleware("http")
    async def _add_correlation_id(request: Request, call_next):
        corr = correlation_id(request.headers.get("x-correlation-id"))
        request.state.correlation_id = corr
        response = await call_next(request)
        response.headers["x-correlation-id"] = corr
        return response


def add_error_handlers(app: FastAPI) -> None:
    """Render domain errors as ``{"error": {"code", "message"}}``."""

    @app.exception_handler(AuraError)
    async def _aura_error(request: Request, exc: AuraError) -> JSONResponse:
        log = logger.error if exc.http_status >= 500 else logger.info
        log(
            "Request failed",
            extra={
                "correlation_id": getattr(request.state, "correlation_id", None),
                "error_code": exc.code,
                "error_message": str(exc),
            },
        )
        return JSONResponse(status_code=exc.http_status, content=error_payload(exc))

    @app.exception_handler(RequestValidationError)
    async def _invalid_request(
        request: Request,
        exc: RequestValidationError,
    ) -> JSONResponse:
        messages = []
        for error in exc.errors():
            location = ".".join(str(part) for part in error.get("loc", ()) if part != "body")
            messages.append(f"{location}: {error.get('msg')}" if location else str(error.get("msg")))
        err = ValidationError("; ".join(messages) or "invalid request")
        return JSONResponse(status_code=err.http_status, content=error_payload(err))


def build_health_response(
    service_name: str,
    *,
    status: str = "ok",
    version: str | None = None,
    commit: str | None = None,
) -> HealthResponse:
    return HealthResponse(
        status=status,
        service=service_name,
        version=version or os.getenv("AURA_VERSION", "dev"),
        commit=commit or os.getenv("GIT_COMMIT", "unknown"),
        timestamp=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
    )
