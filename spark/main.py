"""
SPARK — FastAPI Application Entry Point

- Async lifespan management (document store warm-up and disposal)
- CORS and structured-logging middleware
- Health-check endpoints (liveness + deep readiness)
- ``SparkError`` rendering as ``{"error": code, "detail": message}``
"""

from __future__ import annotations

import time
from contextlib import asynccontextmanager
from typing import AsyncIterator

import structlog
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

from spark.api.deps import close_resources, get_store
from spark.config import get_settings
from spark.errors import SparkError
from spark.store.base import USERS
from spark.utils.logging import configure_logging

configure_logging(get_settings().LOG_LEVEL)

logger: structlog.stdlib.BoundLogger = structlog.get_logger("spark")


# ---------------------------------------------------------------------------
# Lifespan
# ---------------------------------------------------------------------------

@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Manage startup and shutdown of long-lived resources."""
    settings = get_settings()

    logger.info(
        "startup_begin",
        environment=settings.ENVIRONMENT,
        store_backend=settings.STORE_BACKEND,
    )
    get_store()
    logger.info("startup_complete")

    yield

    logger.info("shutdown_begin")
    await close_resources()
    logger.info("shutdown_complete")


# ---------------------------------------------------------------------------
# Middleware
# ---------------------------------------------------------------------------

class StructuredLoggingMiddleware(BaseHTTPMiddleware):
    """Log every request with method, path, status code, and duration."""

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint,
    ) -> Response:
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            duration_ms = (time.perf_counter() - start) * 1000
            logger.exception(
                "request_error",
                method=request.method,
                path=request.url.path,
                duration_ms=round(duration_ms, 2),
            )
            raise

        duration_ms = (time.perf_counter() - start) * 1000
        logger.info(
            "request_handled",
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            duration_ms=round(duration_ms, 2),
        )
        return response


# ---------------------------------------------------------------------------
# Application factory
# ---------------------------------------------------------------------------

settings = get_settings()

app = FastAPI(
    title="SPARK",
    description="Weekly matching and 7-day connection rooms",
    version="1.0.0",
    lifespan=lifespan,
    docs_url="/docs" if not settings.is_production else None,
    redoc_url="/redoc" if not settings.is_production else None,
)

app.add_middleware(StructuredLoggingMiddleware)
app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins_list,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(SparkError)
async def spark_error_handler(request: Request, exc: SparkError) -> JSONResponse:
    log = logger.warning if exc.http_status < 500 else logger.error
    log(
        "request_failed",
        path=request.url.path,
        error=exc.code,
        detail=exc.message,
    )
    return JSONResponse(status_code=exc.http_status, content=exc.to_dict())


# -- Health-check endpoints ------------------------------------------------ #


@app.get("/health", tags=["health"])
async def health_liveness() -> dict:
    """Liveness probe."""
    return {"status": "healthy"}


@app.get("/health/deep", tags=["health"])
async def health_deep() -> dict:
    """Readiness probe — verifies the document store answers."""
    result: dict = {"status": "healthy", "store": "connected"}
    try:
        await get_store().get(USERS, "__health__")
    except Exception as exc:
        logger.error("health_store_failure", error=str(exc))
        result["store"] = f"error: {exc}"
        result["status"] = "degraded"
    return result


# -- API router ------------------------------------------------------------ #

from spark.api.router import router as api_router  # noqa: E402

app.include_router(api_router, prefix="/api/v1")
