from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Any, Dict, List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from llmhub.api.error_handling import register_exception_handlers
from llmhub.api.routes import router
from llmhub.config import Settings
from llmhub.logging import get_logger, set_correlation_id

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup and release the store on shutdown."""
    from llmhub.service.runtime import get_runtime

    runtime = get_runtime()
    logger.info("app_started", version=__version__)

    yield

    try:
        runtime.close()
        logger.info("runtime_cleanup_complete")
    except Exception as exc:
        logger.error("shutdown_failed", error=str(exc))


app = FastAPI(title="llmhub", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Local dev front-ends; no wildcard since credentials are allowed
    return [
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=True,
    allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "API-Version"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag each request with a correlation ID.

    Taken from the X-Request-ID header when the client sends one, otherwise
    generated. It is bound to every log line for the request and echoed back
    in the X-Request-ID response header.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


@app.middleware("http")
async def add_security_headers(request, call_next):
    response = await call_next(request)
    response.headers.setdefault("X-Frame-Options", "DENY")
    response.headers.setdefault("X-Content-Type-Options", "nosniff")
    response.headers.setdefault("Referrer-Policy", "strict-origin-when-cross-origin")
    response.headers.setdefault("API-Version", __version__)
    if request.url.path.startswith("/v1/") or request.url.path == "/healthz":
        response.headers.setdefault("Cache-Control", "no-store, no-cache, must-revalidate, private")
    if request.url.scheme == "https" and _settings.enable_hsts:
        response.headers.setdefault(
            "Strict-Transport-Security", "max-age=63072000; includeSubDomains"
        )
    return response


register_exception_handlers(app)
app.include_router(router)


HEALTH_CHECK_TIMEOUT_SECONDS = 3


@app.get("/healthz")
async def health() -> JSONResponse:
    """Report store connectivity and version."""
    from llmhub.service.runtime import get_runtime

    runtime = get_runtime()
    store_type = "memory" if runtime.settings.use_memory_store else "postgres"
    checks: Dict[str, Dict[str, Any]] = {}
    try:
        await asyncio.wait_for(
            asyncio.to_thread(runtime.store.verify_connection), HEALTH_CHECK_TIMEOUT_SECONDS
        )
        checks["database"] = {"status": "healthy", "type": store_type}
    except asyncio.TimeoutError:
        logger.error("health_check_timeout", component="database", timeout=HEALTH_CHECK_TIMEOUT_SECONDS)
        checks["database"] = {"status": "unhealthy", "type": store_type}
    except Exception as exc:
        logger.error("health_check_database_failed", error=str(exc))
        checks["database"] = {"status": "unhealthy", "type": store_type}

    checks["email"] = {"status": "configured" if runtime.email.is_configured else "dev_mode"}
    healthy = checks["database"]["status"] == "healthy"
    return JSONResponse(
        status_code=200 if healthy else 503,
        content={
            "status": "healthy" if healthy else "unhealthy",
            "checks": checks,
            "version": __version__,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        },
    )


def create_app() -> FastAPI:
    return app
