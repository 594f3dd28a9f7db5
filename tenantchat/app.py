from __future__ import annotations

from contextlib import asynccontextmanager
from typing import List

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from tenantchat.api.error_handling import register_exception_handlers
from tenantchat.api.routes import router
from tenantchat.config import Settings
from tenantchat.logging import get_logger, set_correlation_id
from tenantchat.service.runtime import get_runtime

logger = get_logger(__name__)

_settings = Settings.from_env()

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Build the runtime on startup so the first request does not pay for it."""
    runtime = get_runtime()
    logger.info(
        "app_started",
        version=__version__,
        tenants=len(runtime.store.list_tenants()),
        test_mode=runtime.settings.test_mode,
    )
    yield
    logger.info("app_stopped")


app = FastAPI(title="Tenant Chat", version=__version__, lifespan=lifespan)


def _allowed_origins() -> List[str]:
    if _settings.cors_allow_origins:
        return _settings.cors_allow_origins
    # Default to common local dev hosts
    return [
        "http://localhost",
        "http://localhost:3000",
        "http://localhost:5173",
        "http://127.0.0.1:3000",
        "http://127.0.0.1:5173",
    ]


app.add_middleware(
    CORSMiddleware,
    allow_origins=_allowed_origins(),
    allow_credentials=False,
    allow_methods=["GET", "POST", "PATCH", "DELETE", "OPTIONS"],
    allow_headers=["Content-Type", "Authorization", "X-Request-ID"],
    expose_headers=["X-Request-ID", "X-Chat-Request-ID"],
    max_age=3600,
)


@app.middleware("http")
async def add_correlation_id(request, call_next):
    """Tag every request with a correlation id for structured logs.

    Taken from the ``X-Request-ID`` header when the client sends one, generated
    otherwise, and echoed back on the response.
    """
    client_request_id = request.headers.get("X-Request-ID")
    correlation_id = set_correlation_id(client_request_id)
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


register_exception_handlers(app)
app.include_router(router)


@app.get("/healthz")
def healthz():
    runtime = get_runtime()
    return {
        "status": "healthy",
        "version": __version__,
        "tenants": len(runtime.store.list_tenants()),
        "test_mode": runtime.settings.test_mode,
    }
