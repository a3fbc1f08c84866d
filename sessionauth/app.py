from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from sessionauth.api.error_handling import register_exception_handlers
from sessionauth.api.routes import router
from sessionauth.config import Settings, get_settings
from sessionauth.logging import get_logger, set_correlation_id
from sessionauth.service.auth import SessionService
from sessionauth.service.errors import StoreUnavailable
from sessionauth.service.runtime import build_service

logger = get_logger(__name__)

__version__ = "0.1.0"


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Check the session backend on startup and release resources on shutdown."""
    service: SessionService = app.state.session_service
    try:
        await service.store.ping()
        logger.info("session_store_reachable")
    except StoreUnavailable:
        # Requests will surface 503 until the backend recovers
        logger.warning("session_store_unreachable_at_startup")

    yield

    await service.close()
    logger.info("session_service_closed")


async def add_correlation_id(request: Request, call_next):
    """Tag every log line of a request with its X-Request-ID."""
    correlation_id = set_correlation_id(request.headers.get("X-Request-ID"))
    response = await call_next(request)
    response.headers["X-Request-ID"] = correlation_id
    return response


def create_app(
    settings: Optional[Settings] = None, service: Optional[SessionService] = None
) -> FastAPI:
    """Build the HTTP adapter around an explicitly constructed SessionService."""
    settings = settings or get_settings()
    app = FastAPI(title="sessionauth", version=__version__, lifespan=lifespan)
    app.state.settings = settings
    if service is None:
        service = build_service(settings)
    app.state.session_service = service
    register_exception_handlers(app)
    app.middleware("http")(add_correlation_id)
    app.include_router(router)
    return app
