from __future__ import annotations

import time
from typing import Callable, Optional
from urllib.parse import urlparse, urlunparse

from sessionauth.config import Settings, get_settings
from sessionauth.logging import get_logger
from sessionauth.service.auth import SessionService, UserRepository
from sessionauth.service.credentials import CredentialVerifier
from sessionauth.service.sessions import SessionStore
from sessionauth.storage.kv import KeyValueBackend, MemoryBackend
from sessionauth.storage.memory import MemoryUserRepository
from sessionauth.storage.redis_kv import RedisBackend

logger = get_logger(__name__)


def _mask_url_password(url: Optional[str]) -> Optional[str]:
    """Mask the password component of a URL so it can be logged.

    Example: redis://:mypassword@localhost:6379 -> redis://:***@localhost:6379
    """
    if not url:
        return url
    try:
        parsed = urlparse(url)
        if parsed.password:
            netloc = parsed.hostname or ""
            if parsed.port:
                netloc = f"{netloc}:{parsed.port}"
            if parsed.username:
                netloc = f"{parsed.username}:***@{netloc}"
            else:
                netloc = f":***@{netloc}"
            return urlunparse((
                parsed.scheme,
                netloc,
                parsed.path,
                parsed.params,
                parsed.query,
                parsed.fragment,
            ))
        return url
    except ValueError:
        return "***url_parse_error***"


def build_backend(
    settings: Settings, *, clock: Callable[[], float] = time.time
) -> KeyValueBackend:
    if settings.use_memory_backend:
        logger.warning(
            "memory_backend_enabled",
            message="Sessions live in process memory; they are lost on restart and not shared between workers.",
        )
        return MemoryBackend(clock=clock)
    logger.info("redis_backend_configured", redis_url=_mask_url_password(settings.redis_url))
    return RedisBackend(
        settings.redis_url, socket_timeout=settings.store_operation_timeout_seconds
    )


def build_service(
    settings: Optional[Settings] = None,
    *,
    users: Optional[UserRepository] = None,
    backend: Optional[KeyValueBackend] = None,
    verifier: Optional[CredentialVerifier] = None,
    clock: Callable[[], float] = time.time,
) -> SessionService:
    """Assemble a SessionService from settings; collaborators may be injected."""
    if settings is None:
        settings = get_settings()
    if backend is None:
        backend = build_backend(settings, clock=clock)
    store = SessionStore.from_settings(backend, settings, clock=clock)
    if verifier is None:
        verifier = CredentialVerifier.from_settings(settings)
    if users is None:
        logger.warning("memory_user_repository_enabled")
        users = MemoryUserRepository()
    logger.info(
        "session_service_initialized",
        backend=type(backend).__name__,
        sliding_expiration=settings.sliding_expiration,
        session_ttl_seconds=settings.session_ttl_seconds,
    )
    return SessionService(verifier, store, users, settings)
