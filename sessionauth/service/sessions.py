from __future__ import annotations

import asyncio
import hashlib
import re
import secrets
import time
from datetime import datetime, timezone
from typing import Awaitable, Callable, Optional, TypeVar

from sessionauth.config import MIN_TOKEN_BYTES, Settings
from sessionauth.logging import get_logger, token_fingerprint
from sessionauth.service.errors import CollisionExhausted, StoreUnavailable, ValidationError
from sessionauth.storage.errors import BackendUnavailable
from sessionauth.storage.kv import KeyValueBackend
from sessionauth.storage.models import IssuedSession, Session

logger = get_logger(__name__)

T = TypeVar("T")

# token_urlsafe alphabet; anything else cannot have been issued here
_TOKEN_PATTERN = re.compile(r"^[A-Za-z0-9_-]+$")
_MAX_TOKEN_LENGTH = 512
_TOUCH_CAS_ATTEMPTS = 3


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


class SessionStore:
    """Session records in a key-value backend, keyed by a hash of the token.

    Records carry their own ``expires_at`` and are also written with a native
    backend TTL, so stale entries disappear even if nobody reads them again.
    Every backend call is bounded by ``operation_timeout``.
    """

    def __init__(
        self,
        backend: KeyValueBackend,
        *,
        clock: Callable[[], float] = time.time,
        operation_timeout: float = 2.0,
        token_bytes: int = 32,
        max_token_attempts: int = 5,
        key_prefix: str = "auth:session:",
        token_factory: Optional[Callable[[], str]] = None,
    ) -> None:
        if token_bytes < MIN_TOKEN_BYTES:
            raise ValueError(f"token_bytes must be at least {MIN_TOKEN_BYTES}")
        self.backend = backend
        self.operation_timeout = operation_timeout
        self.max_token_attempts = max_token_attempts
        self.key_prefix = key_prefix
        self._clock = clock
        self._token_factory = token_factory or (
            lambda: secrets.token_urlsafe(token_bytes)
        )

    @classmethod
    def from_settings(
        cls,
        backend: KeyValueBackend,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> "SessionStore":
        return cls(
            backend,
            clock=clock,
            operation_timeout=settings.store_operation_timeout_seconds,
            token_bytes=settings.session_token_bytes,
            max_token_attempts=settings.max_token_attempts,
            key_prefix=settings.session_key_prefix,
        )

    def now(self) -> float:
        return self._clock()

    def _key(self, token: str) -> str:
        return self.key_prefix + hashlib.sha256(token.encode()).hexdigest()

    @staticmethod
    def _well_formed(token: Optional[str]) -> bool:
        return (
            isinstance(token, str)
            and 0 < len(token) <= _MAX_TOKEN_LENGTH
            and _TOKEN_PATTERN.match(token) is not None
        )

    @staticmethod
    def _check_ttl(ttl: float) -> None:
        if ttl <= 0:
            raise ValidationError("session ttl must be positive", detail={"ttl": ttl})

    async def _call(self, op: str, awaitable: Awaitable[T]) -> T:
        try:
            return await asyncio.wait_for(awaitable, self.operation_timeout)
        except asyncio.TimeoutError as exc:
            logger.warning(
                "session_store_timeout", op=op, timeout_seconds=self.operation_timeout
            )
            raise StoreUnavailable("session store timed out", detail={"op": op}) from exc
        except BackendUnavailable as exc:
            logger.warning("session_store_unavailable", op=op, error=exc.message)
            raise StoreUnavailable("session store unavailable", detail={"op": op}) from exc

    async def create(self, user_id: str, ttl: float) -> IssuedSession:
        """Issue a new token bound to ``user_id`` for ``ttl`` seconds.

        Raises:
            CollisionExhausted: every generated token was already taken
            StoreUnavailable: the backend timed out or is unreachable
        """
        self._check_ttl(ttl)
        if not user_id:
            raise ValidationError("user_id is required")
        for attempt in range(1, self.max_token_attempts + 1):
            token = self._token_factory()
            now = self._clock()
            session = Session(
                user_id=user_id,
                created_at=_from_epoch(now),
                expires_at=_from_epoch(now + ttl),
            )
            key = self._key(token)
            record = session.to_record()
            try:
                written = await self._call(
                    "create", self.backend.set(key, record, ttl, only_if_absent=True)
                )
            except StoreUnavailable:
                # The write may have landed before the failure; roll it back.
                await self._discard(key, record)
                raise
            if written:
                logger.info(
                    "session_created",
                    user_id=user_id,
                    session_fp=token_fingerprint(token),
                    expires_at=session.expires_at.isoformat(),
                    attempt=attempt,
                )
                return IssuedSession(token=token, expires_at=session.expires_at)
            logger.warning("session_token_collision", attempt=attempt)
        logger.error("session_token_collisions_exhausted", attempts=self.max_token_attempts)
        raise CollisionExhausted(
            "could not generate a unique session token",
            detail={"attempts": self.max_token_attempts},
        )

    async def _discard(self, key: str, record: str) -> None:
        try:
            await self._call("discard", self.backend.compare_and_delete(key, record))
        except StoreUnavailable:
            # Native TTL still bounds the lifetime of a record we could not remove.
            logger.warning("session_discard_failed")

    async def _load(self, key: str, raw: str, token: str) -> Optional[Session]:
        try:
            session = Session.from_record(raw)
        except ValueError as exc:
            logger.error(
                "session_record_corrupt", session_fp=token_fingerprint(token), error=str(exc)
            )
            await self._call("delete", self.backend.compare_and_delete(key, raw))
            return None
        if session.is_expired(_from_epoch(self._clock())):
            # Lazy expiry: the backend TTL is only a backstop
            await self._call("delete", self.backend.compare_and_delete(key, raw))
            logger.info(
                "session_expired_on_read",
                user_id=session.user_id,
                session_fp=token_fingerprint(token),
            )
            return None
        return session

    async def get(self, token: str) -> Optional[Session]:
        """Return the live session for ``token`` or None if absent or expired."""
        if not self._well_formed(token):
            return None
        key = self._key(token)
        raw = await self._call("get", self.backend.get(key))
        if raw is None:
            return None
        return await self._load(key, raw, token)

    async def touch(self, token: str, new_ttl: float) -> bool:
        """Move ``expires_at`` to now + ``new_ttl``; False if absent or expired."""
        self._check_ttl(new_ttl)
        if not self._well_formed(token):
            return False
        key = self._key(token)
        for _ in range(_TOUCH_CAS_ATTEMPTS):
            raw = await self._call("touch", self.backend.get(key))
            if raw is None:
                return False
            session = await self._load(key, raw, token)
            if session is None:
                return False
            session.expires_at = _from_epoch(self._clock() + new_ttl)
            swapped = await self._call(
                "touch",
                self.backend.compare_and_set(key, raw, session.to_record(), new_ttl),
            )
            if swapped:
                logger.debug(
                    "session_touched",
                    session_fp=token_fingerprint(token),
                    expires_at=session.expires_at.isoformat(),
                )
                return True
        # Lost every race to concurrent writers; they refreshed it for us if it survives.
        logger.warning("session_touch_contended", session_fp=token_fingerprint(token))
        return await self.get(token) is not None

    async def destroy(self, token: str) -> bool:
        """Delete the session; False when there was nothing to delete."""
        if not self._well_formed(token):
            return False
        removed = await self._call("destroy", self.backend.delete(self._key(token)))
        logger.info(
            "session_destroyed", session_fp=token_fingerprint(token), existed=removed
        )
        return removed

    async def ping(self) -> bool:
        return await self._call("ping", self.backend.ping())

    async def close(self) -> None:
        await self.backend.close()
