from __future__ import annotations

import asyncio
import functools
import re
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Any, Awaitable, Callable, Optional, Protocol, Set, TypeVar

from sessionauth.config import Settings
from sessionauth.logging import get_logger
from sessionauth.service.credentials import CredentialVerifier
from sessionauth.service.errors import (
    ConflictError,
    ForbiddenError,
    InvalidCredentials,
    NoSession,
    ServiceError,
    StoreUnavailable,
    ValidationError,
)
from sessionauth.service.sessions import SessionStore
from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.models import (
    IssuedSession,
    PublicUser,
    Session,
    SignupResult,
    User,
    normalize_email,
)

logger = get_logger(__name__)

T = TypeVar("T")

_EMAIL_PATTERN = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_MAX_EMAIL_LENGTH = 254
_MAX_NAME_LENGTH = 200


class UserRepository(Protocol):
    def find_by_email(self, email: str) -> Optional[User]: ...

    def find_by_id(self, user_id: str) -> Optional[User]: ...

    def create(self, email: str, name: str, password_hash: str) -> User: ...

    def update_password_hash(self, user_id: str, password_hash: str) -> None: ...


class SessionService:
    """Login, session resolution and logout over injected collaborators.

    The SessionStore record is the only authority on who is logged in; nothing
    about sessions is cached in process. Password hashing runs on a dedicated
    thread pool so a slow hash never blocks the event loop.
    """

    def __init__(
        self,
        verifier: CredentialVerifier,
        store: SessionStore,
        users: UserRepository,
        settings: Settings,
        *,
        executor: Optional[Executor] = None,
    ) -> None:
        self.verifier = verifier
        self.store = store
        self.users = users
        self.settings = settings
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=settings.hash_workers, thread_name_prefix="sessionauth-hash"
        )
        # Strong references to background orphan cleanups
        self._pending: Set[asyncio.Future] = set()
        self.logger = logger

    async def _run_hashing(self, fn: Callable[..., T], *args: Any) -> T:
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self._executor, functools.partial(fn, *args))

    async def _with_store_retry(self, op: str, call: Callable[[], Awaitable[T]]) -> T:
        """Run an idempotent store call, retrying StoreUnavailable with backoff."""
        attempts = self.settings.store_retry_attempts
        delay = self.settings.store_retry_backoff_seconds
        for attempt in range(1, attempts + 1):
            try:
                return await call()
            except StoreUnavailable:
                if attempt >= attempts:
                    self.logger.error("store_unavailable_giving_up", op=op, attempts=attempt)
                    raise
                self.logger.warning(
                    "store_unavailable_retry", op=op, attempt=attempt, backoff_seconds=delay
                )
                await asyncio.sleep(delay)
                delay *= 2
        raise AssertionError("unreachable")

    # validation

    def _validate_email(self, email: Any) -> str:
        if not isinstance(email, str):
            raise ValidationError("invalid email", detail={"field": "email"})
        normalized = normalize_email(email)
        if len(normalized) > _MAX_EMAIL_LENGTH or not _EMAIL_PATTERN.match(normalized):
            raise ValidationError("invalid email", detail={"field": "email"})
        return normalized

    def _validate_name(self, name: Any) -> str:
        cleaned = name.strip() if isinstance(name, str) else ""
        if not cleaned or len(cleaned) > _MAX_NAME_LENGTH:
            raise ValidationError("invalid name", detail={"field": "name"})
        return cleaned

    def _validate_password(self, password: Any) -> str:
        if not isinstance(password, str):
            raise ValidationError("invalid password", detail={"field": "password"})
        if len(password) < self.settings.min_password_length:
            raise ValidationError(
                "password too short",
                detail={"field": "password", "min_length": self.settings.min_password_length},
            )
        if len(password) > self.settings.max_password_length:
            raise ValidationError(
                "password too long",
                detail={"field": "password", "max_length": self.settings.max_password_length},
            )
        return password

    # issuance

    async def _issue(self, user_id: str) -> IssuedSession:
        """Create a session; a cancelled caller never leaves it behind."""
        create = asyncio.ensure_future(
            self.store.create(user_id, self.settings.session_ttl_seconds)
        )
        try:
            return await asyncio.shield(create)
        except asyncio.CancelledError:
            create.add_done_callback(self._discard_orphan)
            raise

    def _discard_orphan(self, task: asyncio.Future) -> None:
        if task.cancelled() or task.exception() is not None:
            return
        issued: IssuedSession = task.result()
        self.logger.info("orphan_session_discarding", expires_at=issued.expires_at.isoformat())
        cleanup = asyncio.ensure_future(self._destroy_orphan(issued.token))
        self._pending.add(cleanup)
        cleanup.add_done_callback(self._pending.discard)

    async def _destroy_orphan(self, token: str) -> None:
        try:
            await self._with_store_retry("destroy", lambda: self.store.destroy(token))
        except ServiceError as exc:
            # The backend TTL still expires the record.
            self.logger.error("orphan_session_cleanup_failed", error=exc.message)

    async def _maybe_rehash(self, user: User, password: str) -> None:
        try:
            if not self.verifier.needs_rehash(user.password_hash):
                return
            new_hash = await self._run_hashing(self.verifier.hash, password)
            self.users.update_password_hash(user.id, new_hash)
            self.logger.info("password_rehashed", user_id=user.id)
        except (ServiceError, ConstraintViolation) as exc:
            self.logger.warning(
                "password_rehash_failed", user_id=user.id, error_type=type(exc).__name__
            )

    # public operations

    async def signup(self, email: str, name: str, password: str) -> SignupResult:
        """Register a user and open a session for them.

        Raises:
            ForbiddenError: signups are disabled
            ValidationError: malformed email, name or password
            ConflictError: the email is already registered
        """
        if not self.settings.allow_signup:
            raise ForbiddenError("signup disabled")
        normalized = self._validate_email(email)
        display_name = self._validate_name(name)
        self._validate_password(password)
        password_hash = await self._run_hashing(self.verifier.hash, password)
        try:
            user = self.users.create(normalized, display_name, password_hash)
        except ConstraintViolation as exc:
            self.logger.info("signup_conflict")
            raise ConflictError("email already registered", detail=exc.detail) from exc
        self.logger.info("user_signed_up", user_id=user.id)
        session = await self._issue(user.id)
        return SignupResult(user=user.public(), session=session)

    async def login(self, email: str, password: str) -> IssuedSession:
        """Verify credentials and issue a session.

        Unknown emails and wrong passwords raise the same InvalidCredentials and
        cost one argon2 verification each.
        """
        password = password if isinstance(password, str) else ""
        # Oversized input is rejected after a bounded amount of hashing work
        oversized = len(password) > self.settings.max_password_length
        password = password[: self.settings.max_password_length]
        user = (
            self.users.find_by_email(normalize_email(email))
            if isinstance(email, str)
            else None
        )
        if user is None or oversized:
            await self._run_hashing(self.verifier.dummy_verify, password)
            self.logger.info("login_failed")
            raise InvalidCredentials()
        verified = await self._run_hashing(self.verifier.verify, user.password_hash, password)
        if not verified:
            self.logger.info("login_failed", user_id=user.id)
            raise InvalidCredentials()
        await self._maybe_rehash(user, password)
        issued = await self._issue(user.id)
        self.logger.info("login_succeeded", user_id=user.id)
        return issued

    def _sliding_ttl(self, session: Session) -> float:
        ttl: float = self.settings.session_ttl_seconds
        max_lifetime = self.settings.session_max_lifetime_seconds
        if max_lifetime:
            remaining = session.created_at.timestamp() + max_lifetime - self.store.now()
            ttl = min(ttl, remaining)
        return ttl

    async def _resolve(self, token: Optional[str]) -> Session:
        if not token:
            raise NoSession()
        session = await self._with_store_retry("get", lambda: self.store.get(token))
        if session is None:
            raise NoSession()
        if not self.settings.sliding_expiration:
            return session
        ttl = self._sliding_ttl(session)
        if ttl <= 0:
            await self._with_store_retry("destroy", lambda: self.store.destroy(token))
            self.logger.info("session_lifetime_exceeded", user_id=session.user_id)
            raise NoSession()
        touched = await self._with_store_retry("touch", lambda: self.store.touch(token, ttl))
        if not touched:
            raise NoSession()
        return session

    async def authenticate(self, token: Optional[str]) -> str:
        """Resolve a token to its user id, refreshing it under sliding expiration."""
        session = await self._resolve(token)
        return session.user_id

    async def _current_user_record(self, token: Optional[str]) -> User:
        user_id = await self.authenticate(token)
        user = self.users.find_by_id(user_id)
        if user is None:
            # Account removed externally; its sessions are meaningless now
            await self._with_store_retry("destroy", lambda: self.store.destroy(token))
            self.logger.warning("session_user_missing", user_id=user_id)
            raise NoSession()
        return user

    async def current_user(self, token: Optional[str]) -> PublicUser:
        user = await self._current_user_record(token)
        return user.public()

    async def change_password(
        self, token: Optional[str], current_password: str, new_password: str
    ) -> None:
        user = await self._current_user_record(token)
        self._validate_password(new_password)
        verified = await self._run_hashing(
            self.verifier.verify, user.password_hash, current_password
        )
        if not verified:
            self.logger.info("password_change_rejected", user_id=user.id)
            raise InvalidCredentials()
        new_hash = await self._run_hashing(self.verifier.hash, new_password)
        self.users.update_password_hash(user.id, new_hash)
        self.logger.info("password_changed", user_id=user.id)

    async def logout(self, token: Optional[str]) -> None:
        """Destroy the session if there is one; succeeds either way."""
        if not token:
            return
        existed = await self._with_store_retry("destroy", lambda: self.store.destroy(token))
        self.logger.info("logout", session_existed=existed)

    async def close(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        if self._owns_executor:
            self._executor.shutdown(wait=False)
        await self.store.close()
