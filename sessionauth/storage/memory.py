from __future__ import annotations

import threading
import uuid
from typing import Dict, Optional

from sessionauth.storage.errors import ConstraintViolation
from sessionauth.storage.models import User, normalize_email


class MemoryUserRepository:
    """In-memory user store enforcing case-insensitive email uniqueness."""

    def __init__(self) -> None:
        self.users: Dict[str, User] = {}
        self._by_email: Dict[str, str] = {}
        self._data_lock = threading.RLock()

    def create(self, email: str, name: str, password_hash: str) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if normalized in self._by_email:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=str(uuid.uuid4()),
                email=normalized,
                name=name,
                password_hash=password_hash,
            )
            self.users[user.id] = user
            self._by_email[normalized] = user.id
            return user

    def find_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._by_email.get(normalize_email(email))
            return self.users.get(user_id) if user_id else None

    def find_by_id(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def update_password_hash(self, user_id: str, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"user_id": user_id}
                )
            user.password_hash = password_hash

    def delete(self, user_id: str) -> bool:
        with self._data_lock:
            user = self.users.pop(user_id, None)
            if not user:
                return False
            self._by_email.pop(user.email, None)
            return True
