from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _from_epoch(value: float) -> datetime:
    return datetime.fromtimestamp(value, tz=timezone.utc)


def normalize_email(email: str) -> str:
    return email.strip().lower()


@dataclass
class User:
    id: str
    email: str
    name: str
    password_hash: str
    created_at: datetime = field(default_factory=_utcnow)

    def public(self) -> "PublicUser":
        return PublicUser(id=self.id, email=self.email, name=self.name)


@dataclass(frozen=True)
class PublicUser:
    """Fields of a user that may leave the service boundary."""

    id: str
    email: str
    name: str

    def to_dict(self) -> Dict[str, str]:
        return {"id": self.id, "email": self.email, "name": self.name}


@dataclass
class Session:
    user_id: str
    created_at: datetime
    expires_at: datetime

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    def to_record(self) -> str:
        """Serialize for the key-value backend; timestamps as epoch seconds."""
        payload: Dict[str, Any] = {
            "user_id": self.user_id,
            "created_at": round(self.created_at.timestamp(), 6),
            "expires_at": round(self.expires_at.timestamp(), 6),
        }
        return json.dumps(payload, separators=(",", ":"), sort_keys=True)

    @classmethod
    def from_record(cls, raw: str) -> "Session":
        """Parse a backend record; raises ValueError on malformed input."""
        try:
            data = json.loads(raw)
            user_id = data["user_id"]
            created_at = float(data["created_at"])
            expires_at = float(data["expires_at"])
        except (TypeError, KeyError, json.JSONDecodeError) as exc:
            raise ValueError(f"malformed session record: {exc}") from exc
        if not isinstance(user_id, str) or not user_id:
            raise ValueError("malformed session record: user_id")
        try:
            return cls(
                user_id=user_id,
                created_at=_from_epoch(created_at),
                expires_at=_from_epoch(expires_at),
            )
        except (OverflowError, OSError, ValueError) as exc:
            raise ValueError(f"malformed session record: timestamp {exc}") from exc


@dataclass(frozen=True)
class IssuedSession:
    token: str
    expires_at: datetime


@dataclass(frozen=True)
class SignupResult:
    user: PublicUser
    session: IssuedSession
