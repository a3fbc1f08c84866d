from __future__ import annotations

import secrets
import threading
from typing import Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHashError, VerificationError, VerifyMismatchError

from sessionauth.config import Settings
from sessionauth.logging import get_logger
from sessionauth.service.errors import CorruptCredentialError

logger = get_logger(__name__)


class CredentialVerifier:
    """argon2id password hashing.

    Both operations are CPU-bound and deliberately slow; async callers must run
    them on a worker thread. The final digest comparison happens inside the
    argon2 reference implementation, which compares in constant time.
    """

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 64 * 1024,
        parallelism: int = 4,
        hash_len: int = 32,
        salt_len: int = 16,
    ) -> None:
        self._pwd_hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            hash_len=hash_len,
            salt_len=salt_len,
            type=Type.ID,
        )
        self._decoy_hash: Optional[str] = None
        self._decoy_lock = threading.Lock()

    @classmethod
    def from_settings(cls, settings: Settings) -> "CredentialVerifier":
        return cls(
            time_cost=settings.argon2_time_cost,
            memory_cost=settings.argon2_memory_cost_kib,
            parallelism=settings.argon2_parallelism,
        )

    def hash(self, plaintext: str) -> str:
        """Hash with a fresh random salt embedded in the PHC-encoded output."""
        return self._pwd_hasher.hash(plaintext)

    def verify(self, hash_string: str, plaintext: str) -> bool:
        """Return whether ``plaintext`` matches; a mismatch is not an error.

        Raises:
            CorruptCredentialError: the stored encoding cannot be decoded
        """
        try:
            return self._pwd_hasher.verify(hash_string, plaintext)
        except VerifyMismatchError:
            return False
        except (InvalidHashError, VerificationError, UnicodeError) as exc:
            logger.error("credential_corrupt", error_type=type(exc).__name__)
            raise CorruptCredentialError("stored password hash is corrupt") from exc

    def needs_rehash(self, hash_string: str) -> bool:
        """True when the hash was produced with different cost parameters."""
        try:
            return self._pwd_hasher.check_needs_rehash(hash_string)
        except (InvalidHashError, UnicodeError) as exc:
            raise CorruptCredentialError("stored password hash is corrupt") from exc

    def dummy_verify(self, plaintext: str) -> bool:
        """Spend the cost of one verification against a decoy hash.

        Used when no account matches so the unknown-user path performs the
        same work as a wrong password. Always returns False.
        """
        with self._decoy_lock:
            if self._decoy_hash is None:
                self._decoy_hash = self.hash(secrets.token_urlsafe(32))
            decoy = self._decoy_hash
        self.verify(decoy, plaintext)
        return False
