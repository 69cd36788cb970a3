from __future__ import annotations

import hashlib
from typing import Iterable, Optional

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from idcore.config import Settings


class SecretHasher:
    """Slow salted hashing for passwords, OTP codes and recovery codes."""

    algorithm = "argon2id"

    def __init__(
        self,
        *,
        time_cost: int = 3,
        memory_cost: int = 65536,
        parallelism: int = 4,
    ) -> None:
        self._hasher = PasswordHasher(
            time_cost=time_cost,
            memory_cost=memory_cost,
            parallelism=parallelism,
            type=Type.ID,
        )

    @classmethod
    def from_settings(cls, settings: Settings) -> "SecretHasher":
        return cls(
            time_cost=settings.hash_time_cost,
            memory_cost=settings.hash_memory_cost,
            parallelism=settings.hash_parallelism,
        )

    def hash(self, secret: str) -> str:
        return self._hasher.hash(secret)

    def verify(self, hashed: str, secret: str) -> bool:
        try:
            return self._hasher.verify(hashed, secret)
        except (InvalidHash, VerificationError):
            return False

    def find_match(self, hashes: Iterable[str], secret: str) -> Optional[str]:
        """Return the first stored hash that ``secret`` matches, if any."""
        for hashed in hashes:
            if self.verify(hashed, secret):
                return hashed
        return None


def token_digest(token: str) -> str:
    """One-way digest for high-entropy bearer tokens stored server side."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()
