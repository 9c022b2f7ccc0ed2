from __future__ import annotations

import asyncio

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError, VerifyMismatchError

from petconsult.config import Settings
from petconsult.logging import get_logger

logger = get_logger(__name__)


class PasswordService:
    """argon2id hashing off the event loop."""

    def __init__(self, settings: Settings) -> None:
        self._hasher = PasswordHasher(
            type=Type.ID, memory_cost=settings.password_memory_cost_kib
        )
        # Verified against when the account does not exist so both paths cost the same.
        self._dummy_hash = self._hasher.hash("petconsult-timing-equalizer")

    async def hash(self, password: str) -> str:
        return await asyncio.to_thread(self._hasher.hash, password)

    async def verify(self, password_hash: str | None, password: str) -> bool:
        target = password_hash or self._dummy_hash
        matched = await asyncio.to_thread(self._verify_sync, target, password)
        return matched and password_hash is not None

    def _verify_sync(self, password_hash: str, password: str) -> bool:
        try:
            return self._hasher.verify(password_hash, password)
        except VerifyMismatchError:
            return False
        except (InvalidHash, VerificationError):
            logger.warning("password_hash_unverifiable")
            return False
