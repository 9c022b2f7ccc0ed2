from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Callable, Optional

from petconsult.logging import get_logger
from petconsult.storage.models import RefreshToken

logger = get_logger(__name__)


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class RefreshTokenLedger:
    """Server-side record of issued refresh tokens.

    A refresh token is only honoured while its ledger row is active (not
    revoked, not expired). Rows are keyed by the SHA-256 digest of the token
    so a leaked table does not leak usable tokens.
    """

    def __init__(self, store, *, clock: Optional[Callable[[], datetime]] = None) -> None:
        self.store = store
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def store_token(self, token: str, user_id: str, expires_at: datetime) -> RefreshToken:
        return self.store.create_refresh_token(hash_token(token), user_id, expires_at)

    def find_active(self, token: str) -> Optional[RefreshToken]:
        record = self.store.get_refresh_token(hash_token(token))
        if record is None or not record.is_active(self._clock()):
            return None
        return record

    def revoke(self, token: str, *, user_id: Optional[str] = None) -> bool:
        """Revoke one token; revoking an unknown or revoked token is a no-op."""
        return self.store.revoke_refresh_token(
            hash_token(token), user_id=user_id, now=self._clock()
        )

    def revoke_all_for_user(self, user_id: str) -> int:
        revoked = self.store.revoke_user_refresh_tokens(user_id, now=self._clock())
        logger.info("refresh_tokens_revoked_all", user_id=user_id, revoked=revoked)
        return revoked

    def rotate(
        self, old_token: str, new_token: str, user_id: str, expires_at: datetime
    ) -> bool:
        """Swap ``old_token`` for ``new_token`` in one atomic step.

        Returns False when the old token was no longer active, which is what a
        losing concurrent rotation (or a replay) sees.
        """
        rotated = self.store.rotate_refresh_token(
            hash_token(old_token),
            hash_token(new_token),
            user_id,
            expires_at,
            now=self._clock(),
        )
        return rotated is not None

    def purge_expired(self, retention: timedelta) -> int:
        cutoff = self._clock() - retention
        purged = self.store.purge_refresh_tokens(cutoff)
        if purged:
            logger.info("refresh_tokens_purged", purged=purged, cutoff=cutoff.isoformat())
        return purged
