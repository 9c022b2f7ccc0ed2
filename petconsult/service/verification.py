from __future__ import annotations

import hmac
import secrets
from datetime import datetime, timezone
from typing import Callable, Optional

from petconsult.config import Settings
from petconsult.logging import get_logger
from petconsult.service.errors import NotFoundError, ServerError, ValidationError
from petconsult.service.sms import VERIFICATION_TEMPLATE, SmsDeliveryError, SmsNotifier
from petconsult.storage.models import VERIFICATION_PURPOSES, VerificationCode

logger = get_logger(__name__)


class VerificationCodeService:
    """Short-lived numeric codes delivered by SMS.

    One live code per (mobile, purpose): issuing replaces the previous code,
    a successful check consumes it, and too many wrong guesses burn it.
    """

    def __init__(
        self,
        store,
        notifier: SmsNotifier,
        settings: Settings,
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.store = store
        self.notifier = notifier
        self.settings = settings
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _generate_code(self) -> str:
        length = self.settings.verification_code_length
        return f"{secrets.randbelow(10 ** length):0{length}d}"

    async def issue_code(
        self, mobile: str, purpose: str, *, fail_closed: bool = True
    ) -> str:
        if purpose not in VERIFICATION_PURPOSES:
            raise ValueError(f"unknown verification purpose: {purpose}")
        code = self._generate_code()
        record = VerificationCode.new(
            mobile,
            purpose,
            code,
            self.settings.verification_code_ttl,
            now=self._clock(),
        )
        self.store.upsert_verification_code(record)
        message = VERIFICATION_TEMPLATE.format(
            code=code, minutes=self.settings.verification_code_ttl_minutes
        )
        try:
            await self.notifier.send(mobile, message)
        except SmsDeliveryError as exc:
            if fail_closed:
                # A code the user never received must not stay redeemable.
                self.store.delete_verification_code(mobile, purpose, code=code)
                logger.error(
                    "verification_code_dispatch_failed", mobile=mobile, purpose=purpose
                )
                raise ServerError("failed to send verification code") from exc
            logger.warning(
                "verification_code_dispatch_failed_ignored",
                mobile=mobile,
                purpose=purpose,
                error=str(exc),
            )
        logger.info("verification_code_issued", mobile=mobile, purpose=purpose)
        return code

    async def verify_code(self, mobile: str, purpose: str, code: str) -> bool:
        record = self.store.get_verification_code(mobile, purpose)
        if record is None:
            raise NotFoundError("verification code not found or expired")
        if record.is_expired(self._clock()):
            self.store.delete_verification_code(mobile, purpose, code=record.code)
            raise NotFoundError("verification code not found or expired")

        max_attempts = self.settings.verification_max_attempts
        if not hmac.compare_digest(record.code.encode(), str(code).encode()):
            attempts = self.store.increment_verification_attempts(mobile, purpose)
            if attempts >= max_attempts:
                self.store.delete_verification_code(mobile, purpose, code=record.code)
                logger.warning(
                    "verification_code_locked", mobile=mobile, purpose=purpose
                )
                raise ValidationError(
                    "too many incorrect attempts, request a new code",
                    detail={"remaining_attempts": 0},
                )
            raise ValidationError(
                "invalid verification code",
                detail={"remaining_attempts": max_attempts - attempts},
            )

        # Conditional delete: of two concurrent correct submissions only one wins.
        if not self.store.delete_verification_code(mobile, purpose, code=record.code):
            raise NotFoundError("verification code not found or expired")
        return True

    def purge_expired(self) -> int:
        return self.store.purge_verification_codes(self._clock())
