from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol, Tuple

from petconsult.config import Settings
from petconsult.logging import get_logger, log_security_event
from petconsult.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ServerError,
    ValidationError,
)
from petconsult.service.ledger import RefreshTokenLedger
from petconsult.service.passwords import PasswordService
from petconsult.service.tokens import (
    PRINCIPAL_USER,
    TOKEN_TYPE_REFRESH,
    TokenError,
    TokenIssuer,
    TokenPair,
)
from petconsult.service.verification import VerificationCodeService
from petconsult.storage.errors import ConstraintViolation
from petconsult.storage.models import (
    PURPOSE_PASSWORD_RESET,
    PURPOSE_REGISTRATION,
    NewPet,
    Pet,
    User,
)

logger = get_logger(__name__)

# One message for unknown mobile and wrong password so responses cannot be
# used to discover which numbers are registered.
INVALID_CREDENTIALS = "invalid mobile number or password"
INVALID_REFRESH_TOKEN = "invalid or expired refresh token"


class AuthStore(Protocol):
    def create_user(
        self,
        mobile: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        *,
        role: str = ...,
        is_verified: bool = ...,
        pet: Optional[NewPet] = ...,
    ) -> Tuple[User, Optional[Pet]]: ...

    def get_user(self, user_id: str) -> Optional[User]: ...

    def get_user_by_mobile(self, mobile: str) -> Optional[User]: ...

    def set_user_password(self, user_id: str, password_hash: str) -> Optional[User]: ...

    def update_user_profile(
        self, user_id: str, first_name: str, last_name: str
    ) -> Optional[User]: ...

    def mark_user_verified(self, user_id: str) -> Optional[User]: ...

    def touch_user_login(self, user_id: str, at) -> Optional[User]: ...

    def delete_user(self, user_id: str, *, include_pets: bool = ...) -> bool: ...


@dataclass
class AuthResult:
    user: User
    tokens: Optional[TokenPair] = None
    pet: Optional[Pet] = None
    verification_required: bool = False


class AuthService:
    """Registration, login, refresh rotation and password lifecycle for users."""

    def __init__(
        self,
        store: AuthStore,
        issuer: TokenIssuer,
        ledger: RefreshTokenLedger,
        verification: VerificationCodeService,
        passwords: PasswordService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.ledger = ledger
        self.verification = verification
        self.passwords = passwords
        self.settings = settings
        self.logger = logger

    def _start_session(self, user: User) -> TokenPair:
        pair = self.issuer.issue_token_pair(user.id, user.mobile, user.role)
        self.ledger.store_token(pair.refresh_token, user.id, pair.refresh_expires_at)
        return pair

    def _require_user(self, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user

    async def register(
        self,
        mobile: str,
        password: str,
        first_name: str,
        last_name: str,
        *,
        pet: Optional[NewPet] = None,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        if self.store.get_user_by_mobile(mobile):
            raise ConflictError(
                "an account with this mobile number already exists",
                detail={"field": "mobile"},
            )
        password_hash = await self.passwords.hash(password)
        requires_verification = self.settings.registration_requires_verification
        try:
            user, created_pet = self.store.create_user(
                mobile,
                password_hash,
                first_name,
                last_name,
                is_verified=not requires_verification,
                pet=pet,
            )
        except ConstraintViolation as exc:
            raise ConflictError(
                "an account with this mobile number already exists",
                detail=exc.detail,
            ) from exc
        self.logger.info(
            "user_registered",
            user_id=user.id,
            with_pet=created_pet is not None,
            verification_required=requires_verification,
            ip_addr=ip_addr,
            user_agent=user_agent,
        )

        if not requires_verification:
            return AuthResult(user=user, tokens=self._start_session(user), pet=created_pet)

        try:
            await self.verification.issue_code(
                mobile, PURPOSE_REGISTRATION, fail_closed=True
            )
        except ServerError:
            # The number cannot be verified without the code, so the account goes too.
            self.store.delete_user(user.id, include_pets=True)
            self.logger.error("registration_rolled_back", user_id=user.id)
            raise
        return AuthResult(user=user, pet=created_pet, verification_required=True)

    async def verify_registration(self, mobile: str, code: str) -> AuthResult:
        user = self.store.get_user_by_mobile(mobile)
        if not user:
            raise NotFoundError("no account is registered with this mobile number")
        await self.verification.verify_code(mobile, PURPOSE_REGISTRATION, code)
        if not user.is_active:
            raise AuthenticationError("account is deactivated")
        user = self.store.mark_user_verified(user.id) or user
        user = self.store.touch_user_login(user.id, self.issuer.now()) or user
        self.logger.info("user_verified", user_id=user.id)
        return AuthResult(user=user, tokens=self._start_session(user))

    async def resend_verification_code(self, mobile: str) -> None:
        user = self.store.get_user_by_mobile(mobile)
        if not user:
            raise NotFoundError("no account is registered with this mobile number")
        if user.is_verified:
            raise ConflictError("account is already verified")
        await self.verification.issue_code(mobile, PURPOSE_REGISTRATION, fail_closed=True)

    async def login(
        self,
        mobile: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuthResult:
        user = self.store.get_user_by_mobile(mobile)
        # Always run a hash check so unknown numbers take as long as known ones.
        valid = await self.passwords.verify(user.password_hash if user else None, password)
        if not user or not valid:
            log_security_event(
                "login_failed",
                self.logger,
                mobile=mobile,
                reason="unknown_mobile" if not user else "bad_password",
                ip_addr=ip_addr,
                user_agent=user_agent,
            )
            raise AuthenticationError(INVALID_CREDENTIALS)
        if not user.is_active:
            log_security_event(
                "login_blocked_inactive",
                self.logger,
                user_id=user.id,
                ip_addr=ip_addr,
                user_agent=user_agent,
            )
            raise AuthenticationError("account is deactivated")
        if self.settings.login_requires_verification and not user.is_verified:
            raise AuthenticationError("mobile number is not verified")
        user = self.store.touch_user_login(user.id, self.issuer.now()) or user
        self.logger.info("login_succeeded", user_id=user.id, ip_addr=ip_addr)
        return AuthResult(user=user, tokens=self._start_session(user))

    async def refresh(self, refresh_token: str) -> AuthResult:
        try:
            claims = self.issuer.verify(refresh_token, TOKEN_TYPE_REFRESH)
        except TokenError as exc:
            self.logger.info("refresh_rejected", reason=exc.reason)
            raise AuthenticationError(INVALID_REFRESH_TOKEN) from exc
        if claims.principal_type != PRINCIPAL_USER:
            raise AuthenticationError(INVALID_REFRESH_TOKEN)

        record = self.ledger.find_active(refresh_token)
        if record is None or record.user_id != claims.subject_id:
            log_security_event(
                "refresh_token_not_active", self.logger, user_id=claims.subject_id
            )
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        user = self.store.get_user(record.user_id)
        if not user or not user.is_active:
            raise AuthenticationError(INVALID_REFRESH_TOKEN)

        pair = self.issuer.issue_token_pair(user.id, user.mobile, user.role)
        if not self.ledger.rotate(
            refresh_token, pair.refresh_token, user.id, pair.refresh_expires_at
        ):
            # Lost to a concurrent refresh with the same token.
            log_security_event("refresh_token_reused", self.logger, user_id=user.id)
            raise AuthenticationError(INVALID_REFRESH_TOKEN)
        return AuthResult(user=user, tokens=pair)

    def logout(self, user_id: str, refresh_token: Optional[str]) -> bool:
        if not refresh_token:
            return False
        return self.ledger.revoke(refresh_token, user_id=user_id)

    def logout_all(self, user_id: str) -> int:
        return self.ledger.revoke_all_for_user(user_id)

    def me(self, user_id: str) -> User:
        return self._require_user(user_id)

    def update_profile(self, user_id: str, first_name: str, last_name: str) -> User:
        self._require_user(user_id)
        updated = self.store.update_user_profile(user_id, first_name, last_name)
        if updated is None:
            raise NotFoundError("user not found")
        self.logger.info("profile_updated", user_id=user_id)
        return updated

    async def change_password(
        self, user_id: str, current_password: str, new_password: str
    ) -> int:
        user = self._require_user(user_id)
        if not await self.passwords.verify(user.password_hash, current_password):
            raise ValidationError(
                "current password is incorrect", detail={"field": "currentPassword"}
            )
        if current_password == new_password:
            raise ValidationError(
                "new password must differ from the current password",
                detail={"field": "newPassword"},
            )
        self.store.set_user_password(user.id, await self.passwords.hash(new_password))
        revoked = self.logout_all(user.id)
        log_security_event("password_changed", self.logger, user_id=user.id, revoked=revoked)
        return revoked

    async def forgot_password(self, mobile: str) -> None:
        user = self.store.get_user_by_mobile(mobile)
        if not user:
            raise NotFoundError("no account is registered with this mobile number")
        await self.verification.issue_code(mobile, PURPOSE_PASSWORD_RESET, fail_closed=False)

    async def reset_password(self, mobile: str, code: str, new_password: str) -> int:
        user = self.store.get_user_by_mobile(mobile)
        if not user:
            raise NotFoundError("no account is registered with this mobile number")
        await self.verification.verify_code(mobile, PURPOSE_PASSWORD_RESET, code)
        self.store.set_user_password(user.id, await self.passwords.hash(new_password))
        revoked = self.logout_all(user.id)
        log_security_event("password_reset", self.logger, user_id=user.id, revoked=revoked)
        return revoked
