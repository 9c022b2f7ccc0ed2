from __future__ import annotations

from dataclasses import dataclass
from typing import List, Optional, Tuple

from petconsult.config import Settings
from petconsult.logging import get_logger, log_security_event
from petconsult.service.errors import (
    AuthenticationError,
    ConflictError,
    NotFoundError,
    ValidationError,
)
from petconsult.service.passwords import PasswordService
from petconsult.service.tokens import PRINCIPAL_ADMIN, AccessToken, TokenIssuer
from petconsult.storage.cursors import decode_time_id_cursor, encode_time_id_cursor
from petconsult.storage.errors import ConstraintViolation
from petconsult.storage.models import ADMIN_ROLES, Admin, Pet, User

logger = get_logger(__name__)

INVALID_ADMIN_CREDENTIALS = "invalid credentials"
MAX_PAGE_SIZE = 100


@dataclass
class AdminLogin:
    admin: Admin
    token: AccessToken


@dataclass
class UserPage:
    items: List[User]
    next_cursor: Optional[str] = None


class AdminService:
    """Back-office identity and user account management.

    Admin sessions carry an access token only; nothing is written to the
    refresh ledger for them.
    """

    def __init__(
        self,
        store,
        issuer: TokenIssuer,
        passwords: PasswordService,
        settings: Settings,
    ) -> None:
        self.store = store
        self.issuer = issuer
        self.passwords = passwords
        self.settings = settings

    async def login(
        self,
        identifier: str,
        password: str,
        *,
        ip_addr: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AdminLogin:
        admin = self.store.get_admin_by_email(identifier)
        valid = await self.passwords.verify(admin.password_hash if admin else None, password)
        if not admin or not valid:
            log_security_event(
                "admin_login_failed",
                logger,
                ip_addr=ip_addr,
                user_agent=user_agent,
            )
            raise AuthenticationError(INVALID_ADMIN_CREDENTIALS)
        if not admin.is_active:
            raise AuthenticationError("account is deactivated")
        now = self.issuer.now()
        self.store.touch_admin_login(admin.id, now)
        admin.last_login_at = now
        token = self.issuer.issue_access_token(
            admin.id, None, admin.role, principal_type=PRINCIPAL_ADMIN
        )
        logger.info("admin_login_succeeded", admin_id=admin.id, ip_addr=ip_addr)
        return AdminLogin(admin=admin, token=token)

    def get_admin(self, admin_id: str) -> Admin:
        admin = self.store.get_admin(admin_id)
        if not admin:
            raise NotFoundError("admin not found")
        return admin

    async def create_admin(
        self,
        email: str,
        password: str,
        first_name: str,
        last_name: str,
        *,
        role: str,
        created_by: Optional[str] = None,
    ) -> Admin:
        if role not in ADMIN_ROLES:
            raise ValidationError("unsupported admin role", detail={"field": "role"})
        if self.store.get_admin_by_email(email):
            raise ConflictError("admin already exists", detail={"field": "email"})
        password_hash = await self.passwords.hash(password)
        try:
            admin = self.store.create_admin(
                email, password_hash, first_name, last_name, role=role
            )
        except ConstraintViolation as exc:
            raise ConflictError("admin already exists", detail=exc.detail) from exc
        log_security_event(
            "admin_created", logger, admin_id=admin.id, role=role, created_by=created_by
        )
        return admin

    def list_users(self, limit: int = 20, cursor: Optional[str] = None) -> UserPage:
        limit = max(1, min(limit, MAX_PAGE_SIZE))
        before: Optional[Tuple] = None
        if cursor:
            try:
                before = decode_time_id_cursor(cursor)
            except ValueError as exc:
                raise ValidationError("invalid cursor", detail={"field": "cursor"}) from exc
        rows = self.store.list_users(limit + 1, before=before)
        items = rows[:limit]
        next_cursor = None
        if len(rows) > limit and items:
            last = items[-1]
            next_cursor = encode_time_id_cursor(last.created_at, last.id)
        return UserPage(items=items, next_cursor=next_cursor)

    def get_user(self, user_id: str) -> Tuple[User, List[Pet]]:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        return user, self.store.list_user_pets(user_id)

    def deactivate_user(self, actor_id: str, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        if not user.is_active:
            raise ValidationError("user is already deactivated")
        updated = self.store.set_user_active(
            user_id, False, revoke_tokens=True, now=self.issuer.now()
        )
        if updated is None:
            raise NotFoundError("user not found")
        log_security_event("user_deactivated", logger, user_id=user_id, actor_id=actor_id)
        return updated

    def activate_user(self, actor_id: str, user_id: str) -> User:
        user = self.store.get_user(user_id)
        if not user:
            raise NotFoundError("user not found")
        if user.is_active:
            raise ValidationError("user is already active")
        updated = self.store.set_user_active(user_id, True, now=self.issuer.now())
        if updated is None:
            raise NotFoundError("user not found")
        logger.info("user_activated", user_id=user_id, actor_id=actor_id)
        return updated

    def delete_user(self, actor_id: str, user_id: str) -> None:
        if not self.store.get_user(user_id):
            raise NotFoundError("user not found")
        pets = self.store.count_user_pets(user_id)
        if pets:
            raise ConflictError(
                "user has related records, deactivate the account instead",
                detail={"pets": pets},
            )
        try:
            deleted = self.store.delete_user(user_id)
        except ConstraintViolation as exc:
            raise ConflictError(
                "user has related records, deactivate the account instead",
                detail=exc.detail,
            ) from exc
        if not deleted:
            raise NotFoundError("user not found")
        log_security_event("user_deleted", logger, user_id=user_id, actor_id=actor_id)
