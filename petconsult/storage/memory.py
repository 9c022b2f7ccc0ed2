from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from petconsult.logging import get_logger
from petconsult.storage.errors import ConstraintViolation
from petconsult.storage.models import (
    ROLE_ADMIN,
    ROLE_USER,
    Admin,
    NewPet,
    Pet,
    RefreshToken,
    User,
    VerificationCode,
    new_id,
    utcnow,
)


class MemoryStore:
    """In-process credential store used for tests and local development.

    Every method takes ``_data_lock`` so compound operations (rotate,
    deactivate-and-revoke) are atomic with respect to other threads.
    Callers receive copies, never the stored records.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[str, User] = {}
        self.admins: Dict[str, Admin] = {}
        self.pets: Dict[str, Pet] = {}
        self.refresh_tokens: Dict[str, RefreshToken] = {}
        self.verification_codes: Dict[Tuple[str, str], VerificationCode] = {}
        # RLock so helpers can re-enter from within a held section
        self._data_lock = threading.RLock()

    def ping(self) -> bool:
        return True

    def close(self) -> None:
        return None

    # users
    def create_user(
        self,
        mobile: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        *,
        role: str = ROLE_USER,
        is_verified: bool = False,
        pet: Optional[NewPet] = None,
    ) -> Tuple[User, Optional[Pet]]:
        with self._data_lock:
            if any(existing.mobile == mobile for existing in self.users.values()):
                raise ConstraintViolation("mobile already exists", {"field": "mobile"})
            user = User(
                id=new_id(),
                mobile=mobile,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                role=role,
                is_verified=is_verified,
            )
            self.users[user.id] = user
            created_pet = None
            if pet is not None:
                created_pet = Pet.from_new(user.id, pet)
                self.pets[created_pet.id] = created_pet
            return replace(user), replace(created_pet) if created_pet else None

    def get_user(self, user_id: str) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            return replace(user) if user else None

    def get_user_by_mobile(self, mobile: str) -> Optional[User]:
        with self._data_lock:
            user = next((u for u in self.users.values() if u.mobile == mobile), None)
            return replace(user) if user else None

    def list_users(
        self, limit: int = 50, *, before: Optional[Tuple[datetime, str]] = None
    ) -> List[User]:
        """Newest first, keyset-paged on ``(created_at, id)``."""
        with self._data_lock:
            ordered = sorted(
                self.users.values(), key=lambda u: (u.created_at, u.id), reverse=True
            )
            if before is not None:
                ordered = [u for u in ordered if (u.created_at, u.id) < before]
            return [replace(u) for u in ordered[:limit]]

    def _update_user(self, user_id: str, **changes) -> Optional[User]:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                return None
            for key, value in changes.items():
                setattr(user, key, value)
            user.updated_at = utcnow()
            return replace(user)

    def set_user_password(self, user_id: str, password_hash: str) -> Optional[User]:
        return self._update_user(user_id, password_hash=password_hash)

    def update_user_profile(
        self, user_id: str, first_name: str, last_name: str
    ) -> Optional[User]:
        return self._update_user(user_id, first_name=first_name, last_name=last_name)

    def mark_user_verified(self, user_id: str) -> Optional[User]:
        return self._update_user(user_id, is_verified=True)

    def touch_user_login(self, user_id: str, at: datetime) -> Optional[User]:
        return self._update_user(user_id, last_login_at=at)

    def set_user_active(
        self, user_id: str, active: bool, *, revoke_tokens: bool = False, now: datetime
    ) -> Optional[User]:
        with self._data_lock:
            user = self._update_user(user_id, is_active=active)
            if user and revoke_tokens:
                self.revoke_user_refresh_tokens(user_id, now=now)
            return user

    def delete_user(self, user_id: str, *, include_pets: bool = False) -> bool:
        with self._data_lock:
            if user_id not in self.users:
                return False
            owned = [pid for pid, pet in self.pets.items() if pet.user_id == user_id]
            if owned and not include_pets:
                raise ConstraintViolation(
                    "user still owns pets", {"user_id": user_id, "pets": len(owned)}
                )
            for pet_id in owned:
                self.pets.pop(pet_id, None)
            for token_hash, token in list(self.refresh_tokens.items()):
                if token.user_id == user_id:
                    self.refresh_tokens.pop(token_hash, None)
            self.users.pop(user_id, None)
            return True

    def count_user_pets(self, user_id: str) -> int:
        with self._data_lock:
            return sum(1 for pet in self.pets.values() if pet.user_id == user_id)

    def list_user_pets(self, user_id: str) -> List[Pet]:
        with self._data_lock:
            owned = [replace(p) for p in self.pets.values() if p.user_id == user_id]
            return sorted(owned, key=lambda p: p.created_at)

    # admins
    def create_admin(
        self,
        email: str,
        password_hash: str,
        first_name: str,
        last_name: str,
        *,
        role: str = ROLE_ADMIN,
    ) -> Admin:
        with self._data_lock:
            if any(existing.email == email for existing in self.admins.values()):
                raise ConstraintViolation("admin already exists", {"field": "email"})
            admin = Admin(
                id=new_id(),
                email=email,
                password_hash=password_hash,
                first_name=first_name,
                last_name=last_name,
                role=role,
            )
            self.admins[admin.id] = admin
            return replace(admin)

    def get_admin(self, admin_id: str) -> Optional[Admin]:
        with self._data_lock:
            admin = self.admins.get(admin_id)
            return replace(admin) if admin else None

    def get_admin_by_email(self, email: str) -> Optional[Admin]:
        with self._data_lock:
            admin = next((a for a in self.admins.values() if a.email == email), None)
            return replace(admin) if admin else None

    def touch_admin_login(self, admin_id: str, at: datetime) -> None:
        with self._data_lock:
            admin = self.admins.get(admin_id)
            if admin:
                admin.last_login_at = at

    # refresh tokens
    def create_refresh_token(
        self, token_hash: str, user_id: str, expires_at: datetime
    ) -> RefreshToken:
        with self._data_lock:
            if token_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token already stored")
            if user_id not in self.users:
                raise ConstraintViolation("refresh token user missing", {"user_id": user_id})
            record = RefreshToken(
                id=new_id(), token_hash=token_hash, user_id=user_id, expires_at=expires_at
            )
            self.refresh_tokens[token_hash] = record
            return replace(record)

    def get_refresh_token(self, token_hash: str) -> Optional[RefreshToken]:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            return replace(record) if record else None

    def revoke_refresh_token(
        self, token_hash: str, *, user_id: Optional[str] = None, now: datetime
    ) -> bool:
        with self._data_lock:
            record = self.refresh_tokens.get(token_hash)
            if not record or record.is_revoked:
                return False
            if user_id is not None and record.user_id != user_id:
                return False
            record.is_revoked = True
            record.revoked_at = now
            return True

    def revoke_user_refresh_tokens(self, user_id: str, *, now: datetime) -> int:
        with self._data_lock:
            revoked = 0
            for record in self.refresh_tokens.values():
                if record.user_id == user_id and not record.is_revoked:
                    record.is_revoked = True
                    record.revoked_at = now
                    revoked += 1
            return revoked

    def rotate_refresh_token(
        self,
        old_hash: str,
        new_hash: str,
        user_id: str,
        expires_at: datetime,
        *,
        now: datetime,
    ) -> Optional[RefreshToken]:
        with self._data_lock:
            old = self.refresh_tokens.get(old_hash)
            if old is None or old.user_id != user_id or not old.is_active(now):
                return None
            if new_hash in self.refresh_tokens:
                raise ConstraintViolation("refresh token already stored")
            old.is_revoked = True
            old.revoked_at = now
            return self.create_refresh_token(new_hash, user_id, expires_at)

    def purge_refresh_tokens(self, expired_before: datetime) -> int:
        with self._data_lock:
            stale = [
                token_hash
                for token_hash, record in self.refresh_tokens.items()
                if record.expires_at < expired_before
            ]
            for token_hash in stale:
                self.refresh_tokens.pop(token_hash, None)
            return len(stale)

    # verification codes
    def upsert_verification_code(self, record: VerificationCode) -> VerificationCode:
        with self._data_lock:
            self.verification_codes[(record.mobile, record.purpose)] = replace(record)
            return replace(record)

    def get_verification_code(
        self, mobile: str, purpose: str
    ) -> Optional[VerificationCode]:
        with self._data_lock:
            record = self.verification_codes.get((mobile, purpose))
            return replace(record) if record else None

    def increment_verification_attempts(self, mobile: str, purpose: str) -> int:
        with self._data_lock:
            record = self.verification_codes.get((mobile, purpose))
            if not record:
                return 0
            record.attempts += 1
            return record.attempts

    def delete_verification_code(
        self, mobile: str, purpose: str, *, code: Optional[str] = None
    ) -> bool:
        """Delete the code; when ``code`` is given only a matching row goes."""
        with self._data_lock:
            record = self.verification_codes.get((mobile, purpose))
            if not record or (code is not None and record.code != code):
                return False
            self.verification_codes.pop((mobile, purpose), None)
            return True

    def purge_verification_codes(self, now: datetime) -> int:
        with self._data_lock:
            stale = [
                key
                for key, record in self.verification_codes.items()
                if record.is_expired(now)
            ]
            for key in stale:
                self.verification_codes.pop(key, None)
            return len(stale)
