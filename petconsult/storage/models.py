from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Optional

# Roles stay open strings; these are the ones the platform grants.
ROLE_USER = "USER"
ROLE_VETERINARIAN = "VETERINARIAN"
ROLE_ADMIN = "ADMIN"
ROLE_SUPER_ADMIN = "SUPER_ADMIN"
ADMIN_ROLES = frozenset({ROLE_ADMIN, ROLE_SUPER_ADMIN})

PURPOSE_REGISTRATION = "REGISTRATION"
PURPOSE_PASSWORD_RESET = "PASSWORD_RESET"
VERIFICATION_PURPOSES = frozenset({PURPOSE_REGISTRATION, PURPOSE_PASSWORD_RESET})

PET_SPECIES = frozenset(
    {"dog", "cat", "bird", "rabbit", "hamster", "fish", "reptile", "other"}
)
PET_GENDERS = frozenset({"MALE", "FEMALE", "UNKNOWN"})


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


@dataclass
class User:
    id: str
    mobile: str
    password_hash: str
    first_name: str
    last_name: str
    role: str = ROLE_USER
    is_active: bool = True
    is_verified: bool = False
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class Admin:
    id: str
    email: str
    password_hash: str
    first_name: str
    last_name: str
    role: str = ROLE_ADMIN
    is_active: bool = True
    created_at: datetime = field(default_factory=utcnow)
    last_login_at: Optional[datetime] = None


@dataclass
class NewPet:
    """Pet details supplied at registration, before an owner exists."""

    name: str
    species: str
    breed: Optional[str] = None
    age: Optional[int] = None
    gender: str = "UNKNOWN"
    is_neutered: bool = False


@dataclass
class Pet:
    id: str
    user_id: str
    name: str
    species: str
    breed: Optional[str] = None
    age: Optional[int] = None
    gender: str = "UNKNOWN"
    is_neutered: bool = False
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def from_new(cls, user_id: str, pet: NewPet) -> "Pet":
        return cls(
            id=new_id(),
            user_id=user_id,
            name=pet.name,
            species=pet.species,
            breed=pet.breed,
            age=pet.age,
            gender=pet.gender,
            is_neutered=pet.is_neutered,
        )


@dataclass
class RefreshToken:
    """Ledger row; only the SHA-256 digest of the token is kept."""

    id: str
    token_hash: str
    user_id: str
    expires_at: datetime
    is_revoked: bool = False
    created_at: datetime = field(default_factory=utcnow)
    revoked_at: Optional[datetime] = None

    def is_active(self, now: datetime) -> bool:
        return not self.is_revoked and self.expires_at > now


@dataclass
class VerificationCode:
    mobile: str
    purpose: str
    code: str
    expires_at: datetime
    attempts: int = 0
    created_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls, mobile: str, purpose: str, code: str, ttl: timedelta, *, now: datetime
    ) -> "VerificationCode":
        return cls(
            mobile=mobile,
            purpose=purpose,
            code=code,
            expires_at=now + ttl,
            created_at=now,
        )

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now
