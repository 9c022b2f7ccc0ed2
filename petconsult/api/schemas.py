from __future__ import annotations

import re
import unicodedata
from datetime import datetime
from typing import Any, List, Literal, Optional
from uuid import uuid4

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from petconsult.logging import get_correlation_id
from petconsult.service.tokens import AccessToken, TokenPair
from petconsult.storage.models import PET_GENDERS, PET_SPECIES, Admin, NewPet, Pet, User

MOBILE_PATTERN = re.compile(r"^09\d{9}$")
_NAME_PATTERN = re.compile(r"^[A-Za-z؀-ۿ‌\s]+$")
_CODE_PATTERN = re.compile(r"^\d{4,8}$")
# Persian and Arabic-Indic digits typed on phone keyboards
_DIGIT_TRANSLATION = str.maketrans(
    "۰۱۲۳۴۵۶۷۸۹٠١٢٣٤٥٦٧٨٩", "01234567890123456789"
)

_VALID_ERROR_CODES = frozenset({
    "unauthorized",
    "forbidden",
    "not_found",
    "rate_limited",
    "validation_error",
    "conflict",
    "server_error",
})


def _normalize_unicode(value: str) -> str:
    """Strip zero-width and bidi override characters, then NFKC normalize."""
    zero_width = "​‍﻿"
    cleaned = "".join(c for c in value if c not in zero_width)
    bidi_overrides = set(chr(c) for c in range(0x202A, 0x202F))
    bidi_overrides.update(chr(c) for c in range(0x2066, 0x206A))
    cleaned = "".join(c for c in cleaned if c not in bidi_overrides)
    return unicodedata.normalize("NFKC", cleaned)


def normalize_mobile(value: str) -> str:
    """Canonicalize to ``09XXXXXXXXX``.

    Accepts Persian/Arabic digits, separators, and the ``+98``/``0098``
    country prefix.
    """
    if not isinstance(value, str):
        raise ValueError("mobile must be a string")
    digits = re.sub(r"[\s\-()]", "", value.translate(_DIGIT_TRANSLATION))
    if digits.startswith("+98"):
        digits = "0" + digits[3:]
    elif digits.startswith("0098"):
        digits = "0" + digits[4:]
    if not MOBILE_PATTERN.match(digits):
        raise ValueError("mobile must be a valid number in the form 09XXXXXXXXX")
    return digits


def _validate_password_strength(value: str) -> str:
    """Validate password meets minimum requirements."""
    if len(value) < 8:
        raise ValueError("password must be at least 8 characters")
    if len(value) > 128:
        raise ValueError("password must be at most 128 characters")
    if not re.search(r"[A-Za-z]", value) or not re.search(r"\d", value):
        raise ValueError("password must contain at least one letter and one digit")
    return value


def _validate_name(value: str) -> str:
    normalized = " ".join(_normalize_unicode(value).split())
    if len(normalized) < 2 or len(normalized) > 50:
        raise ValueError("name must be between 2 and 50 characters")
    if not _NAME_PATTERN.match(normalized):
        raise ValueError("name may only contain letters and spaces")
    return normalized


def _validate_code(value: str) -> str:
    normalized = str(value).strip().translate(_DIGIT_TRANSLATION)
    if not _CODE_PATTERN.match(normalized):
        raise ValueError("code must be 4 to 8 digits")
    return normalized


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope wrapping every response body."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: get_correlation_id() or str(uuid4()))


class _CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        serialize_by_alias=True,
        str_strip_whitespace=True,
    )


class _MobileBody(_CamelModel):
    mobile: str

    @field_validator("mobile")
    @classmethod
    def _validate_mobile(cls, value: str) -> str:
        return normalize_mobile(value)


# requests
class PetData(_CamelModel):
    name: str = Field(..., max_length=50)
    species: str
    breed: Optional[str] = Field(default=None, max_length=50)
    age: Optional[int] = Field(default=None, ge=0, le=50)
    gender: str = "UNKNOWN"
    is_neutered: bool = False

    @field_validator("name")
    @classmethod
    def _validate_pet_name(cls, value: str) -> str:
        if not value:
            raise ValueError("pet name is required")
        return value

    @field_validator("species")
    @classmethod
    def _validate_species(cls, value: str) -> str:
        normalized = value.lower()
        if normalized not in PET_SPECIES:
            raise ValueError(f"species must be one of: {', '.join(sorted(PET_SPECIES))}")
        return normalized

    @field_validator("gender")
    @classmethod
    def _validate_gender(cls, value: str) -> str:
        normalized = value.upper()
        if normalized not in PET_GENDERS:
            raise ValueError(f"gender must be one of: {', '.join(sorted(PET_GENDERS))}")
        return normalized

    def to_new_pet(self) -> NewPet:
        return NewPet(
            name=self.name,
            species=self.species,
            breed=self.breed,
            age=self.age,
            gender=self.gender,
            is_neutered=self.is_neutered,
        )


class RegisterRequest(_MobileBody):
    password: str
    first_name: str
    last_name: str
    pet_data: Optional[PetData] = None

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)


class VerifyRegistrationRequest(_MobileBody):
    code: str

    @field_validator("code", mode="before")
    @classmethod
    def _validate_code(cls, value: Any) -> str:
        return _validate_code(value)


class MobileRequest(_MobileBody):
    pass


class LoginRequest(_MobileBody):
    # No strength rules: existing passwords predate policy changes.
    password: str = Field(..., min_length=1, max_length=128)


class TokenRefreshRequest(_CamelModel):
    refresh_token: str = Field(..., min_length=1, max_length=4096)


class LogoutRequest(_CamelModel):
    refresh_token: Optional[str] = Field(default=None, max_length=4096)


class ProfileUpdateRequest(_CamelModel):
    first_name: str
    last_name: str

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)


class PasswordChangeRequest(_CamelModel):
    current_password: str = Field(..., min_length=1, max_length=128)
    new_password: str

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class PasswordResetRequest(_MobileBody):
    code: str
    new_password: str

    @field_validator("code", mode="before")
    @classmethod
    def _validate_code(cls, value: Any) -> str:
        return _validate_code(value)

    @field_validator("new_password")
    @classmethod
    def _validate_new_password(cls, value: str) -> str:
        return _validate_password_strength(value)


class AdminLoginRequest(_CamelModel):
    # Admin login ids are a mobile number or an email; either key is accepted.
    mobile: str = Field(
        ..., min_length=3, max_length=254, validation_alias=AliasChoices("mobile", "email")
    )
    password: str = Field(..., min_length=1, max_length=128)

    model_config = ConfigDict(
        populate_by_name=True, str_strip_whitespace=True, serialize_by_alias=True
    )

    @field_validator("mobile", mode="before")
    @classmethod
    def _normalize_identifier(cls, value: Any) -> str:
        if not isinstance(value, str):
            raise ValueError("mobile must be a string")
        try:
            return normalize_mobile(value)
        except ValueError:
            return _normalize_unicode(value.strip().lower())


class AdminCreateRequest(_CamelModel):
    email: str = Field(..., min_length=3, max_length=254)
    password: str
    first_name: str
    last_name: str
    role: Literal["ADMIN", "SUPER_ADMIN"] = "ADMIN"

    @field_validator("email")
    @classmethod
    def _normalize_identifier(cls, value: str) -> str:
        try:
            return normalize_mobile(value)
        except ValueError:
            return _normalize_unicode(value.lower())

    @field_validator("password")
    @classmethod
    def _validate_password(cls, value: str) -> str:
        return _validate_password_strength(value)

    @field_validator("first_name", "last_name")
    @classmethod
    def _validate_names(cls, value: str) -> str:
        return _validate_name(value)


# responses
class UserResponse(_CamelModel):
    id: str
    mobile: str
    first_name: str
    last_name: str
    role: str
    is_active: bool
    is_verified: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, user: User) -> "UserResponse":
        return cls(
            id=user.id,
            mobile=user.mobile,
            first_name=user.first_name,
            last_name=user.last_name,
            role=user.role,
            is_active=user.is_active,
            is_verified=user.is_verified,
            created_at=user.created_at,
            last_login_at=user.last_login_at,
        )


class PetResponse(_CamelModel):
    id: str
    name: str
    species: str
    breed: Optional[str] = None
    age: Optional[int] = None
    gender: str
    is_neutered: bool
    created_at: datetime

    @classmethod
    def from_model(cls, pet: Pet) -> "PetResponse":
        return cls(
            id=pet.id,
            name=pet.name,
            species=pet.species,
            breed=pet.breed,
            age=pet.age,
            gender=pet.gender,
            is_neutered=pet.is_neutered,
            created_at=pet.created_at,
        )


class AdminResponse(_CamelModel):
    id: str
    email: str
    first_name: str
    last_name: str
    role: str
    is_active: bool
    created_at: datetime
    last_login_at: Optional[datetime] = None

    @classmethod
    def from_model(cls, admin: Admin) -> "AdminResponse":
        return cls(
            id=admin.id,
            email=admin.email,
            first_name=admin.first_name,
            last_name=admin.last_name,
            role=admin.role,
            is_active=admin.is_active,
            created_at=admin.created_at,
            last_login_at=admin.last_login_at,
        )


class TokensResponse(_CamelModel):
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    expires_in: int

    @classmethod
    def from_pair(cls, pair: TokenPair) -> "TokensResponse":
        return cls(
            access_token=pair.access_token,
            refresh_token=pair.refresh_token,
            expires_in=pair.access_ttl_seconds,
        )

    @classmethod
    def from_access(cls, token: AccessToken) -> "TokensResponse":
        return cls(access_token=token.token, expires_in=token.ttl_seconds)


class AuthResponse(_CamelModel):
    user: UserResponse
    tokens: Optional[TokensResponse] = None


class RegisterResponse(_CamelModel):
    user: UserResponse
    pet: Optional[PetResponse] = None
    verification_required: bool
    tokens: Optional[TokensResponse] = None


class RefreshResponse(_CamelModel):
    tokens: TokensResponse


class MessageResponse(_CamelModel):
    message: str


class RevokedResponse(_CamelModel):
    message: str
    revoked: int


class UserDetailResponse(_CamelModel):
    user: UserResponse
    pets: List[PetResponse] = Field(default_factory=list)


class UserListResponse(_CamelModel):
    items: List[UserResponse]
    next_cursor: Optional[str] = None


class AdminAuthResponse(_CamelModel):
    admin: AdminResponse
    tokens: TokensResponse


class AdminDetailResponse(_CamelModel):
    admin: AdminResponse
