from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Path, Query, Request, Response

from petconsult.api.deps import (
    Principal,
    require_admin,
    require_super_admin,
    require_user,
)
from petconsult.api.schemas import (
    AdminAuthResponse,
    AdminCreateRequest,
    AdminDetailResponse,
    AdminLoginRequest,
    AdminResponse,
    AuthResponse,
    Envelope,
    LoginRequest,
    LogoutRequest,
    MessageResponse,
    MobileRequest,
    PasswordChangeRequest,
    PasswordResetRequest,
    PetResponse,
    ProfileUpdateRequest,
    RefreshResponse,
    RegisterRequest,
    RegisterResponse,
    RevokedResponse,
    TokenRefreshRequest,
    TokensResponse,
    UserDetailResponse,
    UserListResponse,
    UserResponse,
    VerifyRegistrationRequest,
)
from petconsult.logging import get_logger
from petconsult.service.auth import AuthResult
from petconsult.service.errors import RateLimitedError
from petconsult.service.runtime import Runtime, check_rate_limit, get_runtime

logger = get_logger(__name__)

router = APIRouter(prefix="/api/v1")

RATE_LIMIT_WINDOW_SECONDS = 60


class RateLimitInfo:
    """Rate limit state for adding response headers."""

    __slots__ = ("limit", "remaining", "reset_seconds")

    def __init__(self, limit: int, remaining: int, reset_seconds: int):
        self.limit = limit
        self.remaining = remaining
        self.reset_seconds = reset_seconds

    def apply_headers(self, response: Response) -> None:
        response.headers["X-RateLimit-Limit"] = str(self.limit)
        response.headers["X-RateLimit-Remaining"] = str(max(0, self.remaining))
        response.headers["X-RateLimit-Reset"] = str(self.reset_seconds)


async def _enforce_rate_limit(
    runtime: Runtime,
    key: str,
    limit: int,
    window_seconds: int = RATE_LIMIT_WINDOW_SECONDS,
    *,
    response: Optional[Response] = None,
) -> RateLimitInfo:
    """Enforce a rate limit and optionally apply headers to the response.

    Raises:
        RateLimitedError if the limit is exceeded
    """
    allowed, remaining, reset_seconds = await check_rate_limit(
        runtime, key, limit, window_seconds, return_remaining=True
    )
    info = RateLimitInfo(limit, remaining, reset_seconds or window_seconds)
    if response is not None:
        info.apply_headers(response)
    if not allowed:
        logger.warning("rate_limit_exceeded", key=key.split(":", 1)[0], limit=limit)
        raise RateLimitedError(
            "too many requests, try again later", retry_after=info.reset_seconds
        )
    return info


def _client_ip(request: Request) -> str:
    return request.client.host if request.client else "unknown"


def _auth_payload(result: AuthResult) -> AuthResponse:
    return AuthResponse(
        user=UserResponse.from_model(result.user),
        tokens=TokensResponse.from_pair(result.tokens) if result.tokens else None,
    )


# user auth


@router.post("/auth/register", response_model=Envelope, status_code=201, tags=["auth"])
async def register(body: RegisterRequest, request: Request, response: Response):
    """Create a pet owner account, optionally with a first pet.

    Raises:
        409: If the mobile number is already registered
        429: If the registration rate limit is exceeded
        500: If the verification SMS could not be sent
    """
    runtime = get_runtime(request)
    ip_addr = _client_ip(request)
    await _enforce_rate_limit(
        runtime,
        f"register:{ip_addr}",
        runtime.settings.register_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.register(
        body.mobile,
        body.password,
        body.first_name,
        body.last_name,
        pet=body.pet_data.to_new_pet() if body.pet_data else None,
        ip_addr=ip_addr,
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(
        status="ok",
        data=RegisterResponse(
            user=UserResponse.from_model(result.user),
            pet=PetResponse.from_model(result.pet) if result.pet else None,
            verification_required=result.verification_required,
            tokens=TokensResponse.from_pair(result.tokens) if result.tokens else None,
        ),
    )


@router.post("/auth/verify-registration", response_model=Envelope, tags=["auth"])
async def verify_registration(body: VerifyRegistrationRequest, request: Request):
    runtime = get_runtime(request)
    await _enforce_rate_limit(
        runtime, f"verify:{body.mobile}", runtime.settings.verify_rate_limit_per_minute
    )
    result = await runtime.auth.verify_registration(body.mobile, body.code)
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/auth/resend-code", response_model=Envelope, tags=["auth"])
async def resend_code(body: MobileRequest, request: Request, response: Response):
    runtime = get_runtime(request)
    await _enforce_rate_limit(
        runtime,
        f"code:{body.mobile}",
        runtime.settings.code_request_rate_limit_per_minute,
        response=response,
    )
    await runtime.auth.resend_verification_code(body.mobile)
    return Envelope(status="ok", data=MessageResponse(message="verification code sent"))


@router.post("/auth/login", response_model=Envelope, tags=["auth"])
async def login(body: LoginRequest, request: Request, response: Response):
    """Authenticate with mobile number and password.

    Raises:
        401: If the credentials are invalid or the account is deactivated
        429: If the rate limit for this mobile number is exceeded
    """
    runtime = get_runtime(request)
    await _enforce_rate_limit(
        runtime,
        f"login:{body.mobile}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.auth.login(
        body.mobile,
        body.password,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(status="ok", data=_auth_payload(result))


@router.post("/auth/refresh", response_model=Envelope, tags=["auth"])
async def refresh_tokens(body: TokenRefreshRequest, request: Request):
    runtime = get_runtime(request)
    await _enforce_rate_limit(
        runtime,
        f"refresh:{_client_ip(request)}",
        runtime.settings.refresh_rate_limit_per_minute,
    )
    result = await runtime.auth.refresh(body.refresh_token)
    return Envelope(
        status="ok", data=RefreshResponse(tokens=TokensResponse.from_pair(result.tokens))
    )


@router.post("/auth/logout", response_model=Envelope, tags=["auth"])
async def logout(
    request: Request,
    body: Optional[LogoutRequest] = None,
    principal: Principal = Depends(require_user),
):
    runtime = get_runtime(request)
    runtime.auth.logout(principal.subject_id, body.refresh_token if body else None)
    return Envelope(status="ok", data=MessageResponse(message="logged out"))


@router.post("/auth/logout-all", response_model=Envelope, tags=["auth"])
async def logout_all(request: Request, principal: Principal = Depends(require_user)):
    runtime = get_runtime(request)
    revoked = runtime.auth.logout_all(principal.subject_id)
    return Envelope(
        status="ok",
        data=RevokedResponse(message="logged out from all devices", revoked=revoked),
    )


@router.get("/auth/me", response_model=Envelope, tags=["auth"])
async def me(request: Request, principal: Principal = Depends(require_user)):
    runtime = get_runtime(request)
    user = runtime.auth.me(principal.subject_id)
    return Envelope(status="ok", data=UserResponse.from_model(user))


@router.patch("/auth/me", response_model=Envelope, tags=["auth"])
async def update_me(
    body: ProfileUpdateRequest,
    request: Request,
    principal: Principal = Depends(require_user),
):
    runtime = get_runtime(request)
    user = runtime.auth.update_profile(
        principal.subject_id, body.first_name, body.last_name
    )
    return Envelope(status="ok", data=UserResponse.from_model(user))


@router.patch("/auth/change-password", response_model=Envelope, tags=["auth"])
async def change_password(
    body: PasswordChangeRequest,
    request: Request,
    principal: Principal = Depends(require_user),
):
    runtime = get_runtime(request)
    revoked = await runtime.auth.change_password(
        principal.subject_id, body.current_password, body.new_password
    )
    return Envelope(
        status="ok", data=RevokedResponse(message="password changed", revoked=revoked)
    )


@router.post("/auth/forgot-password", response_model=Envelope, tags=["auth"])
async def forgot_password(body: MobileRequest, request: Request, response: Response):
    runtime = get_runtime(request)
    await _enforce_rate_limit(
        runtime,
        f"code:{body.mobile}",
        runtime.settings.code_request_rate_limit_per_minute,
        response=response,
    )
    await runtime.auth.forgot_password(body.mobile)
    return Envelope(status="ok", data=MessageResponse(message="reset code sent"))


@router.post("/auth/reset-password", response_model=Envelope, tags=["auth"])
async def reset_password(body: PasswordResetRequest, request: Request):
    runtime = get_runtime(request)
    await _enforce_rate_limit(
        runtime, f"verify:{body.mobile}", runtime.settings.verify_rate_limit_per_minute
    )
    revoked = await runtime.auth.reset_password(
        body.mobile, body.code, body.new_password
    )
    return Envelope(
        status="ok", data=RevokedResponse(message="password reset", revoked=revoked)
    )


# admin


@router.post("/admin/login", response_model=Envelope, tags=["admin"])
async def admin_login(body: AdminLoginRequest, request: Request, response: Response):
    runtime = get_runtime(request)
    await _enforce_rate_limit(
        runtime,
        f"admin_login:{body.mobile}",
        runtime.settings.login_rate_limit_per_minute,
        response=response,
    )
    result = await runtime.admin.login(
        body.mobile,
        body.password,
        ip_addr=_client_ip(request),
        user_agent=request.headers.get("user-agent"),
    )
    return Envelope(
        status="ok",
        data=AdminAuthResponse(
            admin=AdminResponse.from_model(result.admin),
            tokens=TokensResponse.from_access(result.token),
        ),
    )


@router.get("/admin/me", response_model=Envelope, tags=["admin"])
async def admin_me(request: Request, principal: Principal = Depends(require_admin)):
    runtime = get_runtime(request)
    admin = runtime.admin.get_admin(principal.subject_id)
    return Envelope(
        status="ok", data=AdminDetailResponse(admin=AdminResponse.from_model(admin))
    )


@router.get("/admin/users", response_model=Envelope, tags=["admin"])
async def admin_list_users(
    request: Request,
    limit: int = Query(20, ge=1, le=100, description="Maximum users to return"),
    cursor: Optional[str] = Query(None, max_length=512),
    principal: Principal = Depends(require_admin),
):
    runtime = get_runtime(request)
    await _enforce_rate_limit(
        runtime,
        f"admin:{principal.subject_id}",
        runtime.settings.admin_rate_limit_per_minute,
    )
    page = runtime.admin.list_users(limit, cursor)
    return Envelope(
        status="ok",
        data=UserListResponse(
            items=[UserResponse.from_model(user) for user in page.items],
            next_cursor=page.next_cursor,
        ),
    )


@router.get("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_get_user(
    request: Request,
    user_id: str = Path(..., min_length=1, max_length=64),
    principal: Principal = Depends(require_admin),
):
    runtime = get_runtime(request)
    user, pets = runtime.admin.get_user(user_id)
    return Envelope(
        status="ok",
        data=UserDetailResponse(
            user=UserResponse.from_model(user),
            pets=[PetResponse.from_model(pet) for pet in pets],
        ),
    )


@router.patch("/admin/users/{user_id}/deactivate", response_model=Envelope, tags=["admin"])
async def admin_deactivate_user(
    request: Request,
    user_id: str = Path(..., min_length=1, max_length=64),
    principal: Principal = Depends(require_admin),
):
    runtime = get_runtime(request)
    await _enforce_rate_limit(
        runtime,
        f"admin:{principal.subject_id}",
        runtime.settings.admin_rate_limit_per_minute,
    )
    user = runtime.admin.deactivate_user(principal.subject_id, user_id)
    return Envelope(status="ok", data=UserResponse.from_model(user))


@router.patch("/admin/users/{user_id}/activate", response_model=Envelope, tags=["admin"])
async def admin_activate_user(
    request: Request,
    user_id: str = Path(..., min_length=1, max_length=64),
    principal: Principal = Depends(require_admin),
):
    runtime = get_runtime(request)
    await _enforce_rate_limit(
        runtime,
        f"admin:{principal.subject_id}",
        runtime.settings.admin_rate_limit_per_minute,
    )
    user = runtime.admin.activate_user(principal.subject_id, user_id)
    return Envelope(status="ok", data=UserResponse.from_model(user))


@router.delete("/admin/users/{user_id}", response_model=Envelope, tags=["admin"])
async def admin_delete_user(
    request: Request,
    user_id: str = Path(..., min_length=1, max_length=64),
    principal: Principal = Depends(require_admin),
):
    runtime = get_runtime(request)
    await _enforce_rate_limit(
        runtime,
        f"admin:{principal.subject_id}",
        runtime.settings.admin_rate_limit_per_minute,
    )
    runtime.admin.delete_user(principal.subject_id, user_id)
    return Envelope(status="ok", data=MessageResponse(message="user deleted"))


@router.post("/admin/admins", response_model=Envelope, status_code=201, tags=["admin"])
async def admin_create_admin(
    body: AdminCreateRequest,
    request: Request,
    principal: Principal = Depends(require_super_admin),
):
    runtime = get_runtime(request)
    admin = await runtime.admin.create_admin(
        body.email,
        body.password,
        body.first_name,
        body.last_name,
        role=body.role,
        created_by=principal.subject_id,
    )
    return Envelope(
        status="ok", data=AdminDetailResponse(admin=AdminResponse.from_model(admin))
    )
