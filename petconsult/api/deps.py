from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Optional

from fastapi import Depends, Header, HTTPException, Request

from petconsult.logging import get_logger
from petconsult.service.errors import AuthorizationError
from petconsult.service.runtime import get_runtime
from petconsult.service.tokens import (
    PRINCIPAL_ADMIN,
    PRINCIPAL_USER,
    TOKEN_TYPE_ACCESS,
    TokenError,
)
from petconsult.storage.models import ADMIN_ROLES, ROLE_SUPER_ADMIN

logger = get_logger(__name__)


@dataclass(frozen=True)
class Principal:
    subject_id: str
    mobile: Optional[str]
    role: str
    principal_type: str

    @property
    def is_admin(self) -> bool:
        return self.principal_type == PRINCIPAL_ADMIN


def _http_error(
    code: str, message: str, status_code: int, details: Optional[dict | str] = None
) -> HTTPException:
    payload: dict[str, object] = {
        "status": "error",
        "error": {"code": code, "message": message},
    }
    if details is not None:
        payload["error"]["details"] = details  # type: ignore[index]
    return HTTPException(status_code=status_code, detail=payload)


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer" or not token.strip():
        return None
    return token.strip()


async def get_principal(
    request: Request,
    authorization: Optional[str] = Header(None),
) -> Principal:
    """Resolve the bearer access token into a principal.

    Rejects missing headers, non-bearer schemes and any token that fails
    verification as an access token. Refresh tokens are rejected here by
    their type claim.
    """
    token = _bearer_token(authorization)
    if token is None:
        raise _http_error("unauthorized", "authentication required", status_code=401)
    runtime = get_runtime(request)
    try:
        claims = runtime.issuer.verify(token, TOKEN_TYPE_ACCESS)
    except TokenError as exc:
        logger.info("access_token_rejected", reason=exc.reason, path=request.url.path)
        raise _http_error(
            "unauthorized", "invalid or expired access token", status_code=401
        ) from exc
    principal = Principal(
        subject_id=claims.subject_id,
        mobile=claims.mobile,
        role=claims.role,
        principal_type=claims.principal_type,
    )
    request.state.principal = principal
    return principal


def require_roles(
    *roles: str, principal_type: Optional[str] = None
) -> Callable[..., Principal]:
    """Build a dependency that admits only the given roles.

    An empty ``roles`` admits any role; ``principal_type`` narrows the
    principal kind independently of role.
    """
    allowed = frozenset(roles)

    async def _dependency(principal: Principal = Depends(get_principal)) -> Principal:
        if principal_type is not None and principal.principal_type != principal_type:
            raise AuthorizationError("access denied")
        if allowed and principal.role not in allowed:
            raise AuthorizationError("insufficient permissions")
        return principal

    return _dependency


require_user = require_roles(principal_type=PRINCIPAL_USER)
require_admin = require_roles(*sorted(ADMIN_ROLES), principal_type=PRINCIPAL_ADMIN)
require_super_admin = require_roles(ROLE_SUPER_ADMIN, principal_type=PRINCIPAL_ADMIN)
