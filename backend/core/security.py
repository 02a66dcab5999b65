"""Authenticated request context.

Tokens are issued by the external identity service; this module only decodes
them and derives the ``(tenant, branch, role, user)`` context that scopes every
lifecycle operation.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, NamedTuple, Optional

import jwt
from fastapi import HTTPException, Request, status
from jwt.exceptions import PyJWTError

from config import settings
from core.permissions import Role

logger = logging.getLogger(__name__)

TENANT_OVERRIDE_HEADER = "X-Tenant-Id"
BRANCH_OVERRIDE_HEADER = "X-Branch-Id"


class BranchScope(NamedTuple):
    tenant_id: str
    branch_id: str


@dataclass(frozen=True)
class RequestContext:
    user_id: str
    tenant_id: str
    branch_id: str
    role: Role
    ip_address: Optional[str] = None
    user_agent: Optional[str] = None

    @property
    def scope(self) -> BranchScope:
        return BranchScope(self.tenant_id, self.branch_id)


def create_access_token(data: dict[str, Any], expires_delta: timedelta | None = None) -> str:
    """Mint a token in the identity service's format (tooling and tests)."""
    to_encode = data.copy()
    to_encode["exp"] = datetime.now(timezone.utc) + (expires_delta or timedelta(hours=12))
    return jwt.encode(to_encode, settings.secret_key, algorithm=settings.jwt_algorithm)


def decode_access_token(token: str) -> dict[str, Any] | None:
    try:
        return jwt.decode(token, settings.secret_key, algorithms=[settings.jwt_algorithm])
    except PyJWTError as exc:
        logger.info("JWT verification failed: %s", exc)
        return None


def context_from_claims(
    claims: dict[str, Any],
    tenant_override: Optional[str] = None,
    branch_override: Optional[str] = None,
    ip_address: Optional[str] = None,
    user_agent: Optional[str] = None,
) -> RequestContext:
    try:
        role = Role(claims.get("role"))
    except ValueError:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Unknown role")

    user_id = claims.get("sub")
    if not user_id:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not authorized, token failed")

    tenant_id = claims.get("tenant_id")
    branch_id = claims.get("branch_id")
    if role == Role.SUPERADMIN and tenant_override:
        tenant_id = tenant_override
    if role in (Role.ADMIN, Role.SUPERADMIN) and branch_override:
        branch_id = branch_override

    if not tenant_id or not branch_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Tenant context required")

    return RequestContext(
        user_id=str(user_id),
        tenant_id=str(tenant_id),
        branch_id=str(branch_id),
        role=role,
        ip_address=ip_address,
        user_agent=user_agent,
    )


async def get_context(request: Request) -> RequestContext:
    auth_header = request.headers.get("Authorization", "")
    if not auth_header.startswith("Bearer "):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authorized, no token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    claims = decode_access_token(auth_header.split(" ", 1)[1])
    if claims is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Not authorized, token failed",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return context_from_claims(
        claims,
        tenant_override=request.headers.get(TENANT_OVERRIDE_HEADER),
        branch_override=request.headers.get(BRANCH_OVERRIDE_HEADER),
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
