"""Tenant-aware auth dependency for dispatch and driver-app routes."""
from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from fastapi import Depends, Header, HTTPException, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from app.core.config import get_settings
from app.core.logging import logger


security = HTTPBearer(auto_error=False)


@dataclass
class TenantContext:
    tenant_id: str
    authenticated: bool
    actor: str
    role: str


SUPPORTED_ROLES = {"dispatcher", "driver", "admin"}


def _normalize_role(value: str | None, default: str = "admin") -> str:
    role = (value or "").strip().lower()
    if not role:
        return default
    if role not in SUPPORTED_ROLES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Unsupported role '{value}'. Expected one of: {sorted(SUPPORTED_ROLES)}",
        )
    return role


def _parse_tenant_tokens(raw: str) -> Dict[str, Tuple[str, Optional[str]]]:
    """Parse `token:tenant[:role]` comma-separated values from env.

    A role pinned on the token (e.g. driver-app devices) cannot be
    overridden by the X-Actor-Role header.
    """
    mapping: Dict[str, Tuple[str, Optional[str]]] = {}
    if not raw.strip():
        return mapping

    for segment in raw.split(","):
        item = segment.strip()
        if not item:
            continue
        parts = [part.strip() for part in item.split(":")]
        if len(parts) < 2 or not parts[0] or not parts[1]:
            logger.warning("Ignoring malformed tenant token mapping entry", entry=item)
            continue
        pinned_role = parts[2].lower() if len(parts) > 2 and parts[2] else None
        if pinned_role and pinned_role not in SUPPORTED_ROLES:
            logger.warning("Ignoring tenant token with unknown role", entry=item, role=pinned_role)
            continue
        mapping[parts[0]] = (parts[1], pinned_role)
    return mapping


def get_tenant_context(
    credentials: HTTPAuthorizationCredentials | None = Depends(security),
    x_tenant_id: str | None = Header(default=None, alias="X-Tenant-ID"),
    x_actor_role: str | None = Header(default=None, alias="X-Actor-Role"),
) -> TenantContext:
    """Resolve tenant context from bearer token or default tenant header."""
    settings = get_settings()
    default_tenant = (x_tenant_id or settings.default_tenant_id or "demo").strip() or "demo"

    if not settings.auth_enabled:
        role = _normalize_role(x_actor_role)
        return TenantContext(
            tenant_id=default_tenant,
            authenticated=False,
            actor=f"anonymous-{role}",
            role=role,
        )

    if not credentials or not credentials.credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Bearer token required",
        )

    token_map = _parse_tenant_tokens(settings.tenant_tokens)
    entry = token_map.get(credentials.credentials.strip())
    if not entry:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Invalid bearer token",
        )
    tenant_id, pinned_role = entry

    if x_tenant_id and x_tenant_id.strip() and x_tenant_id.strip() != tenant_id:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Token tenant mismatch",
        )

    role = pinned_role or _normalize_role(x_actor_role, default="dispatcher")
    return TenantContext(
        tenant_id=tenant_id,
        authenticated=True,
        actor=f"token-{role}",
        role=role,
    )


def require_roles(*allowed_roles: str):
    """Dependency factory that enforces role-based access control."""
    allowed = {role.strip().lower() for role in allowed_roles if role.strip()}
    if not allowed:
        raise ValueError("At least one role is required")

    def _guard(context: TenantContext = Depends(get_tenant_context)) -> TenantContext:
        if context.role not in allowed:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail=f"Role '{context.role}' not permitted for this operation",
            )
        return context

    return _guard
