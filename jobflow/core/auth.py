"""
Lightweight org-scoped auth helpers for the automation API.

Authentication itself lives upstream; this module only resolves the caller
into an org-scoped `UserContext` and enforces the admin role required to
author automation rules.
"""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass
from typing import Optional

from fastapi import Depends, Header, HTTPException

ADMIN_ROLES = {"ADMIN", "OWNER", "MANAGER"}


@dataclass
class UserContext:
    org_id: str
    role: str
    user_id: Optional[str] = None

    @property
    def is_admin(self) -> bool:
        return (self.role or "").upper() in ADMIN_ROLES


def _auth_disabled() -> bool:
    return os.getenv("JOBFLOW_AUTH_DISABLED", "true").lower() in {"1", "true", "yes"}


def _expected_token() -> str:
    token = os.getenv("JOBFLOW_AUTH_TOKEN")
    if token:
        return token
    env = (os.getenv("JOBFLOW_ENV") or os.getenv("APP_ENV") or "dev").strip().lower()
    if env == "prod":
        return ""
    return "demo-token"


def _extract_bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    if not authorization.lower().startswith("bearer "):
        return None
    token = authorization.split(" ", 1)[1].strip()
    return token or None


def get_current_user(
    authorization: Optional[str] = Header(None),
    x_org_id: Optional[str] = Header(None, alias="X-Org-Id"),
    x_user_id: Optional[str] = Header(None, alias="X-User-Id"),
    x_user_role: Optional[str] = Header(None, alias="X-User-Role"),
) -> UserContext:
    org_id = (x_org_id or "").strip()
    if not org_id:
        raise HTTPException(status_code=400, detail="X-Org-Id header is required")
    if _auth_disabled():
        return UserContext(org_id=org_id, role=(x_user_role or "ADMIN").upper(), user_id=x_user_id)
    token = _extract_bearer_token(authorization)
    if not token:
        raise HTTPException(status_code=401, detail="Missing bearer token")
    expected = _expected_token()
    if not expected or not secrets.compare_digest(token, expected):
        raise HTTPException(status_code=401, detail="Invalid token")
    return UserContext(org_id=org_id, role=(x_user_role or "MEMBER").upper(), user_id=x_user_id)


def require_org_admin(user: UserContext = Depends(get_current_user)) -> UserContext:
    if not user.is_admin:
        raise HTTPException(status_code=403, detail="Insufficient permissions")
    return user
