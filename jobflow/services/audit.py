"""
Fire-and-forget audit logging.

Failures are logged and swallowed: an audit write must never abort the
operation it describes.
"""

from __future__ import annotations

import datetime
import logging
from typing import Any, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from ..core.errors import log_exception
from ..models.audit_log import AuditLog


logger = logging.getLogger("audit")

REDACT_KEYS = {
    "credentials",
    "password",
    "password_hash",
    "secret",
    "api_key",
    "token",
    "access_token",
    "refresh_token",
}


def sanitize(value: Any) -> Any:
    if isinstance(value, (list, tuple)):
        return [sanitize(v) for v in value]
    if isinstance(value, datetime.datetime):
        return value.isoformat()
    if isinstance(value, dict):
        return {k: ("[REDACTED]" if k in REDACT_KEYS else sanitize(v)) for k, v in value.items()}
    return value


def record_audit_event(
    db: Session,
    *,
    org_id: str,
    action: str,
    entity_type: str,
    entity_id: str,
    actor_user_id: Optional[str] = None,
    actor_type: str = "system",
    before: Any = None,
    after: Any = None,
    metadata: Optional[dict] = None,
) -> Optional[AuditLog]:
    """Persist and commit one audit row; returns `None` when the write fails."""
    if not org_id:
        return None
    row = AuditLog(
        org_id=org_id,
        actor_user_id=actor_user_id,
        actor_type=actor_type,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        before=sanitize(before) if before is not None else None,
        after=sanitize(after) if after is not None else None,
        meta=sanitize(metadata) if metadata else None,
    )
    try:
        db.add(row)
        db.commit()
    except SQLAlchemyError as exc:
        db.rollback()
        log_exception(
            logger,
            "Audit write failed",
            exc=exc,
            extra={"org_id": org_id, "entity_type": entity_type, "entity_id": entity_id, "action": action},
        )
        return None
    return row
