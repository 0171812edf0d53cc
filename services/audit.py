"""Audit logging service."""

from __future__ import annotations

from typing import Optional

from extensions import db
from models import AuditLog
from services.auth import get_current_user


def log_action(
    action: str,
    entity_type: str,
    entity_id: Optional[str],
    details: str = "",
) -> None:
    """Record an audit log entry.

    Does not commit; the caller commits together with the change it audits.
    """
    user = get_current_user()
    db.session.add(
        AuditLog(
            user_id=user.id if user else None,
            action=action,
            entity_type=entity_type,
            entity_id=entity_id,
            details=details,
        )
    )
