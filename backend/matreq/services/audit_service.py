# Overview: Append-only audit recorder for workflow and stock operations.

"""
Audit invariants

- Rows are written inside the same DB transaction as the change they record;
  a rolled back operation leaves no audit row behind.
- Rows are never updated or deleted (ORM listeners on AuditLog).
- before/after are JSON snapshots; Decimals are written as strings.
"""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from ..extensions import db
from ..models import AuditLog


def _json_default(value):
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def _dump(snapshot) -> str | None:
    if snapshot is None:
        return None
    return json.dumps(snapshot, default=_json_default, sort_keys=True)


def record_audit(
    *,
    actor_user_id: int | None,
    action: str,
    resource_type: str,
    resource_id: int,
    before: dict | None = None,
    after: dict | None = None,
    occurred_at: Optional[datetime] = None,
) -> AuditLog:
    """
    Append one audit row to the current session.

    Does not commit; the caller's unit of work owns the transaction.
    """
    entry = AuditLog(
        actor_user_id=actor_user_id,
        action=action,
        resource_type=resource_type,
        resource_id=resource_id,
        before=_dump(before),
        after=_dump(after),
        occurred_at=occurred_at,  # if None, db default applies
    )
    db.session.add(entry)
    db.session.flush()
    return entry


def list_audit_events(resource_type: str, resource_id: int) -> list[AuditLog]:
    return (
        db.session.query(AuditLog)
        .filter_by(resource_type=resource_type, resource_id=resource_id)
        .order_by(AuditLog.id.asc())
        .all()
    )
