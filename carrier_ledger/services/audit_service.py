from __future__ import annotations

import uuid

from sqlalchemy.orm import Session

from carrier_ledger.models import AuditLog, AuthEvent
from carrier_ledger.serialization import to_jsonable


def log_auth_event(
    db: Session,
    *,
    attempted_username: str,
    success: bool,
    ip: str | None,
    user_agent: str | None,
    principal_id: uuid.UUID | None = None,
    failure_reason: str | None = None,
) -> None:
    db.add(
        AuthEvent(
            attempted_username=attempted_username,
            success=success,
            failure_reason=failure_reason,
            principal_id=principal_id,
            ip=ip,
            user_agent=user_agent,
        )
    )


def log_audit(
    db: Session,
    *,
    actor_principal_id: uuid.UUID | None,
    action: str,
    store_id: uuid.UUID | None,
    ip: str | None = None,
    metadata: dict | None = None,
) -> None:
    db.add(
        AuditLog(
            actor_principal_id=actor_principal_id,
            action=action,
            store_id=store_id,
            ip=ip,
            meta=to_jsonable(metadata or {}),
        )
    )
