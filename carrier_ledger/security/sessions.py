from __future__ import annotations

import hashlib
import secrets
import uuid
from datetime import datetime, timedelta, timezone

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from carrier_ledger.auth import Principal, Role
from carrier_ledger.config import settings
from carrier_ledger.models import Principal as PrincipalModel
from carrier_ledger.models import WebSession
from carrier_ledger.services.store_time import as_utc


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _session_expiry() -> datetime:
    return _now() + timedelta(minutes=settings.session_ttl_minutes)


def token_digest(token: str) -> str:
    return hashlib.sha256(token.encode('utf-8')).hexdigest()


def create_web_session(db: Session, principal_id: uuid.UUID, ip: str | None, user_agent: str | None) -> str:
    """Only the digest is stored; the raw bearer token is returned once to the caller."""
    token = secrets.token_urlsafe(48)
    db.add(
        WebSession(
            token_hash=token_digest(token),
            principal_id=principal_id,
            ip=ip,
            user_agent=user_agent,
            expires_at=_session_expiry(),
        )
    )
    db.flush()
    return token


def revoke_web_session(db: Session, token: str) -> bool:
    result = db.execute(
        update(WebSession)
        .where(WebSession.token_hash == token_digest(token), WebSession.revoked_at.is_(None))
        .values(revoked_at=_now())
        .execution_options(synchronize_session=False)
    )
    return bool(result.rowcount)


def load_principal_from_token(db: Session, token: str | None) -> Principal | None:
    if not token:
        return None

    row = db.execute(
        select(WebSession, PrincipalModel)
        .join(PrincipalModel, PrincipalModel.id == WebSession.principal_id)
        .where(WebSession.token_hash == token_digest(token))
    ).one_or_none()
    if not row:
        return None

    web_session, principal = row
    now = _now()
    if web_session.revoked_at is not None or as_utc(web_session.expires_at) <= now:
        return None

    web_session.last_seen_at = now
    web_session.expires_at = _session_expiry()
    return Principal(
        id=principal.id,
        username=principal.username,
        role=Role(principal.role.value),
        store_id=principal.store_id,
        active=principal.active,
    )
