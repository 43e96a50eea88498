from __future__ import annotations

from fastapi import APIRouter, Depends, HTTPException, Request, status
from sqlalchemy import select
from sqlalchemy.orm import Session

from carrier_ledger.config import settings
from carrier_ledger.db import get_db
from carrier_ledger.dependencies import get_bearer_token, get_client_ip
from carrier_ledger.models import Principal as PrincipalModel
from carrier_ledger.schemas import LoginRequest
from carrier_ledger.security.passwords import check_password
from carrier_ledger.security.sessions import create_web_session, load_principal_from_token, revoke_web_session
from carrier_ledger.services.audit_service import log_audit, log_auth_event

router = APIRouter(prefix='/auth', tags=['auth'])


def _reject(db: Session, *, username: str, reason: str, principal_id, ip, user_agent) -> HTTPException:
    log_auth_event(
        db,
        attempted_username=username,
        success=False,
        failure_reason=reason,
        principal_id=principal_id,
        ip=ip,
        user_agent=user_agent,
    )
    db.commit()
    return HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail='Invalid username or password')


@router.post('/login')
def login(payload: LoginRequest, request: Request, db: Session = Depends(get_db)):
    username = payload.username.strip()
    ip = get_client_ip(request)
    user_agent = request.headers.get('user-agent')

    principal = db.execute(select(PrincipalModel).where(PrincipalModel.username == username)).scalar_one_or_none()
    if not principal:
        raise _reject(db, username=username, reason='UNKNOWN_USERNAME', principal_id=None, ip=ip, user_agent=user_agent)
    if not principal.active:
        raise _reject(
            db, username=username, reason='INACTIVE_PRINCIPAL', principal_id=principal.id, ip=ip, user_agent=user_agent
        )
    valid, refreshed_hash = check_password(payload.password, principal.password_hash)
    if not valid:
        raise _reject(db, username=username, reason='BAD_PASSWORD', principal_id=principal.id, ip=ip, user_agent=user_agent)
    if refreshed_hash:
        principal.password_hash = refreshed_hash

    token = create_web_session(db, principal.id, ip=ip, user_agent=user_agent)
    log_auth_event(
        db,
        attempted_username=username,
        success=True,
        failure_reason=None,
        principal_id=principal.id,
        ip=ip,
        user_agent=user_agent,
    )
    log_audit(
        db,
        actor_principal_id=principal.id,
        action='AUTH_LOGIN',
        store_id=principal.store_id,
        ip=ip,
        metadata={'username': username},
    )
    db.commit()
    return {
        'access_token': token,
        'token_type': 'bearer',
        'expires_in': settings.session_ttl_minutes * 60,
        'role': principal.role.value,
        'store_id': str(principal.store_id) if principal.store_id else None,
    }


@router.post('/logout', status_code=status.HTTP_204_NO_CONTENT)
def logout(request: Request, db: Session = Depends(get_db)):
    token = get_bearer_token(request)
    principal = load_principal_from_token(db, token)
    if token:
        revoke_web_session(db, token)

    log_audit(
        db,
        actor_principal_id=principal.id if principal else None,
        action='AUTH_LOGOUT',
        store_id=principal.store_id if principal else None,
        ip=get_client_ip(request),
        metadata={},
    )
    db.commit()
