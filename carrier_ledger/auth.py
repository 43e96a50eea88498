import uuid
from dataclasses import dataclass
from enum import Enum

from fastapi import Depends, HTTPException, Request, status
from sqlalchemy.orm import Session

from carrier_ledger.db import get_db
from carrier_ledger.dependencies import get_bearer_token


class Role(str, Enum):
    ADMIN = 'ADMIN'
    MANAGER = 'MANAGER'
    OPERATOR = 'OPERATOR'


@dataclass
class Principal:
    id: uuid.UUID
    username: str
    role: Role
    store_id: uuid.UUID | None
    active: bool


def get_current_principal(request: Request, db: Session = Depends(get_db)) -> Principal:
    from carrier_ledger.security.sessions import load_principal_from_token

    principal = load_principal_from_token(db, get_bearer_token(request))
    if not principal:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, headers={'WWW-Authenticate': 'Bearer'})
    db.commit()
    if not principal.active:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
    request.state.principal = principal
    return principal


def is_admin_role(role: Role) -> bool:
    return role == Role.ADMIN


def require_role(*allowed: Role):
    def _dep(principal: Principal = Depends(get_current_principal)) -> Principal:
        if principal.role not in allowed:
            raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
        return principal

    return _dep


def assert_store_scope(principal: Principal, target_store_id: uuid.UUID) -> None:
    if is_admin_role(principal.role):
        return
    if principal.store_id != target_store_id:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN)
