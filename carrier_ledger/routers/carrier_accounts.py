from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from carrier_ledger.auth import Principal, Role, assert_store_scope, require_role
from carrier_ledger.db import get_db
from carrier_ledger.dependencies import get_client_ip
from carrier_ledger.schemas import AdjustmentRequest, BackfillRequest, PaymentRequest
from carrier_ledger.serialization import to_jsonable
from carrier_ledger.services.ledger_health_service import backfill_carrier_movements, check_movement_health
from carrier_ledger.services.ledger_service import (
    create_adjustment_movement,
    get_carrier_balance_summary,
    get_carrier_balances,
    get_unsettled_movements,
    serialize_movement,
)
from carrier_ledger.services.payment_service import list_carrier_payments, register_carrier_payment

router = APIRouter(prefix='/stores/{store_id}/carrier-accounts', tags=['carrier-accounts'])
operator_access = require_role(Role.ADMIN, Role.MANAGER, Role.OPERATOR)
manager_access = require_role(Role.ADMIN, Role.MANAGER)


@router.get('/balances')
def balances(
    store_id: uuid.UUID,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    return to_jsonable({'carriers': get_carrier_balances(db, store_id=store_id)})


@router.get('/unsettled')
def unsettled(
    store_id: uuid.UUID,
    carrier_id: uuid.UUID | None = None,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    return to_jsonable({'movements': get_unsettled_movements(db, store_id=store_id, carrier_id=carrier_id)})


@router.get('/payments')
def payments_index(
    store_id: uuid.UUID,
    carrier_id: uuid.UUID | None = None,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    return to_jsonable({'payments': list_carrier_payments(db, store_id=store_id, carrier_id=carrier_id)})


@router.post('/payments', status_code=status.HTTP_201_CREATED)
def register_payment(
    store_id: uuid.UUID,
    payload: PaymentRequest,
    request: Request,
    principal: Principal = Depends(manager_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    result = register_carrier_payment(
        db,
        store_id=store_id,
        carrier_id=payload.carrier_id,
        amount=payload.amount,
        direction=payload.direction,
        method=payload.method,
        payment_reference=payload.payment_reference,
        notes=payload.notes,
        settlement_ids=payload.settlement_ids,
        movement_ids=payload.movement_ids,
        idempotency_key=payload.idempotency_key,
        created_by=principal.id,
        ip=get_client_ip(request),
    )
    db.commit()
    return to_jsonable(result)


@router.get('/movement-health')
def movement_health(
    store_id: uuid.UUID,
    principal: Principal = Depends(manager_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    return to_jsonable(check_movement_health(db, store_id=store_id))


@router.post('/backfill')
def backfill(
    store_id: uuid.UUID,
    payload: BackfillRequest,
    principal: Principal = Depends(manager_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    result = backfill_carrier_movements(
        db,
        store_id=store_id,
        dry_run=payload.dry_run,
        actor_principal_id=principal.id,
    )
    if payload.dry_run:
        db.rollback()
    else:
        db.commit()
    return to_jsonable(result)


@router.get('/{carrier_id}/balance')
def carrier_balance(
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    from_date: date | None = None,
    to_date: date | None = None,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    summary = get_carrier_balance_summary(
        db,
        store_id=store_id,
        carrier_id=carrier_id,
        from_date=from_date,
        to_date=to_date,
    )
    return to_jsonable(summary)


@router.post('/{carrier_id}/adjustments', status_code=status.HTTP_201_CREATED)
def create_adjustment(
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    payload: AdjustmentRequest,
    request: Request,
    principal: Principal = Depends(manager_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    movement = create_adjustment_movement(
        db,
        store_id=store_id,
        carrier_id=carrier_id,
        amount=payload.amount,
        adjustment_type=payload.type,
        description=payload.description,
        created_by=principal.id,
        ip=get_client_ip(request),
    )
    db.commit()
    return to_jsonable(serialize_movement(movement))
