from __future__ import annotations

import uuid
from datetime import date

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from carrier_ledger.auth import Principal, Role, assert_store_scope, require_role
from carrier_ledger.db import get_db
from carrier_ledger.dependencies import get_client_ip
from carrier_ledger.models import SettlementStatus
from carrier_ledger.schemas import CompleteSettlementRequest, DeliveryReconciliationRequest, PaySettlementRequest
from carrier_ledger.serialization import to_jsonable
from carrier_ledger.services.carrier_service import coerce_choice
from carrier_ledger.services.settlement_service import (
    DeliveryOutcome,
    complete_settlement,
    get_pending_by_carrier,
    get_settlement,
    get_settlements_summary,
    list_settlements,
    pay_settlement,
    process_delivery_reconciliation,
    serialize_settlement,
)

router = APIRouter(prefix='/stores/{store_id}/settlements', tags=['settlements'])
operator_access = require_role(Role.ADMIN, Role.MANAGER, Role.OPERATOR)
manager_access = require_role(Role.ADMIN, Role.MANAGER)


@router.post('/delivery-reconciliation', status_code=status.HTTP_201_CREATED)
def reconcile_deliveries(
    store_id: uuid.UUID,
    payload: DeliveryReconciliationRequest,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    result = process_delivery_reconciliation(
        db,
        store_id=store_id,
        carrier_id=payload.carrier_id,
        delivery_date=payload.delivery_date,
        orders=[DeliveryOutcome(**item.model_dump()) for item in payload.orders],
        total_amount_collected=payload.total_amount_collected,
        created_by=principal.id,
        discrepancy_notes=payload.discrepancy_notes,
        confirm_discrepancy=payload.confirm_discrepancy,
    )
    db.commit()
    return to_jsonable(result)


@router.get('')
def settlements_index(
    store_id: uuid.UUID,
    carrier_id: uuid.UUID | None = None,
    status_filter: str | None = None,
    from_date: date | None = None,
    to_date: date | None = None,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    settlement_status = coerce_choice(SettlementStatus, status_filter, field='status_filter') if status_filter else None
    settlements = list_settlements(
        db,
        store_id=store_id,
        carrier_id=carrier_id,
        status=settlement_status,
        from_date=from_date,
        to_date=to_date,
    )
    return to_jsonable({'settlements': settlements})


@router.get('/summary')
def settlements_summary(
    store_id: uuid.UUID,
    carrier_id: uuid.UUID | None = None,
    from_date: date | None = None,
    to_date: date | None = None,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    summary = get_settlements_summary(
        db,
        store_id=store_id,
        carrier_id=carrier_id,
        from_date=from_date,
        to_date=to_date,
    )
    return to_jsonable(summary)


@router.get('/pending-by-carrier')
def pending_by_carrier(
    store_id: uuid.UUID,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    return to_jsonable({'carriers': get_pending_by_carrier(db, store_id=store_id)})


@router.get('/{settlement_id}')
def settlement_detail(
    store_id: uuid.UUID,
    settlement_id: uuid.UUID,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    return to_jsonable(get_settlement(db, store_id=store_id, settlement_id=settlement_id))


@router.post('/{settlement_id}/complete')
def complete(
    store_id: uuid.UUID,
    settlement_id: uuid.UUID,
    payload: CompleteSettlementRequest,
    request: Request,
    principal: Principal = Depends(manager_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    settlement = complete_settlement(
        db,
        store_id=store_id,
        settlement_id=settlement_id,
        notes=payload.notes,
        actor_principal_id=principal.id,
        ip=get_client_ip(request),
    )
    db.commit()
    return to_jsonable(serialize_settlement(settlement))


@router.post('/{settlement_id}/pay')
def pay(
    store_id: uuid.UUID,
    settlement_id: uuid.UUID,
    payload: PaySettlementRequest,
    request: Request,
    principal: Principal = Depends(manager_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    result = pay_settlement(
        db,
        store_id=store_id,
        settlement_id=settlement_id,
        amount=payload.amount,
        method=payload.method,
        payment_reference=payload.payment_reference,
        notes=payload.notes,
        idempotency_key=payload.idempotency_key,
        created_by=principal.id,
        ip=get_client_ip(request),
    )
    db.commit()
    return to_jsonable(result)
