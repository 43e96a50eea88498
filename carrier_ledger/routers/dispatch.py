from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Request, status
from fastapi.responses import StreamingResponse
from sqlalchemy.orm import Session

from carrier_ledger.auth import Principal, Role, assert_store_scope, require_role
from carrier_ledger.db import get_db
from carrier_ledger.dependencies import get_client_ip
from carrier_ledger.models import DispatchSessionStatus
from carrier_ledger.schemas import CreateDispatchSessionRequest, ImportResultsRequest, ProcessSettlementRequest
from carrier_ledger.serialization import to_jsonable
from carrier_ledger.services.carrier_service import coerce_choice
from carrier_ledger.services.dispatch_grouping_service import (
    orders_to_dispatch,
    pending_reconciliation,
    shipped_orders_grouped,
)
from carrier_ledger.services.dispatch_session_service import (
    DispatchResultRow,
    cancel_dispatch_session,
    create_dispatch_session,
    export_dispatch_csv,
    get_dispatch_session,
    import_dispatch_results,
    list_dispatch_sessions,
)
from carrier_ledger.services.settlement_service import process_settlement

router = APIRouter(prefix='/stores/{store_id}/dispatch', tags=['dispatch'])
operator_access = require_role(Role.ADMIN, Role.MANAGER, Role.OPERATOR)


@router.get('/orders-to-dispatch')
def list_orders_to_dispatch(
    store_id: uuid.UUID,
    carrier_id: uuid.UUID | None = None,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    return to_jsonable({'orders': orders_to_dispatch(db, store_id=store_id, carrier_id=carrier_id)})


@router.get('/shipped-orders-grouped')
def list_shipped_orders_grouped(
    store_id: uuid.UUID,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    return to_jsonable({'groups': shipped_orders_grouped(db, store_id=store_id)})


@router.get('/pending-reconciliation')
def list_pending_reconciliation(
    store_id: uuid.UUID,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    return to_jsonable({'groups': pending_reconciliation(db, store_id=store_id)})


@router.get('/sessions')
def list_sessions(
    store_id: uuid.UUID,
    status_filter: str | None = None,
    carrier_id: uuid.UUID | None = None,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    session_status = coerce_choice(DispatchSessionStatus, status_filter, field='status_filter') if status_filter else None
    sessions = list_dispatch_sessions(db, store_id=store_id, status=session_status, carrier_id=carrier_id)
    return to_jsonable({'sessions': sessions})


@router.post('/sessions', status_code=status.HTTP_201_CREATED)
def create_session(
    store_id: uuid.UUID,
    payload: CreateDispatchSessionRequest,
    request: Request,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    dispatch_session = create_dispatch_session(
        db,
        store_id=store_id,
        carrier_id=payload.carrier_id,
        order_ids=payload.order_ids,
        created_by=principal.id,
        ip=get_client_ip(request),
    )
    db.commit()
    return to_jsonable(
        {
            'id': dispatch_session.id,
            'session_code': dispatch_session.session_code,
            'status': dispatch_session.status,
            'total_orders': dispatch_session.total_orders,
            'total_cod_expected': dispatch_session.total_cod_expected,
        }
    )


@router.get('/sessions/{session_id}')
def session_detail(
    store_id: uuid.UUID,
    session_id: uuid.UUID,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    return to_jsonable(get_dispatch_session(db, store_id=store_id, session_id=session_id))


@router.post('/sessions/{session_id}/import')
def import_results(
    store_id: uuid.UUID,
    session_id: uuid.UUID,
    payload: ImportResultsRequest,
    request: Request,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    rows = [DispatchResultRow(**row.model_dump()) for row in payload.rows]
    result = import_dispatch_results(
        db,
        store_id=store_id,
        session_id=session_id,
        rows=rows,
        actor_principal_id=principal.id,
        ip=get_client_ip(request),
    )
    db.commit()
    return to_jsonable(result)


@router.post('/sessions/{session_id}/process')
def process_session(
    store_id: uuid.UUID,
    session_id: uuid.UUID,
    payload: ProcessSettlementRequest,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    result = process_settlement(
        db,
        store_id=store_id,
        session_id=session_id,
        created_by=principal.id,
        confirm_discrepancy=payload.confirm_discrepancy,
        notes=payload.notes,
    )
    db.commit()
    return to_jsonable(result)


@router.post('/sessions/{session_id}/cancel')
def cancel_session(
    store_id: uuid.UUID,
    session_id: uuid.UUID,
    request: Request,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    dispatch_session = cancel_dispatch_session(
        db,
        store_id=store_id,
        session_id=session_id,
        actor_principal_id=principal.id,
        ip=get_client_ip(request),
    )
    db.commit()
    return to_jsonable({'id': dispatch_session.id, 'status': dispatch_session.status})


@router.get('/sessions/{session_id}/export')
def export_session(
    store_id: uuid.UUID,
    session_id: uuid.UUID,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    filename, content = export_dispatch_csv(db, store_id=store_id, session_id=session_id)
    return StreamingResponse(
        iter([content]),
        media_type='text/csv',
        headers={'Content-Disposition': f'attachment; filename={filename}'},
    )
