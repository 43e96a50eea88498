from __future__ import annotations

import csv
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from io import StringIO

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from carrier_ledger.config import settings
from carrier_ledger.errors import LedgerConflictError, LedgerNotFoundError, LedgerValidationError
from carrier_ledger.models import (
    Carrier,
    DeliveryStatus,
    DispatchSession,
    DispatchSessionOrder,
    DispatchSessionStatus,
    Order,
    OrderStatus,
)
from carrier_ledger.services.audit_service import log_audit
from carrier_ledger.services.carrier_service import fee_for_order, get_active_carrier_config, get_store, zone_rates_for
from carrier_ledger.services.code_service import add_with_code
from carrier_ledger.services.dispatch_grouping_service import DISPATCHABLE_STATUSES
from carrier_ledger.services.money import ZERO, is_cod_order, parse_amount, quantize_money
from carrier_ledger.services.store_time import local_today, store_zone

logger = logging.getLogger(__name__)

FAILED_DELIVERY_STATUSES = (DeliveryStatus.NOT_DELIVERED, DeliveryStatus.REJECTED, DeliveryStatus.RETURNED)

EXPORT_COLUMNS = [
    'session_code',
    'order_number',
    'total_price',
    'is_cod',
    'carrier_fee',
    'delivery_zone',
    'delivery_status',
    'amount_collected',
    'failure_reason',
    'courier_notes',
]


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class DispatchResultRow:
    order_id: uuid.UUID | None = None
    order_number: str | None = None
    delivery_status: str | None = None
    delivered: bool | None = None
    amount_collected: Decimal | str | None = None
    failure_reason: str | None = None
    courier_notes: str | None = None


def validate_order_ids(order_ids: list[uuid.UUID], *, field: str = 'order_ids') -> list[uuid.UUID]:
    if not order_ids:
        raise LedgerValidationError('At least one order is required', field=field)
    if len(order_ids) > settings.max_orders_per_batch:
        raise LedgerValidationError(
            f'At most {settings.max_orders_per_batch} orders can be processed at once',
            field=field,
        )
    if len(set(order_ids)) != len(order_ids):
        raise LedgerValidationError('Order ids must be unique', field=field, code='DUPLICATE_ORDER_IDS')
    return list(order_ids)


def get_session_for_store(db: Session, *, store_id: uuid.UUID, session_id: uuid.UUID, lock: bool = False) -> DispatchSession:
    stmt = select(DispatchSession).where(DispatchSession.id == session_id, DispatchSession.store_id == store_id)
    if lock:
        stmt = stmt.with_for_update()
    dispatch_session = db.execute(stmt).scalar_one_or_none()
    if not dispatch_session:
        raise LedgerNotFoundError(
            'Dispatch session not found',
            code='SESSION_NOT_FOUND',
            details={'session_id': session_id},
        )
    return dispatch_session


def session_lines(db: Session, *, session_id: uuid.UUID) -> list[DispatchSessionOrder]:
    return db.execute(
        select(DispatchSessionOrder)
        .where(DispatchSessionOrder.session_id == session_id)
        .order_by(DispatchSessionOrder.order_number.asc())
    ).scalars().all()


def create_dispatch_session(
    db: Session,
    *,
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    order_ids: list[uuid.UUID],
    created_by: uuid.UUID | None,
    ip: str | None = None,
) -> DispatchSession:
    store = get_store(db, store_id)
    config = get_active_carrier_config(db, store_id=store_id, carrier_id=carrier_id)
    order_ids = validate_order_ids(order_ids)

    orders = db.execute(select(Order).where(Order.id.in_(order_ids), Order.store_id == store_id)).scalars().all()
    found = {order.id for order in orders}
    missing = [str(order_id) for order_id in order_ids if order_id not in found]
    if missing:
        raise LedgerNotFoundError('Some orders were not found', code='ORDER_NOT_FOUND', details={'order_ids': missing})

    ineligible = [
        order.order_number
        for order in orders
        if order.status not in DISPATCHABLE_STATUSES or order.reconciled_at is not None
    ]
    if ineligible:
        raise LedgerValidationError(
            'Some orders are not ready to be dispatched',
            field='order_ids',
            code='ORDER_NOT_DISPATCHABLE',
            details={'order_numbers': sorted(ineligible)},
        )
    already_claimed = [order.order_number for order in orders if order.active_dispatch_session_id is not None]
    if already_claimed:
        raise LedgerConflictError(
            'Some orders already belong to an open dispatch session',
            code='ORDER_ALREADY_DISPATCHED',
            details={'order_numbers': sorted(already_claimed)},
        )

    dispatch_date = local_today(store_zone(store))
    cod_total = sum(
        (order.total_price for order in orders if is_cod_order(is_prepaid=order.is_prepaid, payment_method=order.payment_method)),
        ZERO,
    )
    dispatch_session = DispatchSession(
        store_id=store_id,
        carrier_id=carrier_id,
        dispatch_date=dispatch_date,
        status=DispatchSessionStatus.OPEN,
        total_orders=len(orders),
        total_cod_expected=quantize_money(cod_total),
        created_by=created_by,
    )
    add_with_code(db, dispatch_session, on_date=dispatch_date)

    now = _now()
    claimed = db.execute(
        update(Order)
        .where(
            Order.id.in_(order_ids),
            Order.store_id == store_id,
            Order.active_dispatch_session_id.is_(None),
        )
        .values(
            active_dispatch_session_id=dispatch_session.id,
            carrier_id=carrier_id,
            status=OrderStatus.SHIPPED,
            shipped_at=now,
        )
        .execution_options(synchronize_session=False)
    )
    if claimed.rowcount != len(order_ids):
        logger.warning('dispatch claim lost a race: wanted %s orders, claimed %s', len(order_ids), claimed.rowcount)
        raise LedgerConflictError(
            'Some orders were claimed by another dispatch session',
            code='ORDER_ALREADY_DISPATCHED',
        )
    for order in orders:
        db.refresh(order)

    rates = zone_rates_for(db, store_id=store_id, carrier_id=carrier_id)
    db.add_all(
        [
            DispatchSessionOrder(
                session_id=dispatch_session.id,
                order_id=order.id,
                order_number=order.order_number,
                total_price=order.total_price,
                is_cod=is_cod_order(is_prepaid=order.is_prepaid, payment_method=order.payment_method),
                carrier_fee=fee_for_order(rates, config, city=order.shipping_city, zone=order.delivery_zone),
                delivery_zone=order.delivery_zone or order.shipping_city,
            )
            for order in orders
        ]
    )
    db.flush()

    log_audit(
        db,
        actor_principal_id=created_by,
        action='DISPATCH_SESSION_CREATE',
        store_id=store_id,
        ip=ip,
        metadata={
            'session_id': dispatch_session.id,
            'session_code': dispatch_session.session_code,
            'carrier_id': carrier_id,
            'order_count': len(orders),
        },
    )
    logger.info('dispatch session %s created with %s orders', dispatch_session.session_code, len(orders))
    return dispatch_session


def serialize_session(dispatch_session: DispatchSession, lines: list[DispatchSessionOrder] | None = None) -> dict:
    data = {
        'id': dispatch_session.id,
        'session_code': dispatch_session.session_code,
        'carrier_id': dispatch_session.carrier_id,
        'dispatch_date': dispatch_session.dispatch_date,
        'status': dispatch_session.status.value,
        'total_orders': dispatch_session.total_orders,
        'total_cod_expected': quantize_money(dispatch_session.total_cod_expected),
        'settlement_id': dispatch_session.settlement_id,
        'created_at': dispatch_session.created_at,
        'imported_at': dispatch_session.imported_at,
        'settled_at': dispatch_session.settled_at,
    }
    if lines is not None:
        data['orders'] = [
            {
                'order_id': line.order_id,
                'order_number': line.order_number,
                'total_price': quantize_money(line.total_price),
                'is_cod': line.is_cod,
                'carrier_fee': quantize_money(line.carrier_fee),
                'delivery_zone': line.delivery_zone,
                'delivery_status': line.delivery_status.value,
                'amount_collected': line.amount_collected,
                'failure_reason': line.failure_reason,
                'courier_notes': line.courier_notes,
            }
            for line in lines
        ]
    return data


def get_dispatch_session(db: Session, *, store_id: uuid.UUID, session_id: uuid.UUID) -> dict:
    dispatch_session = get_session_for_store(db, store_id=store_id, session_id=session_id)
    return serialize_session(dispatch_session, session_lines(db, session_id=session_id))


def list_dispatch_sessions(
    db: Session,
    *,
    store_id: uuid.UUID,
    status: DispatchSessionStatus | None = None,
    carrier_id: uuid.UUID | None = None,
) -> list[dict]:
    get_store(db, store_id)
    stmt = select(DispatchSession).where(DispatchSession.store_id == store_id)
    if status:
        stmt = stmt.where(DispatchSession.status == status)
    if carrier_id:
        stmt = stmt.where(DispatchSession.carrier_id == carrier_id)
    rows = db.execute(stmt.order_by(DispatchSession.created_at.desc())).scalars().all()
    return [serialize_session(row) for row in rows]


def _assert_session_mutable(dispatch_session: DispatchSession) -> None:
    if dispatch_session.status == DispatchSessionStatus.SETTLED:
        raise LedgerConflictError(
            'Dispatch session is already settled',
            code='ALREADY_SETTLED',
            details={'settlement_id': dispatch_session.settlement_id},
        )
    if dispatch_session.status == DispatchSessionStatus.CANCELLED:
        raise LedgerConflictError('Dispatch session was cancelled', code='SESSION_CANCELLED')


def _resolve_status(row: DispatchResultRow) -> DeliveryStatus:
    if row.delivery_status:
        try:
            status = DeliveryStatus(row.delivery_status.strip().upper())
        except ValueError as exc:
            raise LedgerValidationError(f'Unknown delivery status {row.delivery_status!r}', field='delivery_status') from exc
    elif row.delivered is not None:
        status = DeliveryStatus.DELIVERED if row.delivered else DeliveryStatus.NOT_DELIVERED
    else:
        raise LedgerValidationError('delivery_status is required', field='delivery_status')
    if status == DeliveryStatus.PENDING:
        raise LedgerValidationError('delivery_status cannot be pending', field='delivery_status')
    return status


def import_dispatch_results(
    db: Session,
    *,
    store_id: uuid.UUID,
    session_id: uuid.UUID,
    rows: list[DispatchResultRow],
    actor_principal_id: uuid.UUID | None,
    ip: str | None = None,
) -> dict:
    dispatch_session = get_session_for_store(db, store_id=store_id, session_id=session_id, lock=True)
    _assert_session_mutable(dispatch_session)
    if not rows:
        raise LedgerValidationError('At least one result row is required', field='rows')
    if len(rows) > settings.max_import_rows:
        raise LedgerValidationError(f'At most {settings.max_import_rows} rows can be imported at once', field='rows')

    lines = session_lines(db, session_id=session_id)
    by_id = {line.order_id: line for line in lines}
    by_number = {line.order_number.strip().lower(): line for line in lines}

    applied = 0
    skipped = 0
    errors: list[dict] = []
    warnings: list[dict] = []
    now = _now()

    for index, row in enumerate(rows):
        label = row.order_number or (str(row.order_id) if row.order_id else None)
        line = by_id.get(row.order_id) if row.order_id else None
        if line is None and row.order_number:
            line = by_number.get(row.order_number.strip().lower())
        if line is None:
            errors.append({'row': index, 'order': label, 'error': 'Order is not part of this dispatch session'})
            continue

        try:
            status = _resolve_status(row)
            delivered = status == DeliveryStatus.DELIVERED
            if delivered and line.is_cod:
                if row.amount_collected is None or str(row.amount_collected).strip() == '':
                    amount = quantize_money(line.total_price)
                else:
                    amount = parse_amount(row.amount_collected, field='amount_collected')
            else:
                amount = ZERO
                if row.amount_collected not in (None, '') and parse_amount(row.amount_collected, field='amount_collected') > 0:
                    reason = 'prepaid order' if delivered else 'undelivered order'
                    warnings.append(
                        {
                            'row': index,
                            'order': line.order_number,
                            'warning': f'Collected amount ignored for {reason}',
                        }
                    )
        except LedgerValidationError as exc:
            errors.append({'row': index, 'order': line.order_number, 'error': exc.message})
            continue

        if delivered and line.is_cod and amount != quantize_money(line.total_price):
            warnings.append(
                {
                    'row': index,
                    'order': line.order_number,
                    'warning': f'Collected {amount} differs from order total {quantize_money(line.total_price)}',
                }
            )

        failure_reason = None if delivered else (row.failure_reason or '').strip() or None
        notes = (row.courier_notes or '').strip() or None
        unchanged = (
            line.delivery_status == status
            and line.amount_collected is not None
            and quantize_money(line.amount_collected) == amount
            and line.failure_reason == failure_reason
            and (notes is None or line.courier_notes == notes)
        )
        if unchanged:
            skipped += 1
            continue

        line.delivery_status = status
        line.amount_collected = amount
        line.failure_reason = failure_reason
        if notes is not None:
            line.courier_notes = notes
        line.processed_at = now
        applied += 1

    if applied:
        dispatch_session.status = DispatchSessionStatus.RESULTS_IMPORTED
        dispatch_session.imported_at = now
    db.flush()

    log_audit(
        db,
        actor_principal_id=actor_principal_id,
        action='DISPATCH_RESULTS_IMPORT',
        store_id=store_id,
        ip=ip,
        metadata={
            'session_id': session_id,
            'applied': applied,
            'skipped': skipped,
            'failed': len(errors),
        },
    )
    logger.info(
        'results import for %s: applied=%s skipped=%s failed=%s',
        dispatch_session.session_code,
        applied,
        skipped,
        len(errors),
    )
    return {
        'session_id': session_id,
        'status': dispatch_session.status.value,
        'applied': applied,
        'skipped': skipped,
        'failed': len(errors),
        'errors': errors,
        'warnings': warnings,
    }


def release_claims(db: Session, *, session_id: uuid.UUID, order_ids: list[uuid.UUID] | None = None, status: OrderStatus | None = None) -> int:
    stmt = update(Order).where(Order.active_dispatch_session_id == session_id)
    if order_ids is not None:
        stmt = stmt.where(Order.id.in_(order_ids))
    values: dict = {'active_dispatch_session_id': None}
    if status is not None:
        values['status'] = status
    result = db.execute(stmt.values(**values).execution_options(synchronize_session='evaluate'))
    return result.rowcount


def cancel_dispatch_session(
    db: Session,
    *,
    store_id: uuid.UUID,
    session_id: uuid.UUID,
    actor_principal_id: uuid.UUID | None,
    ip: str | None = None,
) -> DispatchSession:
    dispatch_session = get_session_for_store(db, store_id=store_id, session_id=session_id, lock=True)
    _assert_session_mutable(dispatch_session)

    # Orders of an imported session already left the warehouse; they stay SHIPPED
    # and can still be settled through a delivery reconciliation.
    imported = dispatch_session.status == DispatchSessionStatus.RESULTS_IMPORTED
    released = release_claims(db, session_id=session_id, status=None if imported else OrderStatus.READY_TO_SHIP)
    dispatch_session.status = DispatchSessionStatus.CANCELLED
    dispatch_session.cancelled_at = _now()
    db.flush()

    log_audit(
        db,
        actor_principal_id=actor_principal_id,
        action='DISPATCH_SESSION_CANCEL',
        store_id=store_id,
        ip=ip,
        metadata={
            'session_id': session_id,
            'session_code': dispatch_session.session_code,
            'released': released,
            'after_import': imported,
        },
    )
    logger.info('dispatch session %s cancelled, %s orders released', dispatch_session.session_code, released)
    return dispatch_session


def export_dispatch_csv(db: Session, *, store_id: uuid.UUID, session_id: uuid.UUID) -> tuple[str, bytes]:
    dispatch_session = get_session_for_store(db, store_id=store_id, session_id=session_id)
    carrier_name = db.execute(select(Carrier.name).where(Carrier.id == dispatch_session.carrier_id)).scalar_one_or_none()

    sio = StringIO()
    writer = csv.writer(sio)
    writer.writerow(['carrier', carrier_name or '', 'dispatch_date', dispatch_session.dispatch_date.isoformat()])
    writer.writerow(EXPORT_COLUMNS)
    for line in session_lines(db, session_id=session_id):
        writer.writerow(
            [
                dispatch_session.session_code,
                line.order_number,
                f'{quantize_money(line.total_price)}',
                'yes' if line.is_cod else 'no',
                f'{quantize_money(line.carrier_fee)}',
                line.delivery_zone or '',
                line.delivery_status.value.lower(),
                '' if line.amount_collected is None else f'{quantize_money(line.amount_collected)}',
                line.failure_reason or '',
                line.courier_notes or '',
            ]
        )
    filename = f'{dispatch_session.session_code}.csv'
    return filename, sio.getvalue().encode('utf-8')
