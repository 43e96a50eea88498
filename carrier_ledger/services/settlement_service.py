from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from carrier_ledger.config import settings
from carrier_ledger.errors import LedgerConflictError, LedgerNotFoundError, LedgerValidationError
from carrier_ledger.models import (
    Carrier,
    CarrierAccountMovement,
    DeliveryStatus,
    DispatchSession,
    DispatchSessionStatus,
    Order,
    OrderStatus,
    Settlement,
    SettlementOrder,
    SettlementSource,
    SettlementStatus,
)
from carrier_ledger.services.audit_service import log_audit
from carrier_ledger.services.carrier_service import (
    fee_for_order,
    get_active_carrier_config,
    get_store,
    zone_rates_for,
)
from carrier_ledger.services.dispatch_session_service import (
    FAILED_DELIVERY_STATUSES,
    get_session_for_store,
    release_claims,
    session_lines,
    validate_order_ids,
)
from carrier_ledger.services.ledger_service import serialize_movement
from carrier_ledger.services.money import (
    ZERO,
    distribute_collected,
    failed_attempt_fee,
    is_cod_order,
    parse_amount,
    quantize_money,
)
from carrier_ledger.services.payment_service import register_carrier_payment
from carrier_ledger.services.settlement_engine import DraftLine, SettlementDraft, SettlementTotals, persist_settlement
from carrier_ledger.services.store_time import local_date, store_zone

logger = logging.getLogger(__name__)

RECONCILABLE_STATUSES = (OrderStatus.SHIPPED, OrderStatus.IN_TRANSIT, OrderStatus.DELIVERED)
MAX_NOTES_LENGTH = 1000


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class DeliveryOutcome:
    order_id: uuid.UUID
    delivered: bool
    failure_reason: str | None = None


def _clean_notes(notes: str | None) -> str | None:
    text = (notes or '').strip()
    if len(text) > MAX_NOTES_LENGTH:
        raise LedgerValidationError(f'Notes must be at most {MAX_NOTES_LENGTH} characters', field='discrepancy_notes')
    return text or None


def _result(settlement: Settlement, totals: SettlementTotals, warnings: list[str]) -> dict:
    return {
        'settlement_id': settlement.id,
        'settlement_code': settlement.settlement_code,
        'status': totals.status.value,
        'total_orders': totals.total_orders,
        'total_delivered': totals.total_delivered,
        'total_not_delivered': totals.total_not_delivered,
        'expected_cash': totals.expected_cash,
        'collected_cash': totals.collected_cash,
        'difference': totals.difference,
        'total_carrier_fees': totals.total_carrier_fees,
        'failed_attempt_fees': totals.failed_attempt_fees,
        'net_receivable': totals.net_receivable,
        'warnings': warnings,
    }


def process_settlement(
    db: Session,
    *,
    store_id: uuid.UUID,
    session_id: uuid.UUID,
    created_by: uuid.UUID | None,
    confirm_discrepancy: bool = False,
    notes: str | None = None,
) -> dict:
    dispatch_session = get_session_for_store(db, store_id=store_id, session_id=session_id, lock=True)
    if dispatch_session.status == DispatchSessionStatus.SETTLED:
        raise LedgerConflictError(
            'Dispatch session is already settled',
            code='ALREADY_SETTLED',
            details={'settlement_id': dispatch_session.settlement_id},
        )
    if dispatch_session.status == DispatchSessionStatus.CANCELLED:
        raise LedgerConflictError('Dispatch session was cancelled', code='SESSION_CANCELLED')
    if dispatch_session.status != DispatchSessionStatus.RESULTS_IMPORTED:
        raise LedgerConflictError(
            'Delivery results must be imported before settling',
            code='RESULTS_NOT_IMPORTED',
        )

    config = get_active_carrier_config(db, store_id=store_id, carrier_id=dispatch_session.carrier_id)
    notes = _clean_notes(notes)
    warnings: list[str] = []
    lines: list[DraftLine] = []
    pending_ids: list[uuid.UUID] = []

    for line in session_lines(db, session_id=session_id):
        if line.delivery_status == DeliveryStatus.PENDING:
            pending_ids.append(line.order_id)
            warnings.append(f'Order {line.order_number} has no delivery result and was left out')
            continue
        delivered = line.delivery_status == DeliveryStatus.DELIVERED
        failed_fee = ZERO
        if line.delivery_status in FAILED_DELIVERY_STATUSES and config.charges_failed_attempts:
            failed_fee = failed_attempt_fee(line.carrier_fee, config.failed_attempt_fee_percent)
        lines.append(
            DraftLine(
                order_id=line.order_id,
                order_number=line.order_number,
                order_total=quantize_money(line.total_price),
                is_cod=line.is_cod,
                delivered=delivered,
                amount_collected=quantize_money(line.amount_collected or ZERO) if delivered and line.is_cod else ZERO,
                carrier_fee=quantize_money(line.carrier_fee) if delivered else ZERO,
                failed_attempt_fee=failed_fee,
                failure_reason=line.failure_reason,
            )
        )

    if not lines:
        raise LedgerValidationError('No orders in this session have delivery results', field='session_id', code='NO_RESULTS')

    if pending_ids:
        release_claims(db, session_id=session_id, order_ids=pending_ids)

    draft = SettlementDraft(
        store_id=store_id,
        carrier_id=dispatch_session.carrier_id,
        settlement_date=dispatch_session.dispatch_date,
        source=SettlementSource.DISPATCH_SESSION,
        granularity=config.movement_granularity,
        lines=tuple(lines),
        created_by=created_by,
        dispatch_session_id=dispatch_session.id,
        confirm_discrepancy=confirm_discrepancy,
        notes=notes,
        warnings=tuple(warnings),
    )
    settlement, totals = persist_settlement(db, draft)

    dispatch_session.status = DispatchSessionStatus.SETTLED
    dispatch_session.settlement_id = settlement.id
    dispatch_session.settled_at = _now()
    db.flush()
    return _result(settlement, totals, warnings)


def process_delivery_reconciliation(
    db: Session,
    *,
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    delivery_date: date,
    orders: list[DeliveryOutcome],
    total_amount_collected,
    created_by: uuid.UUID | None,
    discrepancy_notes: str | None = None,
    confirm_discrepancy: bool = False,
) -> dict:
    store = get_store(db, store_id)
    config = get_active_carrier_config(db, store_id=store_id, carrier_id=carrier_id)
    order_ids = validate_order_ids([outcome.order_id for outcome in orders], field='orders')
    collected_total = parse_amount(total_amount_collected, field='total_amount_collected')
    notes = _clean_notes(discrepancy_notes)

    rows = db.execute(
        select(Order).where(Order.id.in_(order_ids), Order.store_id == store_id).with_for_update()
    ).scalars().all()
    by_id = {order.id: order for order in rows}
    missing = [str(order_id) for order_id in order_ids if order_id not in by_id]
    if missing:
        raise LedgerNotFoundError('Some orders were not found', code='ORDER_NOT_FOUND', details={'order_ids': missing})

    wrong_carrier = sorted(o.order_number for o in rows if o.carrier_id != carrier_id)
    if wrong_carrier:
        raise LedgerValidationError(
            'Some orders belong to a different carrier',
            field='orders',
            code='ORDER_CARRIER_MISMATCH',
            details={'order_numbers': wrong_carrier},
        )
    wrong_status = sorted(o.order_number for o in rows if o.status not in RECONCILABLE_STATUSES)
    if wrong_status:
        raise LedgerValidationError(
            'Some orders are not in a reconcilable status',
            field='orders',
            code='ORDER_NOT_RECONCILABLE',
            details={'order_numbers': wrong_status},
        )
    reconciled = sorted(o.order_number for o in rows if o.reconciled_at is not None)
    if reconciled:
        raise LedgerConflictError(
            'Some orders were already reconciled',
            code='ORDER_ALREADY_RECONCILED',
            details={'order_numbers': reconciled},
        )
    in_session = sorted(o.order_number for o in rows if o.active_dispatch_session_id is not None)
    if in_session:
        open_sessions = db.execute(
            select(DispatchSession.session_code).where(
                DispatchSession.id.in_({o.active_dispatch_session_id for o in rows if o.active_dispatch_session_id}),
                DispatchSession.status.in_((DispatchSessionStatus.OPEN, DispatchSessionStatus.RESULTS_IMPORTED)),
            )
        ).scalars().all()
        raise LedgerConflictError(
            'Some orders are part of an open dispatch session',
            code='ORDER_IN_OPEN_SESSION',
            details={'order_numbers': in_session, 'session_codes': sorted(open_sessions)},
        )

    zone = store_zone(store)
    rates = zone_rates_for(db, store_id=store_id, carrier_id=carrier_id)
    warnings: list[str] = []
    outcomes = [(by_id[outcome.order_id], outcome) for outcome in orders]

    cod_delivered = [
        order
        for order, outcome in outcomes
        if outcome.delivered and is_cod_order(is_prepaid=order.is_prepaid, payment_method=order.payment_method)
    ]
    if collected_total > 0 and not cod_delivered:
        raise LedgerValidationError(
            'Cash was collected but no cash-on-delivery order was delivered',
            field='total_amount_collected',
            code='NO_COD_DELIVERIES',
        )
    distributed = dict(
        zip(
            [order.id for order in cod_delivered],
            distribute_collected([quantize_money(order.total_price) for order in cod_delivered], collected_total),
        )
    )

    lines: list[DraftLine] = []
    for order, outcome in outcomes:
        cod = is_cod_order(is_prepaid=order.is_prepaid, payment_method=order.payment_method)
        fee = fee_for_order(rates, config, city=order.shipping_city, zone=order.delivery_zone)
        if outcome.delivered:
            if order.delivered_at is None:
                warnings.append(f'Order {order.order_number} has no delivery timestamp')
            event_day = local_date(order.delivered_at or order.shipped_at, zone)
        else:
            event_day = local_date(order.shipped_at, zone)
        if event_day is not None and event_day != delivery_date:
            warnings.append(f'Order {order.order_number} belongs to {event_day.isoformat()}, not {delivery_date.isoformat()}')

        failed_fee = ZERO
        if not outcome.delivered and config.charges_failed_attempts:
            failed_fee = failed_attempt_fee(fee, config.failed_attempt_fee_percent)
        lines.append(
            DraftLine(
                order_id=order.id,
                order_number=order.order_number,
                order_total=quantize_money(order.total_price),
                is_cod=cod,
                delivered=outcome.delivered,
                amount_collected=distributed.get(order.id, ZERO),
                carrier_fee=fee if outcome.delivered else ZERO,
                failed_attempt_fee=failed_fee,
                failure_reason=None if outcome.delivered else (outcome.failure_reason or '').strip() or None,
            )
        )

    draft = SettlementDraft(
        store_id=store_id,
        carrier_id=carrier_id,
        settlement_date=delivery_date,
        source=SettlementSource.DELIVERY,
        granularity=config.movement_granularity,
        lines=tuple(lines),
        created_by=created_by,
        confirm_discrepancy=confirm_discrepancy,
        notes=notes,
        warnings=tuple(warnings),
    )
    settlement, totals = persist_settlement(db, draft)
    if totals.status == SettlementStatus.WITH_ISSUES:
        warnings.append(f'Discrepancy of {totals.difference} needs confirmation')
    return _result(settlement, totals, warnings)


def _get_settlement(db: Session, *, store_id: uuid.UUID, settlement_id: uuid.UUID) -> Settlement:
    settlement = db.execute(
        select(Settlement).where(Settlement.id == settlement_id, Settlement.store_id == store_id)
    ).scalar_one_or_none()
    if not settlement:
        raise LedgerNotFoundError(
            'Settlement not found',
            code='SETTLEMENT_NOT_FOUND',
            details={'settlement_id': settlement_id},
        )
    return settlement


def balance_due(settlement: Settlement) -> Decimal:
    """Signed amount still owed on a settlement; amount_paid is stored as a magnitude."""
    net = quantize_money(settlement.net_receivable)
    paid = quantize_money(settlement.amount_paid)
    return net - paid if net >= 0 else net + paid


def serialize_settlement(settlement: Settlement) -> dict:
    return {
        'id': settlement.id,
        'settlement_code': settlement.settlement_code,
        'carrier_id': settlement.carrier_id,
        'settlement_date': settlement.settlement_date,
        'source': settlement.source.value,
        'dispatch_session_id': settlement.dispatch_session_id,
        'status': settlement.status.value,
        'total_orders': settlement.total_orders,
        'total_delivered': settlement.total_delivered,
        'total_not_delivered': settlement.total_not_delivered,
        'total_cod_delivered': settlement.total_cod_delivered,
        'total_prepaid_delivered': settlement.total_prepaid_delivered,
        'expected_cash': quantize_money(settlement.expected_cash),
        'collected_cash': quantize_money(settlement.collected_cash),
        'difference': quantize_money(settlement.difference),
        'total_carrier_fees': quantize_money(settlement.total_carrier_fees),
        'failed_attempt_fees': quantize_money(settlement.failed_attempt_fees),
        'net_receivable': quantize_money(settlement.net_receivable),
        'amount_paid': quantize_money(settlement.amount_paid),
        'balance_due': balance_due(settlement),
        'movement_granularity': settlement.movement_granularity.value,
        'discrepancy_confirmed': settlement.discrepancy_confirmed,
        'notes': settlement.notes,
        'payment_method': settlement.payment_method.value if settlement.payment_method else None,
        'payment_reference': settlement.payment_reference,
        'paid_at': settlement.paid_at,
        'created_at': settlement.created_at,
    }


def list_settlements(
    db: Session,
    *,
    store_id: uuid.UUID,
    carrier_id: uuid.UUID | None = None,
    status: SettlementStatus | None = None,
    from_date: date | None = None,
    to_date: date | None = None,
) -> list[dict]:
    get_store(db, store_id)
    stmt = select(Settlement).where(Settlement.store_id == store_id)
    if carrier_id:
        stmt = stmt.where(Settlement.carrier_id == carrier_id)
    if status:
        stmt = stmt.where(Settlement.status == status)
    if from_date:
        stmt = stmt.where(Settlement.settlement_date >= from_date)
    if to_date:
        stmt = stmt.where(Settlement.settlement_date <= to_date)
    rows = db.execute(stmt.order_by(Settlement.settlement_date.desc(), Settlement.settlement_code.desc())).scalars().all()
    return [serialize_settlement(row) for row in rows]


def get_settlements_summary(
    db: Session,
    *,
    store_id: uuid.UUID,
    carrier_id: uuid.UUID | None = None,
    from_date: date | None = None,
    to_date: date | None = None,
) -> dict:
    get_store(db, store_id)
    if from_date and to_date and from_date > to_date:
        raise LedgerValidationError('from_date must not be after to_date', field='from_date')
    stmt = select(Settlement).where(Settlement.store_id == store_id)
    if carrier_id:
        stmt = stmt.where(Settlement.carrier_id == carrier_id)
    if from_date:
        stmt = stmt.where(Settlement.settlement_date >= from_date)
    if to_date:
        stmt = stmt.where(Settlement.settlement_date <= to_date)
    settlements = db.execute(stmt).scalars().all()

    def total(attribute: str) -> Decimal:
        return quantize_money(sum((getattr(s, attribute) for s in settlements), ZERO))

    by_status = {choice.value: 0 for choice in SettlementStatus}
    for settlement in settlements:
        by_status[settlement.status.value] += 1
    dues = [balance_due(s) for s in settlements]
    return {
        'total_settlements': len(settlements),
        'by_status': by_status,
        'fully_paid': sum(1 for s, due in zip(settlements, dues) if due == 0 and s.net_receivable != 0),
        'total_expected_cash': total('expected_cash'),
        'total_collected_cash': total('collected_cash'),
        'total_difference': total('difference'),
        'total_carrier_fees': total('total_carrier_fees'),
        'total_failed_attempt_fees': total('failed_attempt_fees'),
        'total_net_receivable': total('net_receivable'),
        'total_amount_paid': total('amount_paid'),
        'total_balance_due': quantize_money(sum(dues, ZERO)),
    }


def get_pending_by_carrier(db: Session, *, store_id: uuid.UUID) -> list[dict]:
    """Settlements with an unpaid balance, grouped per carrier, largest exposure first."""
    get_store(db, store_id)
    rows = db.execute(
        select(Settlement, Carrier.name)
        .join(Carrier, Carrier.id == Settlement.carrier_id)
        .where(Settlement.store_id == store_id, Settlement.amount_paid < func.abs(Settlement.net_receivable))
        .order_by(Settlement.settlement_date.asc(), Settlement.settlement_code.asc())
    ).all()

    groups: dict[uuid.UUID, dict] = {}
    for settlement, carrier_name in rows:
        group = groups.setdefault(
            settlement.carrier_id,
            {
                'carrier_id': settlement.carrier_id,
                'carrier_name': carrier_name,
                'pending_settlements': 0,
                'total_balance_due': ZERO,
                'oldest_settlement_date': settlement.settlement_date,
                'settlements': [],
            },
        )
        due = balance_due(settlement)
        group['pending_settlements'] += 1
        group['total_balance_due'] += due
        group['settlements'].append(
            {
                'id': settlement.id,
                'settlement_code': settlement.settlement_code,
                'settlement_date': settlement.settlement_date,
                'status': settlement.status.value,
                'net_receivable': quantize_money(settlement.net_receivable),
                'amount_paid': quantize_money(settlement.amount_paid),
                'balance_due': due,
            }
        )
    return sorted(groups.values(), key=lambda g: (-abs(g['total_balance_due']), g['carrier_name']))


def get_settlement(db: Session, *, store_id: uuid.UUID, settlement_id: uuid.UUID) -> dict:
    settlement = _get_settlement(db, store_id=store_id, settlement_id=settlement_id)
    lines = db.execute(
        select(SettlementOrder)
        .where(SettlementOrder.settlement_id == settlement.id)
        .order_by(SettlementOrder.order_number.asc())
    ).scalars().all()
    movements = db.execute(
        select(CarrierAccountMovement)
        .where(CarrierAccountMovement.settlement_id == settlement.id)
        .order_by(CarrierAccountMovement.created_at.asc(), CarrierAccountMovement.id.asc())
    ).scalars().all()
    data = serialize_settlement(settlement)
    data['orders'] = [
        {
            'order_id': line.order_id,
            'order_number': line.order_number,
            'order_total': quantize_money(line.order_total),
            'is_cod': line.is_cod,
            'delivered': line.delivered,
            'expected_amount': quantize_money(line.expected_amount),
            'amount_collected': quantize_money(line.amount_collected),
            'carrier_fee': quantize_money(line.carrier_fee),
            'failed_attempt_fee': quantize_money(line.failed_attempt_fee),
            'failure_reason': line.failure_reason,
        }
        for line in lines
    ]
    data['movements'] = [serialize_movement(m) for m in movements]
    return data


def complete_settlement(
    db: Session,
    *,
    store_id: uuid.UUID,
    settlement_id: uuid.UUID,
    notes: str | None,
    actor_principal_id: uuid.UUID | None,
    ip: str | None = None,
) -> Settlement:
    settlement = _get_settlement(db, store_id=store_id, settlement_id=settlement_id)
    if settlement.status == SettlementStatus.COMPLETED:
        raise LedgerConflictError('Settlement is already completed', code='ALREADY_COMPLETED')
    extra = _clean_notes(notes)
    if settlement.difference != 0 and not extra:
        raise LedgerValidationError('Notes are required to accept a discrepancy', field='notes')

    settlement.status = SettlementStatus.COMPLETED
    settlement.discrepancy_confirmed = settlement.difference != 0
    if extra:
        settlement.notes = f'{settlement.notes}\n{extra}' if settlement.notes else extra
    settlement.updated_at = _now()
    db.flush()

    log_audit(
        db,
        actor_principal_id=actor_principal_id,
        action='SETTLEMENT_COMPLETE',
        store_id=store_id,
        ip=ip,
        metadata={'settlement_id': settlement.id, 'difference': settlement.difference, 'notes': extra},
    )
    logger.info('settlement %s completed with difference %s', settlement.settlement_code, settlement.difference)
    return settlement


def pay_settlement(
    db: Session,
    *,
    store_id: uuid.UUID,
    settlement_id: uuid.UUID,
    amount,
    method,
    payment_reference: str | None = None,
    notes: str | None = None,
    idempotency_key: str | None = None,
    created_by: uuid.UUID | None,
    ip: str | None = None,
) -> dict:
    settlement = _get_settlement(db, store_id=store_id, settlement_id=settlement_id)
    net: Decimal = quantize_money(settlement.net_receivable)
    if net == 0:
        raise LedgerConflictError('Settlement has nothing to pay', code='NOTHING_TO_APPLY')
    direction = 'FROM_CARRIER' if net > 0 else 'TO_CARRIER'

    result = register_carrier_payment(
        db,
        store_id=store_id,
        carrier_id=settlement.carrier_id,
        amount=amount,
        direction=direction,
        method=method,
        payment_reference=payment_reference,
        notes=notes or f'Settlement {settlement.settlement_code}',
        settlement_ids=[settlement.id],
        idempotency_key=idempotency_key,
        created_by=created_by,
        ip=ip,
    )
    log_audit(
        db,
        actor_principal_id=created_by,
        action='SETTLEMENT_PAY',
        store_id=store_id,
        ip=ip,
        metadata={'settlement_id': settlement.id, 'payment_code': result['payment_code'], 'amount': result['amount']},
    )
    return result
