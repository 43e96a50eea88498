from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from carrier_ledger.errors import (
    LedgerConflictError,
    LedgerIntegrityError,
    LedgerNotFoundError,
    LedgerValidationError,
)
from carrier_ledger.models import (
    CarrierAccountMovement,
    CarrierPayment,
    MovementType,
    PaymentApplication,
    PaymentDirection,
    PaymentMethod,
    Settlement,
)
from carrier_ledger.services.audit_service import log_audit
from carrier_ledger.services.carrier_service import coerce_choice, get_carrier_config, get_store
from carrier_ledger.services.code_service import add_with_code
from carrier_ledger.services.ledger_service import append_movement, cache_matches_replay, outstanding_amount
from carrier_ledger.services.money import ZERO, parse_amount, quantize_money
from carrier_ledger.services.store_time import local_today, store_zone

logger = logging.getLogger(__name__)

MAX_REFERENCE_LENGTH = 200
MAX_NOTES_LENGTH = 1000


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _clean_text(value: str | None, *, field: str, limit: int) -> str | None:
    text = (value or '').strip()
    if not text:
        return None
    if len(text) > limit:
        raise LedgerValidationError(f'{field} must be at most {limit} characters', field=field)
    return text


def _movement_matches_direction(movement: CarrierAccountMovement, direction: PaymentDirection) -> bool:
    if direction == PaymentDirection.FROM_CARRIER:
        return movement.amount > 0
    return movement.amount < 0


def _payment_result(db: Session, payment: CarrierPayment, *, replay: bool) -> dict:
    rows = db.execute(
        select(PaymentApplication, CarrierAccountMovement)
        .join(CarrierAccountMovement, CarrierAccountMovement.id == PaymentApplication.movement_id)
        .where(PaymentApplication.payment_id == payment.id)
        .order_by(CarrierAccountMovement.created_at.asc(), CarrierAccountMovement.id.asc())
    ).all()
    return {
        'payment_id': payment.id,
        'payment_code': payment.payment_code,
        'carrier_id': payment.carrier_id,
        'amount': quantize_money(payment.amount),
        'direction': payment.direction.value,
        'method': payment.method.value,
        'applied_to': [
            {
                'movement_id': movement.id,
                'movement_type': movement.movement_type.value,
                'settlement_id': movement.settlement_id,
                'order_id': movement.order_id,
                'amount_applied': quantize_money(application.amount),
                'remaining': quantize_money(outstanding_amount(movement)),
            }
            for application, movement in rows
        ],
        'idempotent_replay': replay,
    }


def _find_by_idempotency_key(db: Session, *, store_id: uuid.UUID, key: str) -> CarrierPayment | None:
    return db.execute(
        select(CarrierPayment).where(CarrierPayment.store_id == store_id, CarrierPayment.idempotency_key == key)
    ).scalar_one_or_none()


def _target_movement_ids(
    db: Session,
    *,
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    settlement_ids: list[uuid.UUID],
    movement_ids: list[uuid.UUID],
) -> list[uuid.UUID]:
    targets: set[uuid.UUID] = set()

    if movement_ids:
        found = db.execute(
            select(CarrierAccountMovement.id).where(
                CarrierAccountMovement.id.in_(movement_ids),
                CarrierAccountMovement.store_id == store_id,
                CarrierAccountMovement.carrier_id == carrier_id,
            )
        ).scalars().all()
        missing = set(movement_ids) - set(found)
        if missing:
            raise LedgerNotFoundError(
                'Some movements were not found for this carrier',
                code='MOVEMENT_NOT_FOUND',
                details={'movement_ids': sorted(str(item) for item in missing)},
            )
        targets.update(found)

    if settlement_ids:
        found = db.execute(
            select(Settlement.id).where(
                Settlement.id.in_(settlement_ids),
                Settlement.store_id == store_id,
                Settlement.carrier_id == carrier_id,
            )
        ).scalars().all()
        missing = set(settlement_ids) - set(found)
        if missing:
            raise LedgerNotFoundError(
                'Some settlements were not found for this carrier',
                code='SETTLEMENT_NOT_FOUND',
                details={'settlement_ids': sorted(str(item) for item in missing)},
            )
        targets.update(
            db.execute(
                select(CarrierAccountMovement.id).where(
                    CarrierAccountMovement.settlement_id.in_(settlement_ids),
                    CarrierAccountMovement.store_id == store_id,
                )
            ).scalars().all()
        )

    if not movement_ids and not settlement_ids:
        targets.update(
            db.execute(
                select(CarrierAccountMovement.id).where(
                    CarrierAccountMovement.store_id == store_id,
                    CarrierAccountMovement.carrier_id == carrier_id,
                    CarrierAccountMovement.is_settled.is_(False),
                )
            ).scalars().all()
        )
    return list(targets)


def register_carrier_payment(
    db: Session,
    *,
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    amount,
    direction,
    method,
    payment_reference: str | None = None,
    notes: str | None = None,
    settlement_ids: list[uuid.UUID] | None = None,
    movement_ids: list[uuid.UUID] | None = None,
    idempotency_key: str | None = None,
    payment_date: date | None = None,
    created_by: uuid.UUID | None = None,
    ip: str | None = None,
) -> dict:
    store = get_store(db, store_id)
    get_carrier_config(db, store_id=store_id, carrier_id=carrier_id)

    value = parse_amount(amount, allow_zero=False)
    direction = coerce_choice(PaymentDirection, direction, field='direction')
    method = coerce_choice(PaymentMethod, method, field='method')
    reference = _clean_text(payment_reference, field='payment_reference', limit=MAX_REFERENCE_LENGTH)
    notes = _clean_text(notes, field='notes', limit=MAX_NOTES_LENGTH)
    key = _clean_text(idempotency_key, field='idempotency_key', limit=128)

    if key:
        existing = _find_by_idempotency_key(db, store_id=store_id, key=key)
        if existing:
            logger.info('payment %s replayed for idempotency key %s', existing.payment_code, key)
            return _payment_result(db, existing, replay=True)

    target_ids = _target_movement_ids(
        db,
        store_id=store_id,
        carrier_id=carrier_id,
        settlement_ids=list(dict.fromkeys(settlement_ids or [])),
        movement_ids=list(dict.fromkeys(movement_ids or [])),
    )
    locked = (
        db.execute(
            select(CarrierAccountMovement)
            .where(CarrierAccountMovement.id.in_(target_ids))
            .order_by(CarrierAccountMovement.created_at.asc(), CarrierAccountMovement.id.asc())
            .with_for_update()
            .execution_options(populate_existing=True)
        ).scalars().all()
        if target_ids
        else []
    )
    candidates = [
        movement
        for movement in locked
        if not movement.is_settled
        and _movement_matches_direction(movement, direction)
        and outstanding_amount(movement) > 0
    ]
    if not candidates:
        raise LedgerConflictError(
            'There is no outstanding balance to apply this payment to',
            code='NOTHING_TO_APPLY',
            details={'direction': direction.value},
        )

    consistent, replayed, cached = cache_matches_replay(db, store_id=store_id, carrier_id=carrier_id)
    if not consistent:
        logger.warning('refusing payment for carrier %s: cache=%s replay=%s', carrier_id, cached, replayed)
        raise LedgerIntegrityError(
            'Carrier balance cache disagrees with the ledger; run a movement backfill first',
            code='LEDGER_DRIFT',
            details={'cached_balance': cached, 'replayed_balance': replayed},
        )

    outstanding_total = sum((outstanding_amount(m) for m in candidates), ZERO)
    if value > outstanding_total:
        raise LedgerConflictError(
            'Payment exceeds the outstanding balance',
            code='OVER_APPLICATION',
            details={'amount': value, 'outstanding': quantize_money(outstanding_total)},
        )

    on_date = payment_date or local_today(store_zone(store))
    payment = CarrierPayment(
        store_id=store_id,
        carrier_id=carrier_id,
        direction=direction,
        amount=value,
        method=method,
        reference=reference,
        notes=notes,
        idempotency_key=key,
        settlement_ids=[],
        payment_date=on_date,
        created_by=created_by,
    )
    try:
        add_with_code(db, payment, on_date=on_date)
    except IntegrityError:
        existing = _find_by_idempotency_key(db, store_id=store_id, key=key) if key else None
        if existing is None:
            raise
        return _payment_result(db, existing, replay=True)

    remaining = value
    applied_by_settlement: dict[uuid.UUID, Decimal] = defaultdict(lambda: ZERO)
    for movement in candidates:
        if remaining <= 0:
            break
        portion = min(outstanding_amount(movement), remaining)
        db.add(PaymentApplication(payment_id=payment.id, movement_id=movement.id, amount=portion))
        movement.settled_amount = movement.settled_amount + portion
        movement.is_settled = movement.settled_amount >= abs(movement.amount)
        remaining -= portion
        if movement.settlement_id:
            applied_by_settlement[movement.settlement_id] += portion
    db.flush()

    if direction == PaymentDirection.FROM_CARRIER:
        offset_type, offset_amount = MovementType.PAYMENT_RECEIVED, -value
    else:
        offset_type, offset_amount = MovementType.PAYMENT_SENT, value
    append_movement(
        db,
        store_id=store_id,
        carrier_id=carrier_id,
        movement_type=offset_type,
        amount=offset_amount,
        movement_date=on_date,
        payment_id=payment.id,
        description=f'Payment {payment.payment_code}',
        created_by=created_by,
        settled=True,
    )

    if applied_by_settlement:
        now = _now()
        for settlement in db.execute(
            select(Settlement).where(Settlement.id.in_(list(applied_by_settlement)))
        ).scalars():
            settlement.amount_paid = settlement.amount_paid + applied_by_settlement[settlement.id]
            settlement.payment_method = method
            settlement.payment_reference = reference or settlement.payment_reference
            settlement.paid_at = now
            settlement.updated_at = now
        payment.settlement_ids = sorted(str(item) for item in applied_by_settlement)
    db.flush()

    log_audit(
        db,
        actor_principal_id=created_by,
        action='CARRIER_PAYMENT_CREATE',
        store_id=store_id,
        ip=ip,
        metadata={
            'payment_id': payment.id,
            'payment_code': payment.payment_code,
            'carrier_id': carrier_id,
            'direction': direction.value,
            'amount': value,
            'settlement_ids': payment.settlement_ids,
        },
    )
    logger.info(
        'payment %s registered: carrier=%s direction=%s amount=%s',
        payment.payment_code,
        carrier_id,
        direction.value,
        value,
    )
    return _payment_result(db, payment, replay=False)


def list_carrier_payments(db: Session, *, store_id: uuid.UUID, carrier_id: uuid.UUID | None = None) -> list[dict]:
    get_store(db, store_id)
    stmt = select(CarrierPayment).where(CarrierPayment.store_id == store_id)
    if carrier_id:
        stmt = stmt.where(CarrierPayment.carrier_id == carrier_id)
    payments = db.execute(stmt.order_by(CarrierPayment.created_at.desc())).scalars().all()
    return [
        {
            'id': payment.id,
            'payment_code': payment.payment_code,
            'carrier_id': payment.carrier_id,
            'direction': payment.direction.value,
            'amount': quantize_money(payment.amount),
            'method': payment.method.value,
            'reference': payment.reference,
            'notes': payment.notes,
            'settlement_ids': payment.settlement_ids,
            'payment_date': payment.payment_date,
            'created_at': payment.created_at,
        }
        for payment in payments
    ]
