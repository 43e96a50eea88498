from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from carrier_ledger.errors import LedgerValidationError
from carrier_ledger.models import (
    Carrier,
    CarrierAccountBalance,
    CarrierAccountMovement,
    CarrierPayment,
    MovementType,
)
from carrier_ledger.services.audit_service import log_audit
from carrier_ledger.services.carrier_service import (
    get_carrier_config,
    get_store,
    list_store_carriers,
    serialize_config,
)
from carrier_ledger.services.money import ZERO, parse_amount, quantize_money
from carrier_ledger.services.store_time import local_today, store_zone

logger = logging.getLogger(__name__)

ADJUSTMENT_TYPES = {
    'debit': MovementType.ADJUSTMENT_DEBIT,
    'credit': MovementType.ADJUSTMENT_CREDIT,
}
MAX_DESCRIPTION_LENGTH = 500


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def outstanding_amount(movement: CarrierAccountMovement) -> Decimal:
    return abs(movement.amount) - movement.settled_amount


def signed_outstanding(movement: CarrierAccountMovement) -> Decimal:
    remaining = outstanding_amount(movement)
    return remaining if movement.amount >= 0 else -remaining


def bump_balance_cache(
    db: Session,
    *,
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    delta: Decimal,
    count_delta: int = 1,
) -> None:
    stmt = (
        update(CarrierAccountBalance)
        .where(CarrierAccountBalance.store_id == store_id, CarrierAccountBalance.carrier_id == carrier_id)
        .values(
            balance=CarrierAccountBalance.balance + delta,
            movement_count=CarrierAccountBalance.movement_count + count_delta,
            updated_at=_now(),
        )
        .execution_options(synchronize_session=False)
    )
    if db.execute(stmt).rowcount:
        return
    try:
        with db.begin_nested():
            db.add(
                CarrierAccountBalance(
                    store_id=store_id,
                    carrier_id=carrier_id,
                    balance=quantize_money(delta),
                    movement_count=count_delta,
                )
            )
            db.flush()
    except IntegrityError:
        # Another transaction created the row first.
        db.execute(stmt)


def append_movement(
    db: Session,
    *,
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    movement_type: MovementType,
    amount: Decimal,
    movement_date: date,
    order_id: uuid.UUID | None = None,
    order_number: str | None = None,
    dispatch_session_id: uuid.UUID | None = None,
    settlement_id: uuid.UUID | None = None,
    payment_id: uuid.UUID | None = None,
    description: str | None = None,
    metadata: dict | None = None,
    created_by: uuid.UUID | None = None,
    settled: bool = False,
) -> CarrierAccountMovement:
    amount = quantize_money(amount)
    movement = CarrierAccountMovement(
        store_id=store_id,
        carrier_id=carrier_id,
        movement_type=movement_type,
        amount=amount,
        settled_amount=abs(amount) if settled else ZERO,
        is_settled=settled or amount == 0,
        order_id=order_id,
        order_number=order_number,
        dispatch_session_id=dispatch_session_id,
        settlement_id=settlement_id,
        payment_id=payment_id,
        description=description,
        meta=metadata or {},
        movement_date=movement_date,
        created_by=created_by,
    )
    db.add(movement)
    db.flush()
    bump_balance_cache(db, store_id=store_id, carrier_id=carrier_id, delta=amount)
    return movement


def replay_balance(
    db: Session,
    *,
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    before: date | None = None,
    until: date | None = None,
) -> Decimal:
    stmt = select(func.coalesce(func.sum(CarrierAccountMovement.amount), 0)).where(
        CarrierAccountMovement.store_id == store_id,
        CarrierAccountMovement.carrier_id == carrier_id,
    )
    if before is not None:
        stmt = stmt.where(CarrierAccountMovement.movement_date < before)
    if until is not None:
        stmt = stmt.where(CarrierAccountMovement.movement_date <= until)
    return quantize_money(db.execute(stmt).scalar_one() or 0)


def cached_balance(db: Session, *, store_id: uuid.UUID, carrier_id: uuid.UUID) -> CarrierAccountBalance | None:
    return db.execute(
        select(CarrierAccountBalance).where(
            CarrierAccountBalance.store_id == store_id,
            CarrierAccountBalance.carrier_id == carrier_id,
        ).execution_options(populate_existing=True)
    ).scalar_one_or_none()


def cache_matches_replay(db: Session, *, store_id: uuid.UUID, carrier_id: uuid.UUID) -> tuple[bool, Decimal, Decimal | None]:
    replayed = replay_balance(db, store_id=store_id, carrier_id=carrier_id)
    cache = cached_balance(db, store_id=store_id, carrier_id=carrier_id)
    cached = quantize_money(cache.balance) if cache else None
    if cached is None:
        return replayed == ZERO, replayed, None
    return cached == replayed, replayed, cached


def rebuild_balance_cache(db: Session, *, store_id: uuid.UUID, carrier_id: uuid.UUID) -> Decimal:
    replayed = replay_balance(db, store_id=store_id, carrier_id=carrier_id)
    count = db.execute(
        select(func.count()).select_from(CarrierAccountMovement).where(
            CarrierAccountMovement.store_id == store_id,
            CarrierAccountMovement.carrier_id == carrier_id,
        )
    ).scalar_one()
    cache = cached_balance(db, store_id=store_id, carrier_id=carrier_id)
    if cache is None:
        cache = CarrierAccountBalance(store_id=store_id, carrier_id=carrier_id)
        db.add(cache)
    cache.balance = replayed
    cache.movement_count = count
    cache.updated_at = _now()
    db.flush()
    return replayed


def serialize_movement(movement: CarrierAccountMovement) -> dict:
    return {
        'id': movement.id,
        'movement_type': movement.movement_type.value,
        'amount': quantize_money(movement.amount),
        'settled_amount': quantize_money(movement.settled_amount),
        'outstanding': quantize_money(outstanding_amount(movement)),
        'is_settled': movement.is_settled,
        'order_id': movement.order_id,
        'order_number': movement.order_number,
        'dispatch_session_id': movement.dispatch_session_id,
        'settlement_id': movement.settlement_id,
        'payment_id': movement.payment_id,
        'description': movement.description,
        'movement_date': movement.movement_date,
        'created_at': movement.created_at,
    }


def store_carrier_names(db: Session, *, store_id: uuid.UUID) -> dict[uuid.UUID, str]:
    carriers = {carrier.id: carrier.name for carrier, _ in list_store_carriers(db, store_id=store_id)}
    with_movements = db.execute(
        select(Carrier.id, Carrier.name)
        .join(CarrierAccountMovement, CarrierAccountMovement.carrier_id == Carrier.id)
        .where(CarrierAccountMovement.store_id == store_id)
        .distinct()
    ).all()
    for row in with_movements:
        carriers.setdefault(row.id, row.name)
    return carriers


def get_carrier_balances(db: Session, *, store_id: uuid.UUID) -> list[dict]:
    get_store(db, store_id)
    carriers = store_carrier_names(db, store_id=store_id)

    totals: dict[uuid.UUID, dict[str, Decimal]] = defaultdict(dict)
    for row in db.execute(
        select(
            CarrierAccountMovement.carrier_id,
            CarrierAccountMovement.movement_type,
            func.sum(CarrierAccountMovement.amount).label('total'),
        )
        .where(CarrierAccountMovement.store_id == store_id)
        .group_by(CarrierAccountMovement.carrier_id, CarrierAccountMovement.movement_type)
    ).all():
        totals[row.carrier_id][row.movement_type.value] = quantize_money(row.total or 0)

    unsettled: dict[uuid.UUID, list[CarrierAccountMovement]] = defaultdict(list)
    for movement in db.execute(
        select(CarrierAccountMovement).where(
            CarrierAccountMovement.store_id == store_id,
            CarrierAccountMovement.is_settled.is_(False),
        )
    ).scalars():
        unsettled[movement.carrier_id].append(movement)

    last_movement = dict(
        db.execute(
            select(CarrierAccountMovement.carrier_id, func.max(CarrierAccountMovement.movement_date))
            .where(CarrierAccountMovement.store_id == store_id)
            .group_by(CarrierAccountMovement.carrier_id)
        ).all()
    )
    last_payment = dict(
        db.execute(
            select(CarrierPayment.carrier_id, func.max(CarrierPayment.payment_date))
            .where(CarrierPayment.store_id == store_id)
            .group_by(CarrierPayment.carrier_id)
        ).all()
    )

    result = []
    for carrier_id, carrier_name in sorted(carriers.items(), key=lambda item: item[1]):
        by_type = totals.get(carrier_id, {})
        open_rows = unsettled.get(carrier_id, [])
        result.append(
            {
                'carrier_id': carrier_id,
                'carrier_name': carrier_name,
                'totals_by_type': {kind.value: by_type.get(kind.value, ZERO) for kind in MovementType},
                'net_balance': quantize_money(sum(by_type.values(), ZERO)),
                'unsettled_balance': quantize_money(sum((signed_outstanding(m) for m in open_rows), ZERO)),
                'unsettled_count': len(open_rows),
                'last_movement_date': last_movement.get(carrier_id),
                'last_payment_date': last_payment.get(carrier_id),
            }
        )
    return result


def get_carrier_balance_summary(
    db: Session,
    *,
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    from_date: date | None = None,
    to_date: date | None = None,
) -> dict:
    get_store(db, store_id)
    config = get_carrier_config(db, store_id=store_id, carrier_id=carrier_id)
    if from_date and to_date and from_date > to_date:
        raise LedgerValidationError('from_date must not be after to_date', field='from_date')

    stmt = select(CarrierAccountMovement).where(
        CarrierAccountMovement.store_id == store_id,
        CarrierAccountMovement.carrier_id == carrier_id,
    )
    if from_date:
        stmt = stmt.where(CarrierAccountMovement.movement_date >= from_date)
    if to_date:
        stmt = stmt.where(CarrierAccountMovement.movement_date <= to_date)
    movements = db.execute(
        stmt.order_by(
            CarrierAccountMovement.movement_date.asc(),
            CarrierAccountMovement.created_at.asc(),
            CarrierAccountMovement.id.asc(),
        )
    ).scalars().all()

    opening = replay_balance(db, store_id=store_id, carrier_id=carrier_id, before=from_date) if from_date else ZERO
    totals_by_type: dict[str, Decimal] = {kind.value: ZERO for kind in MovementType}
    for movement in movements:
        totals_by_type[movement.movement_type.value] += movement.amount
    period_net = quantize_money(sum(totals_by_type.values(), ZERO))

    consistent, replayed, cached = cache_matches_replay(db, store_id=store_id, carrier_id=carrier_id)
    if not consistent:
        logger.warning(
            'balance cache drift for store %s carrier %s: cached=%s replayed=%s',
            store_id,
            carrier_id,
            cached,
            replayed,
        )

    return {
        'carrier_id': carrier_id,
        'from_date': from_date,
        'to_date': to_date,
        'opening_balance': opening,
        'period_net': period_net,
        'balance': quantize_money(opening + period_net),
        'totals_by_type': {key: quantize_money(value) for key, value in totals_by_type.items()},
        'movements': [serialize_movement(m) for m in movements],
        'config': serialize_config(config),
        'cache_consistent': consistent,
    }


def get_unsettled_movements(db: Session, *, store_id: uuid.UUID, carrier_id: uuid.UUID | None = None) -> list[dict]:
    get_store(db, store_id)
    stmt = select(CarrierAccountMovement).where(
        CarrierAccountMovement.store_id == store_id,
        CarrierAccountMovement.is_settled.is_(False),
    )
    if carrier_id:
        stmt = stmt.where(CarrierAccountMovement.carrier_id == carrier_id)
    movements = db.execute(
        stmt.order_by(CarrierAccountMovement.created_at.asc(), CarrierAccountMovement.id.asc())
    ).scalars().all()
    return [{**serialize_movement(m), 'carrier_id': m.carrier_id} for m in movements]


def create_adjustment_movement(
    db: Session,
    *,
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    amount,
    adjustment_type: str,
    description: str | None,
    created_by: uuid.UUID | None,
    ip: str | None = None,
) -> CarrierAccountMovement:
    store = get_store(db, store_id)
    get_carrier_config(db, store_id=store_id, carrier_id=carrier_id)

    movement_type = ADJUSTMENT_TYPES.get((adjustment_type or '').strip().lower())
    if movement_type is None:
        raise LedgerValidationError('type must be credit or debit', field='type', code='INVALID_ADJUSTMENT_TYPE')
    text = (description or '').strip()
    if not text:
        raise LedgerValidationError('description is required', field='description')
    if len(text) > MAX_DESCRIPTION_LENGTH:
        raise LedgerValidationError(
            f'description must be at most {MAX_DESCRIPTION_LENGTH} characters',
            field='description',
        )
    value = parse_amount(amount, allow_zero=False)
    signed = value if movement_type == MovementType.ADJUSTMENT_DEBIT else -value

    movement = append_movement(
        db,
        store_id=store_id,
        carrier_id=carrier_id,
        movement_type=movement_type,
        amount=signed,
        movement_date=local_today(store_zone(store)),
        description=text,
        created_by=created_by,
    )
    log_audit(
        db,
        actor_principal_id=created_by,
        action='CARRIER_ADJUSTMENT_CREATE',
        store_id=store_id,
        ip=ip,
        metadata={
            'carrier_id': carrier_id,
            'movement_id': movement.id,
            'movement_type': movement_type.value,
            'amount': signed,
            'description': text,
        },
    )
    logger.info('adjustment %s of %s recorded for carrier %s', movement_type.value, signed, carrier_id)
    return movement
