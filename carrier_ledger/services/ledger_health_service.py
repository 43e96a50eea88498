from __future__ import annotations

import logging
import uuid
from collections import defaultdict
from dataclasses import asdict, dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from carrier_ledger.config import settings
from carrier_ledger.errors import LedgerError
from carrier_ledger.models import (
    SETTLEMENT_MOVEMENT_TYPES,
    CarrierAccountMovement,
    Settlement,
    SettlementOrder,
)
from carrier_ledger.services.audit_service import log_audit
from carrier_ledger.services.carrier_service import get_store
from carrier_ledger.services.ledger_service import (
    append_movement,
    cache_matches_replay,
    cached_balance,
    rebuild_balance_cache,
    store_carrier_names,
)
from carrier_ledger.services.money import ZERO, quantize_money
from carrier_ledger.services.settlement_engine import plan_settlement_movements

logger = logging.getLogger(__name__)

CREATE = 'CREATE'
CORRECT = 'CORRECT'
REMOVE = 'REMOVE'

PROBLEM_BY_REASON = {
    'missing': 'MISSING_MOVEMENT',
    'mismatch': 'AMOUNT_MISMATCH',
    'duplicate': 'DUPLICATE_MOVEMENT',
    'unexpected': 'UNEXPECTED_MOVEMENT',
}


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class BackfillAction:
    action: str
    reason: str
    settlement_id: uuid.UUID
    settlement_code: str
    carrier_id: uuid.UUID
    movement_type: str
    order_id: uuid.UUID | None
    movement_id: uuid.UUID | None
    current_amount: Decimal | None
    expected_amount: Decimal | None

    @property
    def delta(self) -> Decimal:
        return (self.expected_amount or ZERO) - (self.current_amount or ZERO)


def diff_settlement(
    settlement: Settlement,
    lines: list[SettlementOrder],
    movements: list[CarrierAccountMovement],
) -> tuple[list[BackfillAction], list[BackfillAction]]:
    """Compare a settlement's derived movements with what its snapshots imply.

    Returns (actions, unresolvable). Rows that already carry payments are
    never shrunk below their settled amount or removed.
    """
    planned = plan_settlement_movements(settlement.movement_granularity, lines, settlement.net_receivable)
    existing: dict[tuple, list[CarrierAccountMovement]] = defaultdict(list)
    for movement in sorted(movements, key=lambda m: (m.created_at, str(m.id))):
        if movement.movement_type in SETTLEMENT_MOVEMENT_TYPES:
            existing[(movement.movement_type, movement.order_id)].append(movement)

    def _action(kind: str, reason: str, movement_type, order_id, movement=None, expected=None) -> BackfillAction:
        return BackfillAction(
            action=kind,
            reason=reason,
            settlement_id=settlement.id,
            settlement_code=settlement.settlement_code,
            carrier_id=settlement.carrier_id,
            movement_type=movement_type.value,
            order_id=order_id,
            movement_id=movement.id if movement is not None else None,
            current_amount=quantize_money(movement.amount) if movement is not None else None,
            expected_amount=expected,
        )

    actions: list[BackfillAction] = []
    unresolvable: list[BackfillAction] = []
    planned_keys = set()
    for item in planned:
        planned_keys.add(item.key)
        rows = existing.get(item.key, [])
        if not rows:
            actions.append(_action(CREATE, 'missing', item.movement_type, item.order_id, expected=item.amount))
            continue
        primary, extras = rows[0], rows[1:]
        if quantize_money(primary.amount) != item.amount:
            fix = _action(CORRECT, 'mismatch', item.movement_type, item.order_id, primary, item.amount)
            sign_flip = primary.amount * item.amount < 0
            if primary.settled_amount > abs(item.amount) or (sign_flip and primary.settled_amount > 0):
                unresolvable.append(fix)
            else:
                actions.append(fix)
        for extra in extras:
            drop = _action(REMOVE, 'duplicate', extra.movement_type, extra.order_id, extra, ZERO)
            (unresolvable if extra.settled_amount > 0 else actions).append(drop)

    for key, rows in existing.items():
        if key in planned_keys:
            continue
        for row in rows:
            drop = _action(REMOVE, 'unexpected', row.movement_type, row.order_id, row, ZERO)
            (unresolvable if row.settled_amount > 0 else actions).append(drop)
    return actions, unresolvable


def _store_settlements(db: Session, *, store_id: uuid.UUID) -> list[Settlement]:
    return db.execute(
        select(Settlement)
        .where(Settlement.store_id == store_id)
        .order_by(Settlement.settlement_date.asc(), Settlement.settlement_code.asc())
    ).scalars().all()


def _diff_chunk(db: Session, chunk: list[Settlement]) -> tuple[list[BackfillAction], list[BackfillAction]]:
    ids = [settlement.id for settlement in chunk]
    lines: dict[uuid.UUID, list[SettlementOrder]] = defaultdict(list)
    for line in db.execute(select(SettlementOrder).where(SettlementOrder.settlement_id.in_(ids))).scalars():
        lines[line.settlement_id].append(line)
    movements: dict[uuid.UUID, list[CarrierAccountMovement]] = defaultdict(list)
    for movement in db.execute(
        select(CarrierAccountMovement).where(CarrierAccountMovement.settlement_id.in_(ids))
    ).scalars():
        movements[movement.settlement_id].append(movement)

    actions: list[BackfillAction] = []
    unresolvable: list[BackfillAction] = []
    for settlement in chunk:
        found, stuck = diff_settlement(settlement, lines[settlement.id], movements[settlement.id])
        actions.extend(found)
        unresolvable.extend(stuck)
    return actions, unresolvable


def _chunks(items: list, size: int):
    for start in range(0, len(items), size):
        yield items[start : start + size]


def _apply_action(db: Session, action: BackfillAction, settlement: Settlement, actor_principal_id: uuid.UUID | None) -> None:
    if action.action == CREATE:
        append_movement(
            db,
            store_id=settlement.store_id,
            carrier_id=settlement.carrier_id,
            movement_type=next(t for t in SETTLEMENT_MOVEMENT_TYPES if t.value == action.movement_type),
            amount=action.expected_amount,
            movement_date=settlement.settlement_date,
            order_id=action.order_id,
            order_number=_order_number(db, settlement.id, action.order_id),
            dispatch_session_id=settlement.dispatch_session_id,
            settlement_id=settlement.id,
            description=f'Settlement {settlement.settlement_code} (backfill)',
            metadata={'backfill': True},
            created_by=actor_principal_id,
        )
    else:
        movement = db.get(CarrierAccountMovement, action.movement_id)
        if action.action == CORRECT:
            movement.amount = action.expected_amount
            movement.is_settled = movement.settled_amount >= abs(movement.amount)
            movement.meta = {**(movement.meta or {}), 'backfill_corrected_from': str(action.current_amount)}
        else:
            db.delete(movement)
        db.flush()

    log_audit(
        db,
        actor_principal_id=actor_principal_id,
        action=f'LEDGER_BACKFILL_{action.action}',
        store_id=settlement.store_id,
        metadata=asdict(action),
    )


def _order_number(db: Session, settlement_id: uuid.UUID, order_id: uuid.UUID | None) -> str | None:
    if order_id is None:
        return None
    return db.execute(
        select(SettlementOrder.order_number).where(
            SettlementOrder.settlement_id == settlement_id,
            SettlementOrder.order_id == order_id,
        )
    ).scalar_one_or_none()


def backfill_carrier_movements(
    db: Session,
    *,
    store_id: uuid.UUID,
    dry_run: bool = True,
    actor_principal_id: uuid.UUID | None = None,
    batch_size: int | None = None,
) -> dict:
    get_store(db, store_id)
    size = batch_size or settings.backfill_batch_size
    settlements = _store_settlements(db, store_id=store_id)

    planned: list[BackfillAction] = []
    unresolvable: list[BackfillAction] = []
    applied = {CREATE: 0, CORRECT: 0, REMOVE: 0}
    failed: list[dict] = []
    touched_carriers: set[uuid.UUID] = set()

    for chunk in _chunks(settlements, size):
        actions, stuck = _diff_chunk(db, chunk)
        planned.extend(actions)
        unresolvable.extend(stuck)
        if dry_run or not actions:
            continue
        by_id = {settlement.id: settlement for settlement in chunk}
        try:
            with db.begin_nested():
                for action in actions:
                    _apply_action(db, action, by_id[action.settlement_id], actor_principal_id)
                    logger.info(
                        'backfill %s %s for settlement %s order %s: %s -> %s',
                        action.action,
                        action.movement_type,
                        action.settlement_code,
                        action.order_id,
                        action.current_amount,
                        action.expected_amount,
                    )
        except (SQLAlchemyError, LedgerError) as exc:
            logger.exception('backfill chunk failed for store %s', store_id)
            failed.append(
                {
                    'settlement_ids': [str(settlement.id) for settlement in chunk],
                    'error': str(exc),
                }
            )
            continue
        for action in actions:
            applied[action.action] += 1
            touched_carriers.add(action.carrier_id)

    deltas: dict[uuid.UUID, Decimal] = defaultdict(lambda: ZERO)
    for action in planned:
        deltas[action.carrier_id] += action.delta

    cache_rebuilds: list[dict] = []
    for carrier_id in store_carrier_names(db, store_id=store_id):
        consistent, replayed, cached = cache_matches_replay(db, store_id=store_id, carrier_id=carrier_id)
        if dry_run:
            expected = quantize_money(replayed + deltas[carrier_id])
            needs_rebuild = cached is None and expected != 0 or cached is not None and cached != expected
            if needs_rebuild:
                cache_rebuilds.append({'carrier_id': carrier_id, 'cached_balance': cached, 'expected_balance': expected})
            continue
        if consistent and carrier_id not in touched_carriers:
            continue
        rebuilt = rebuild_balance_cache(db, store_id=store_id, carrier_id=carrier_id)
        if cached != rebuilt:
            cache_rebuilds.append({'carrier_id': carrier_id, 'cached_balance': cached, 'expected_balance': rebuilt})
            log_audit(
                db,
                actor_principal_id=actor_principal_id,
                action='LEDGER_BACKFILL_REBUILD_CACHE',
                store_id=store_id,
                metadata={'carrier_id': carrier_id, 'cached_balance': cached, 'balance': rebuilt},
            )
            logger.info('balance cache for carrier %s rebuilt: %s -> %s', carrier_id, cached, rebuilt)

    summary = {
        'dry_run': dry_run,
        'settlements_scanned': len(settlements),
        'planned': {
            'create': sum(1 for a in planned if a.action == CREATE),
            'correct': sum(1 for a in planned if a.action == CORRECT),
            'remove': sum(1 for a in planned if a.action == REMOVE),
            'rebuild_cache': len(cache_rebuilds),
        },
        'applied': {key.lower(): value for key, value in applied.items()},
        'actions': [asdict(action) for action in planned],
        'unresolvable': [asdict(action) for action in unresolvable],
        'cache_rebuilds': cache_rebuilds,
        'failed': failed,
    }
    if not dry_run and (any(applied.values()) or cache_rebuilds or failed):
        log_audit(
            db,
            actor_principal_id=actor_principal_id,
            action='LEDGER_BACKFILL',
            store_id=store_id,
            metadata={key: summary[key] for key in ('settlements_scanned', 'planned', 'applied')} | {'failed': len(failed)},
        )
    logger.info(
        'backfill for store %s (dry_run=%s): scanned=%s planned=%s applied=%s failed=%s',
        store_id,
        dry_run,
        len(settlements),
        summary['planned'],
        summary['applied'],
        len(failed),
    )
    return summary


def check_movement_health(db: Session, *, store_id: uuid.UUID) -> dict:
    get_store(db, store_id)
    names = store_carrier_names(db, store_id=store_id)
    problems: dict[uuid.UUID, list[dict]] = defaultdict(list)
    balances: dict[uuid.UUID, tuple] = {}

    for carrier_id in names:
        consistent, replayed, cached = cache_matches_replay(db, store_id=store_id, carrier_id=carrier_id)
        balances[carrier_id] = (replayed, cached)
        movement_count = db.execute(
            select(func.count()).select_from(CarrierAccountMovement).where(
                CarrierAccountMovement.store_id == store_id,
                CarrierAccountMovement.carrier_id == carrier_id,
            )
        ).scalar_one()
        if cached_balance(db, store_id=store_id, carrier_id=carrier_id) is None and movement_count:
            problems[carrier_id].append({'type': 'MISSING_BALANCE_CACHE', 'replayed_balance': replayed})
        elif not consistent:
            problems[carrier_id].append(
                {'type': 'BALANCE_CACHE_DRIFT', 'cached_balance': cached, 'replayed_balance': replayed}
            )

    for movement in db.execute(
        select(CarrierAccountMovement).where(
            CarrierAccountMovement.store_id == store_id,
            CarrierAccountMovement.settled_amount > func.abs(CarrierAccountMovement.amount),
        )
    ).scalars():
        problems[movement.carrier_id].append(
            {
                'type': 'SETTLED_AMOUNT_OUT_OF_RANGE',
                'movement_id': movement.id,
                'amount': movement.amount,
                'settled_amount': movement.settled_amount,
            }
        )

    for chunk in _chunks(_store_settlements(db, store_id=store_id), settings.backfill_batch_size):
        actions, stuck = _diff_chunk(db, chunk)
        for action in actions + stuck:
            problems[action.carrier_id].append(
                {
                    'type': PROBLEM_BY_REASON[action.reason],
                    'settlement_code': action.settlement_code,
                    'movement_type': action.movement_type,
                    'order_id': action.order_id,
                    'movement_id': action.movement_id,
                    'current_amount': action.current_amount,
                    'expected_amount': action.expected_amount,
                    'auto_fixable': action in actions,
                }
            )

    with_problems = []
    for carrier_id, found in problems.items():
        replayed, cached = balances.get(carrier_id, (None, None))
        with_problems.append(
            {
                'carrier_id': carrier_id,
                'carrier_name': names.get(carrier_id),
                'replayed_balance': replayed,
                'cached_balance': cached,
                'problems': found,
            }
        )
    if with_problems:
        logger.warning('movement health check for store %s found problems for %s carriers', store_id, len(with_problems))

    return {
        'status': 'PROBLEMS_DETECTED' if with_problems else 'HEALTHY',
        'checked_at': _now(),
        'carriers_checked': len(names),
        'carriers_with_problems': sorted(with_problems, key=lambda item: item['carrier_name'] or ''),
    }
