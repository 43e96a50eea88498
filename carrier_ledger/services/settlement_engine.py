from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from carrier_ledger.errors import LedgerConflictError
from carrier_ledger.models import (
    MovementGranularity,
    MovementType,
    Order,
    OrderStatus,
    Settlement,
    SettlementOrder,
    SettlementSource,
    SettlementStatus,
)
from carrier_ledger.services.audit_service import log_audit
from carrier_ledger.services.code_service import add_with_code
from carrier_ledger.services.ledger_service import append_movement
from carrier_ledger.services.money import ZERO, quantize_money

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


@dataclass(frozen=True)
class DraftLine:
    order_id: uuid.UUID
    order_number: str
    order_total: Decimal
    is_cod: bool
    delivered: bool
    amount_collected: Decimal = ZERO
    carrier_fee: Decimal = ZERO
    failed_attempt_fee: Decimal = ZERO
    failure_reason: str | None = None

    @property
    def expected_amount(self) -> Decimal:
        return self.order_total if self.delivered and self.is_cod else ZERO


@dataclass(frozen=True)
class SettlementDraft:
    store_id: uuid.UUID
    carrier_id: uuid.UUID
    settlement_date: date
    source: SettlementSource
    granularity: MovementGranularity
    lines: tuple[DraftLine, ...]
    created_by: uuid.UUID | None = None
    dispatch_session_id: uuid.UUID | None = None
    confirm_discrepancy: bool = False
    notes: str | None = None
    warnings: tuple[str, ...] = field(default_factory=tuple)


@dataclass(frozen=True)
class SettlementTotals:
    total_orders: int
    total_delivered: int
    total_not_delivered: int
    total_cod_delivered: int
    total_prepaid_delivered: int
    expected_cash: Decimal
    collected_cash: Decimal
    difference: Decimal
    total_carrier_fees: Decimal
    failed_attempt_fees: Decimal
    net_receivable: Decimal
    status: SettlementStatus


@dataclass(frozen=True)
class PlannedMovement:
    movement_type: MovementType
    amount: Decimal
    order_id: uuid.UUID | None = None
    order_number: str | None = None

    @property
    def key(self) -> tuple[MovementType, uuid.UUID | None]:
        return self.movement_type, self.order_id


def compute_totals(lines, *, confirm_discrepancy: bool = False) -> SettlementTotals:
    delivered = [line for line in lines if line.delivered]
    failed = [line for line in lines if not line.delivered]

    expected = quantize_money(sum((line.order_total for line in delivered if line.is_cod), ZERO))
    collected = quantize_money(sum((line.amount_collected for line in delivered), ZERO))
    fees = quantize_money(sum((line.carrier_fee for line in delivered), ZERO))
    failed_fees = quantize_money(sum((line.failed_attempt_fee for line in failed), ZERO))
    difference = collected - expected

    if difference == 0 or confirm_discrepancy:
        status = SettlementStatus.COMPLETED
    else:
        status = SettlementStatus.WITH_ISSUES

    return SettlementTotals(
        total_orders=len(lines),
        total_delivered=len(delivered),
        total_not_delivered=len(failed),
        total_cod_delivered=sum(1 for line in delivered if line.is_cod),
        total_prepaid_delivered=sum(1 for line in delivered if not line.is_cod),
        expected_cash=expected,
        collected_cash=collected,
        difference=difference,
        total_carrier_fees=fees,
        failed_attempt_fees=failed_fees,
        net_receivable=collected - fees - failed_fees,
        status=status,
    )


def plan_settlement_movements(granularity: MovementGranularity, lines, net_receivable: Decimal) -> list[PlannedMovement]:
    """Movements a settlement must own, derived only from its line snapshots.

    Works on draft lines and stored SettlementOrder rows alike, so a stored
    settlement can always be re-planned and compared with its ledger rows.
    """
    if granularity == MovementGranularity.AGGREGATE:
        return [PlannedMovement(MovementType.SETTLEMENT_PAYABLE, quantize_money(net_receivable))]

    planned = []
    for line in lines:
        if line.delivered:
            planned.append(
                PlannedMovement(
                    MovementType.DELIVERY_COLLECTED,
                    quantize_money(line.amount_collected - line.carrier_fee),
                    order_id=line.order_id,
                    order_number=line.order_number,
                )
            )
        elif line.failed_attempt_fee > 0:
            planned.append(
                PlannedMovement(
                    MovementType.FAILED_ATTEMPT_FEE,
                    -quantize_money(line.failed_attempt_fee),
                    order_id=line.order_id,
                    order_number=line.order_number,
                )
            )
    return planned


def _assert_not_duplicate(db: Session, draft: SettlementDraft) -> None:
    existing = db.execute(
        select(Settlement.id, Settlement.settlement_code).where(
            Settlement.store_id == draft.store_id,
            Settlement.settlement_date == draft.settlement_date,
            Settlement.carrier_id == draft.carrier_id,
        )
    ).one_or_none()
    if existing:
        logger.warning(
            'duplicate settlement for store %s carrier %s on %s (existing %s)',
            draft.store_id,
            draft.carrier_id,
            draft.settlement_date,
            existing.settlement_code,
        )
        raise LedgerConflictError(
            'A settlement already exists for this carrier and date',
            code='DUPLICATE_SETTLEMENT',
            details={'settlement_id': existing.id, 'settlement_code': existing.settlement_code},
        )


def _assert_orders_unreconciled(db: Session, draft: SettlementDraft) -> None:
    delivered_ids = [line.order_id for line in draft.lines if line.delivered]
    if not delivered_ids:
        return
    taken = db.execute(
        select(SettlementOrder.order_number).where(
            SettlementOrder.order_id.in_(delivered_ids),
            SettlementOrder.delivered.is_(True),
        )
    ).scalars().all()
    if taken:
        raise LedgerConflictError(
            'Some orders were already reconciled in another settlement',
            code='ORDER_ALREADY_RECONCILED',
            details={'order_numbers': sorted(taken)},
        )


def _apply_order_outcomes(db: Session, draft: SettlementDraft, now: datetime) -> None:
    order_ids = [line.order_id for line in draft.lines]
    orders = {
        order.id: order
        for order in db.execute(
            select(Order).where(Order.id.in_(order_ids), Order.store_id == draft.store_id)
        ).scalars()
    }
    for line in draft.lines:
        order = orders[line.order_id]
        order.active_dispatch_session_id = None
        if line.delivered:
            order.status = OrderStatus.DELIVERED
            order.delivered_at = order.delivered_at or now
            order.reconciled_at = now
            order.amount_collected = line.amount_collected
            order.has_amount_discrepancy = line.is_cod and line.amount_collected != line.order_total
        else:
            order.status = OrderStatus.READY_TO_SHIP


def persist_settlement(db: Session, draft: SettlementDraft) -> tuple[Settlement, SettlementTotals]:
    _assert_not_duplicate(db, draft)
    _assert_orders_unreconciled(db, draft)

    totals = compute_totals(draft.lines, confirm_discrepancy=draft.confirm_discrepancy)
    settlement = Settlement(
        store_id=draft.store_id,
        carrier_id=draft.carrier_id,
        settlement_date=draft.settlement_date,
        source=draft.source,
        dispatch_session_id=draft.dispatch_session_id,
        total_orders=totals.total_orders,
        total_delivered=totals.total_delivered,
        total_not_delivered=totals.total_not_delivered,
        total_cod_delivered=totals.total_cod_delivered,
        total_prepaid_delivered=totals.total_prepaid_delivered,
        expected_cash=totals.expected_cash,
        collected_cash=totals.collected_cash,
        difference=totals.difference,
        total_carrier_fees=totals.total_carrier_fees,
        failed_attempt_fees=totals.failed_attempt_fees,
        net_receivable=totals.net_receivable,
        status=SettlementStatus.PENDING,
        discrepancy_confirmed=draft.confirm_discrepancy and totals.difference != 0,
        movement_granularity=draft.granularity,
        notes=draft.notes,
        created_by=draft.created_by,
    )
    try:
        add_with_code(db, settlement, on_date=draft.settlement_date)
    except IntegrityError as exc:
        logger.warning(
            'settlement insert lost a race for store %s carrier %s on %s',
            draft.store_id,
            draft.carrier_id,
            draft.settlement_date,
        )
        raise LedgerConflictError(
            'A settlement already exists for this carrier and date',
            code='DUPLICATE_SETTLEMENT',
        ) from exc

    db.add_all(
        [
            SettlementOrder(
                settlement_id=settlement.id,
                order_id=line.order_id,
                order_number=line.order_number,
                order_total=line.order_total,
                is_cod=line.is_cod,
                delivered=line.delivered,
                expected_amount=line.expected_amount,
                amount_collected=line.amount_collected,
                carrier_fee=line.carrier_fee,
                failed_attempt_fee=line.failed_attempt_fee,
                failure_reason=line.failure_reason,
            )
            for line in draft.lines
        ]
    )
    try:
        with db.begin_nested():
            db.flush()
    except IntegrityError as exc:
        raise LedgerConflictError(
            'Some orders were already reconciled in another settlement',
            code='ORDER_ALREADY_RECONCILED',
        ) from exc

    for planned in plan_settlement_movements(draft.granularity, draft.lines, totals.net_receivable):
        append_movement(
            db,
            store_id=draft.store_id,
            carrier_id=draft.carrier_id,
            movement_type=planned.movement_type,
            amount=planned.amount,
            movement_date=draft.settlement_date,
            order_id=planned.order_id,
            order_number=planned.order_number,
            dispatch_session_id=draft.dispatch_session_id,
            settlement_id=settlement.id,
            description=f'Settlement {settlement.settlement_code}',
            created_by=draft.created_by,
        )

    now = _now()
    _apply_order_outcomes(db, draft, now)
    settlement.status = totals.status
    settlement.updated_at = now
    db.flush()

    log_audit(
        db,
        actor_principal_id=draft.created_by,
        action='SETTLEMENT_CREATE',
        store_id=draft.store_id,
        metadata={
            'settlement_id': settlement.id,
            'settlement_code': settlement.settlement_code,
            'source': draft.source.value,
            'carrier_id': draft.carrier_id,
            'expected_cash': totals.expected_cash,
            'collected_cash': totals.collected_cash,
            'difference': totals.difference,
            'status': totals.status.value,
        },
    )
    logger.info(
        'settlement %s created: expected=%s collected=%s net=%s status=%s',
        settlement.settlement_code,
        totals.expected_cash,
        totals.collected_cash,
        totals.net_receivable,
        totals.status.value,
    )
    if totals.status == SettlementStatus.WITH_ISSUES:
        logger.warning('settlement %s has an unconfirmed discrepancy of %s', settlement.settlement_code, totals.difference)
    return settlement, totals
