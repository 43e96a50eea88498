from __future__ import annotations

import unittest
from datetime import timedelta
from decimal import Decimal
from zoneinfo import ZoneInfo

from sqlalchemy import select

from carrier_ledger.errors import LedgerConflictError, LedgerValidationError
from carrier_ledger.models import (
    CarrierAccountMovement,
    DispatchSessionStatus,
    MovementGranularity,
    MovementType,
    OrderStatus,
    SettlementStatus,
)
from carrier_ledger.services.carrier_service import upsert_carrier_zone
from carrier_ledger.services.dispatch_session_service import (
    DispatchResultRow,
    cancel_dispatch_session,
    create_dispatch_session,
    import_dispatch_results,
)
from carrier_ledger.services.ledger_service import cache_matches_replay, replay_balance
from carrier_ledger.services.settlement_service import (
    DeliveryOutcome,
    complete_settlement,
    get_pending_by_carrier,
    get_settlement,
    get_settlements_summary,
    list_settlements,
    pay_settlement,
    process_delivery_reconciliation,
    process_settlement,
)
from carrier_ledger.services.store_time import local_today
from tests.support import (
    STORE_TIMEZONE,
    make_carrier,
    make_engine,
    make_order,
    make_session_factory,
    make_shipped_order,
    make_store,
)


class SettlementTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.db = make_session_factory(self.engine)()
        self.store = make_store(self.db)
        self.today = local_today(ZoneInfo(STORE_TIMEZONE))

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def movements(self, settlement_id) -> list[CarrierAccountMovement]:
        return self.db.execute(
            select(CarrierAccountMovement).where(CarrierAccountMovement.settlement_id == settlement_id)
        ).scalars().all()


class DeliveryReconciliationTests(SettlementTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.carrier = make_carrier(self.db, self.store)
        self.delivered = make_shipped_order(self.db, self.store, self.carrier, 'R-1', '100000')
        self.failed = make_shipped_order(self.db, self.store, self.carrier, 'R-2', '50000')

    def _reconcile(self, collected: str, **kwargs) -> dict:
        return process_delivery_reconciliation(
            self.db,
            store_id=self.store.id,
            carrier_id=self.carrier.id,
            delivery_date=self.today,
            orders=[
                DeliveryOutcome(order_id=self.delivered.id, delivered=True),
                DeliveryOutcome(order_id=self.failed.id, delivered=False, failure_reason='Rejected at door'),
            ],
            total_amount_collected=collected,
            created_by=None,
            **kwargs,
        )

    def test_exact_collection_completes_with_one_movement(self) -> None:
        result = self._reconcile('100000')

        self.assertEqual(result['status'], 'COMPLETED')
        self.assertRegex(result['settlement_code'], r'^LIQ-\d{8}-01$')
        self.assertEqual(result['expected_cash'], Decimal('100000.00'))
        self.assertEqual(result['difference'], Decimal('0.00'))
        self.assertEqual(result['net_receivable'], Decimal('100000.00'))

        movements = self.movements(result['settlement_id'])
        self.assertEqual(len(movements), 1)
        self.assertEqual(movements[0].movement_type, MovementType.DELIVERY_COLLECTED)
        self.assertEqual(movements[0].amount, Decimal('100000.00'))
        self.assertEqual(movements[0].order_id, self.delivered.id)

        self.assertEqual(self.delivered.status, OrderStatus.DELIVERED)
        self.assertIsNotNone(self.delivered.reconciled_at)
        self.assertFalse(self.delivered.has_amount_discrepancy)
        self.assertEqual(self.failed.status, OrderStatus.READY_TO_SHIP)
        self.assertIsNone(self.failed.reconciled_at)

        consistent, replayed, cached = cache_matches_replay(self.db, store_id=self.store.id, carrier_id=self.carrier.id)
        self.assertTrue(consistent)
        self.assertEqual(replayed, Decimal('100000.00'))
        self.assertEqual(cached, Decimal('100000.00'))

    def test_shortfall_is_flagged_until_confirmed(self) -> None:
        result = self._reconcile('90000')
        self.assertEqual(result['status'], 'WITH_ISSUES')
        self.assertEqual(result['difference'], Decimal('-10000.00'))
        self.assertTrue(any('Discrepancy' in warning for warning in result['warnings']))
        self.assertTrue(self.delivered.has_amount_discrepancy)
        self.assertEqual(self.delivered.amount_collected, Decimal('90000.00'))

        with self.assertRaises(LedgerValidationError):
            complete_settlement(
                self.db, store_id=self.store.id, settlement_id=result['settlement_id'], notes=None, actor_principal_id=None
            )
        settlement = complete_settlement(
            self.db,
            store_id=self.store.id,
            settlement_id=result['settlement_id'],
            notes='Courier short 10000, docked from salary',
            actor_principal_id=None,
        )
        self.assertEqual(settlement.status, SettlementStatus.COMPLETED)
        self.assertTrue(settlement.discrepancy_confirmed)
        with self.assertRaises(LedgerConflictError) as ctx:
            complete_settlement(
                self.db, store_id=self.store.id, settlement_id=settlement.id, notes='again', actor_principal_id=None
            )
        self.assertEqual(ctx.exception.code, 'ALREADY_COMPLETED')

    def test_large_shortfall_is_recorded_with_issues(self) -> None:
        small = make_shipped_order(self.db, self.store, self.carrier, 'R-6', '10000')
        result = process_delivery_reconciliation(
            self.db,
            store_id=self.store.id,
            carrier_id=self.carrier.id,
            delivery_date=self.today,
            orders=[
                DeliveryOutcome(order_id=self.delivered.id, delivered=True),
                DeliveryOutcome(order_id=small.id, delivered=True),
            ],
            total_amount_collected='50000',
            created_by=None,
        )
        self.assertEqual(result['status'], 'WITH_ISSUES')
        self.assertEqual(result['expected_cash'], Decimal('110000.00'))
        self.assertEqual(result['collected_cash'], Decimal('50000.00'))
        self.assertEqual(result['difference'], Decimal('-60000.00'))
        self.assertEqual(self.delivered.amount_collected, Decimal('50000.00'))
        self.assertEqual(small.amount_collected, Decimal('0.00'))

        amounts = {m.order_id: m.amount for m in self.movements(result['settlement_id'])}
        self.assertTrue(all(amount >= 0 for amount in amounts.values()))
        self.assertEqual(sum(amounts.values()), Decimal('50000.00'))
        self.assertEqual(replay_balance(self.db, store_id=self.store.id, carrier_id=self.carrier.id), Decimal('50000.00'))

    def test_confirmed_shortfall_completes_immediately(self) -> None:
        result = self._reconcile('90000', confirm_discrepancy=True, discrepancy_notes='Known shortfall')
        self.assertEqual(result['status'], 'COMPLETED')
        detail = get_settlement(self.db, store_id=self.store.id, settlement_id=result['settlement_id'])
        self.assertTrue(detail['discrepancy_confirmed'])
        self.assertEqual(detail['notes'], 'Known shortfall')
        self.assertEqual(len(detail['orders']), 2)

    def test_same_carrier_and_day_is_rejected(self) -> None:
        self._reconcile('100000')
        another = make_shipped_order(self.db, self.store, self.carrier, 'R-3', '20000')
        with self.assertRaises(LedgerConflictError) as ctx:
            process_delivery_reconciliation(
                self.db,
                store_id=self.store.id,
                carrier_id=self.carrier.id,
                delivery_date=self.today,
                orders=[DeliveryOutcome(order_id=another.id, delivered=True)],
                total_amount_collected='20000',
                created_by=None,
            )
        self.assertEqual(ctx.exception.code, 'DUPLICATE_SETTLEMENT')
        self.assertEqual(len(list_settlements(self.db, store_id=self.store.id)), 1)

    def test_reconciled_order_cannot_settle_twice(self) -> None:
        self._reconcile('100000')
        with self.assertRaises(LedgerConflictError) as ctx:
            process_delivery_reconciliation(
                self.db,
                store_id=self.store.id,
                carrier_id=self.carrier.id,
                delivery_date=self.today - timedelta(days=1),
                orders=[DeliveryOutcome(order_id=self.delivered.id, delivered=True)],
                total_amount_collected='100000',
                created_by=None,
            )
        self.assertEqual(ctx.exception.code, 'ORDER_ALREADY_RECONCILED')

    def test_collected_cash_needs_cod_delivery(self) -> None:
        prepaid = make_shipped_order(self.db, self.store, self.carrier, 'R-4', '70000', payment_method='card', is_prepaid=True)
        with self.assertRaises(LedgerValidationError) as ctx:
            process_delivery_reconciliation(
                self.db,
                store_id=self.store.id,
                carrier_id=self.carrier.id,
                delivery_date=self.today,
                orders=[DeliveryOutcome(order_id=prepaid.id, delivered=True)],
                total_amount_collected='5000',
                created_by=None,
            )
        self.assertEqual(ctx.exception.code, 'NO_COD_DELIVERIES')

    def test_order_in_open_session_is_rejected(self) -> None:
        queued = make_order(self.db, self.store, self.carrier, 'R-5', '30000')
        create_dispatch_session(
            self.db, store_id=self.store.id, carrier_id=self.carrier.id, order_ids=[queued.id], created_by=None
        )
        with self.assertRaises(LedgerConflictError) as ctx:
            process_delivery_reconciliation(
                self.db,
                store_id=self.store.id,
                carrier_id=self.carrier.id,
                delivery_date=self.today,
                orders=[DeliveryOutcome(order_id=queued.id, delivered=True)],
                total_amount_collected='30000',
                created_by=None,
            )
        self.assertEqual(ctx.exception.code, 'ORDER_IN_OPEN_SESSION')


class DispatchSettlementTests(SettlementTestCase):
    def _carrier_with_default_rate(self, granularity: MovementGranularity):
        carrier = make_carrier(self.db, self.store, charges_failed_attempts=True, granularity=granularity)
        upsert_carrier_zone(
            self.db,
            store_id=self.store.id,
            carrier_id=carrier.id,
            zone_name='Default',
            rate='20000',
            actor_principal_id=None,
        )
        return carrier

    def _dispatch_and_import(self, carrier):
        cod = make_order(self.db, self.store, carrier, 'S-1', '100000')
        prepaid = make_order(self.db, self.store, carrier, 'S-2', '80000', payment_method='card', is_prepaid=True)
        failed = make_order(self.db, self.store, carrier, 'S-3', '50000')
        pending = make_order(self.db, self.store, carrier, 'S-4', '40000')
        dispatch_session = create_dispatch_session(
            self.db,
            store_id=self.store.id,
            carrier_id=carrier.id,
            order_ids=[cod.id, prepaid.id, failed.id, pending.id],
            created_by=None,
        )
        import_dispatch_results(
            self.db,
            store_id=self.store.id,
            session_id=dispatch_session.id,
            rows=[
                DispatchResultRow(order_number='S-1', delivery_status='delivered', amount_collected='100000'),
                DispatchResultRow(order_number='S-2', delivery_status='delivered'),
                DispatchResultRow(order_number='S-3', delivery_status='rejected', failure_reason='Refused'),
            ],
            actor_principal_id=None,
        )
        return dispatch_session, (cod, prepaid, failed, pending)

    def test_per_order_settlement(self) -> None:
        carrier = self._carrier_with_default_rate(MovementGranularity.PER_ORDER)
        dispatch_session, (cod, prepaid, failed, pending) = self._dispatch_and_import(carrier)

        result = process_settlement(self.db, store_id=self.store.id, session_id=dispatch_session.id, created_by=None)

        self.assertEqual(result['status'], 'COMPLETED')
        self.assertEqual(result['total_orders'], 3)
        self.assertEqual(result['total_carrier_fees'], Decimal('40000.00'))
        self.assertEqual(result['failed_attempt_fees'], Decimal('10000.00'))
        self.assertEqual(result['net_receivable'], Decimal('50000.00'))
        self.assertEqual(len(result['warnings']), 1)

        amounts = {m.order_id: (m.movement_type, m.amount) for m in self.movements(result['settlement_id'])}
        self.assertEqual(amounts[cod.id], (MovementType.DELIVERY_COLLECTED, Decimal('80000.00')))
        self.assertEqual(amounts[prepaid.id], (MovementType.DELIVERY_COLLECTED, Decimal('-20000.00')))
        self.assertEqual(amounts[failed.id], (MovementType.FAILED_ATTEMPT_FEE, Decimal('-10000.00')))
        self.assertNotIn(pending.id, amounts)
        self.assertEqual(replay_balance(self.db, store_id=self.store.id, carrier_id=carrier.id), Decimal('50000.00'))

        self.assertEqual(dispatch_session.status, DispatchSessionStatus.SETTLED)
        self.assertEqual(dispatch_session.settlement_id, result['settlement_id'])
        self.assertEqual(cod.status, OrderStatus.DELIVERED)
        self.assertEqual(failed.status, OrderStatus.READY_TO_SHIP)
        self.assertIsNone(failed.active_dispatch_session_id)
        self.assertEqual(pending.status, OrderStatus.SHIPPED)
        self.assertIsNone(pending.active_dispatch_session_id)

        with self.assertRaises(LedgerConflictError) as ctx:
            process_settlement(self.db, store_id=self.store.id, session_id=dispatch_session.id, created_by=None)
        self.assertEqual(ctx.exception.code, 'ALREADY_SETTLED')
        with self.assertRaises(LedgerConflictError) as ctx:
            cancel_dispatch_session(self.db, store_id=self.store.id, session_id=dispatch_session.id, actor_principal_id=None)
        self.assertEqual(ctx.exception.code, 'ALREADY_SETTLED')

    def test_second_session_on_same_day_can_be_cancelled_and_reconciled(self) -> None:
        carrier = self._carrier_with_default_rate(MovementGranularity.PER_ORDER)
        first, _ = self._dispatch_and_import(carrier)
        late = make_order(self.db, self.store, carrier, 'S-5', '30000')
        second = create_dispatch_session(
            self.db, store_id=self.store.id, carrier_id=carrier.id, order_ids=[late.id], created_by=None
        )
        import_dispatch_results(
            self.db,
            store_id=self.store.id,
            session_id=second.id,
            rows=[DispatchResultRow(order_number='S-5', delivery_status='delivered', amount_collected='30000')],
            actor_principal_id=None,
        )
        process_settlement(self.db, store_id=self.store.id, session_id=first.id, created_by=None)

        with self.assertRaises(LedgerConflictError) as ctx:
            process_settlement(self.db, store_id=self.store.id, session_id=second.id, created_by=None)
        self.assertEqual(ctx.exception.code, 'DUPLICATE_SETTLEMENT')

        cancel_dispatch_session(self.db, store_id=self.store.id, session_id=second.id, actor_principal_id=None)
        self.assertEqual(second.status, DispatchSessionStatus.CANCELLED)
        self.assertEqual(late.status, OrderStatus.SHIPPED)
        self.assertIsNone(late.active_dispatch_session_id)

        result = process_delivery_reconciliation(
            self.db,
            store_id=self.store.id,
            carrier_id=carrier.id,
            delivery_date=self.today + timedelta(days=1),
            orders=[DeliveryOutcome(order_id=late.id, delivered=True)],
            total_amount_collected='30000',
            created_by=None,
        )
        self.assertEqual(result['status'], 'COMPLETED')
        self.assertEqual(late.status, OrderStatus.DELIVERED)

    def test_aggregate_settlement_writes_single_payable(self) -> None:
        carrier = self._carrier_with_default_rate(MovementGranularity.AGGREGATE)
        dispatch_session, _ = self._dispatch_and_import(carrier)

        result = process_settlement(self.db, store_id=self.store.id, session_id=dispatch_session.id, created_by=None)

        movements = self.movements(result['settlement_id'])
        self.assertEqual(len(movements), 1)
        self.assertEqual(movements[0].movement_type, MovementType.SETTLEMENT_PAYABLE)
        self.assertEqual(movements[0].amount, Decimal('50000.00'))
        self.assertIsNone(movements[0].order_id)

    def test_settling_requires_imported_results(self) -> None:
        carrier = make_carrier(self.db, self.store)
        order = make_order(self.db, self.store, carrier, 'S-9', '10000')
        dispatch_session = create_dispatch_session(
            self.db, store_id=self.store.id, carrier_id=carrier.id, order_ids=[order.id], created_by=None
        )
        with self.assertRaises(LedgerConflictError) as ctx:
            process_settlement(self.db, store_id=self.store.id, session_id=dispatch_session.id, created_by=None)
        self.assertEqual(ctx.exception.code, 'RESULTS_NOT_IMPORTED')


class SettlementSummaryTests(SettlementTestCase):
    def setUp(self) -> None:
        super().setUp()
        self.rapido = make_carrier(self.db, self.store, name='Rapido')
        self.veloz = make_carrier(self.db, self.store, name='Veloz')
        self.today_rapido = self._reconcile(self.rapido, 'T-1', '100000', '100000', self.today)
        self.yesterday_rapido = self._reconcile(self.rapido, 'T-2', '50000', '40000', self.today - timedelta(days=1))
        self.today_veloz = self._reconcile(self.veloz, 'T-3', '30000', '30000', self.today)
        for settlement, amount in ((self.today_rapido, '60000'), (self.today_veloz, '30000')):
            pay_settlement(
                self.db,
                store_id=self.store.id,
                settlement_id=settlement['settlement_id'],
                amount=amount,
                method='cash',
                created_by=None,
            )

    def _reconcile(self, carrier, number: str, total: str, collected: str, day) -> dict:
        order = make_shipped_order(self.db, self.store, carrier, number, total)
        return process_delivery_reconciliation(
            self.db,
            store_id=self.store.id,
            carrier_id=carrier.id,
            delivery_date=day,
            orders=[DeliveryOutcome(order_id=order.id, delivered=True)],
            total_amount_collected=collected,
            created_by=None,
        )

    def test_summary_totals(self) -> None:
        summary = get_settlements_summary(self.db, store_id=self.store.id)
        self.assertEqual(summary['total_settlements'], 3)
        self.assertEqual(summary['by_status'], {'PENDING': 0, 'COMPLETED': 2, 'WITH_ISSUES': 1})
        self.assertEqual(summary['fully_paid'], 1)
        self.assertEqual(summary['total_expected_cash'], Decimal('180000.00'))
        self.assertEqual(summary['total_collected_cash'], Decimal('170000.00'))
        self.assertEqual(summary['total_difference'], Decimal('-10000.00'))
        self.assertEqual(summary['total_net_receivable'], Decimal('170000.00'))
        self.assertEqual(summary['total_amount_paid'], Decimal('90000.00'))
        self.assertEqual(summary['total_balance_due'], Decimal('80000.00'))

    def test_summary_filters(self) -> None:
        today = get_settlements_summary(self.db, store_id=self.store.id, from_date=self.today, to_date=self.today)
        self.assertEqual(today['total_settlements'], 2)
        self.assertEqual(today['total_net_receivable'], Decimal('130000.00'))

        veloz = get_settlements_summary(self.db, store_id=self.store.id, carrier_id=self.veloz.id)
        self.assertEqual(veloz['total_settlements'], 1)
        self.assertEqual(veloz['total_balance_due'], Decimal('0.00'))

        with self.assertRaises(LedgerValidationError):
            get_settlements_summary(
                self.db, store_id=self.store.id, from_date=self.today, to_date=self.today - timedelta(days=1)
            )

    def test_pending_by_carrier_skips_paid_settlements(self) -> None:
        carriers = get_pending_by_carrier(self.db, store_id=self.store.id)
        self.assertEqual(len(carriers), 1)
        rapido = carriers[0]
        self.assertEqual(rapido['carrier_name'], 'Rapido')
        self.assertEqual(rapido['pending_settlements'], 2)
        self.assertEqual(rapido['total_balance_due'], Decimal('80000.00'))
        self.assertEqual(rapido['oldest_settlement_date'], self.today - timedelta(days=1))
        self.assertEqual(
            [item['id'] for item in rapido['settlements']],
            [self.yesterday_rapido['settlement_id'], self.today_rapido['settlement_id']],
        )
        self.assertEqual(rapido['settlements'][1]['balance_due'], Decimal('40000.00'))


if __name__ == '__main__':
    unittest.main()
