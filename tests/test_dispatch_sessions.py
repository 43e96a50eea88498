from __future__ import annotations

import csv
import io
import unittest
from datetime import date, datetime, timezone
from decimal import Decimal

from sqlalchemy import select

from carrier_ledger.errors import LedgerConflictError, LedgerNotFoundError, LedgerValidationError
from carrier_ledger.models import DispatchSessionStatus, DispatchSessionOrder, OrderStatus
from carrier_ledger.services.carrier_service import upsert_carrier_zone
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
)
from tests.support import make_carrier, make_engine, make_order, make_session_factory, make_store, random_id


class DispatchSessionTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.db = make_session_factory(self.engine)()
        self.store = make_store(self.db)
        self.carrier = make_carrier(self.db, self.store, name='Rapido')
        upsert_carrier_zone(
            self.db,
            store_id=self.store.id,
            carrier_id=self.carrier.id,
            zone_name='Asuncion',
            rate='25000',
            actor_principal_id=None,
        )
        self.cod = make_order(self.db, self.store, self.carrier, 'A-100', '100000', city='Asunción')
        self.prepaid = make_order(self.db, self.store, self.carrier, 'A-101', '80000', payment_method='card', is_prepaid=True)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def _create(self, *orders):
        return create_dispatch_session(
            self.db,
            store_id=self.store.id,
            carrier_id=self.carrier.id,
            order_ids=[order.id for order in orders],
            created_by=None,
        )

    def test_create_claims_orders_and_snapshots_fees(self) -> None:
        self.assertEqual(len(orders_to_dispatch(self.db, store_id=self.store.id)), 2)
        dispatch_session = self._create(self.cod, self.prepaid)

        self.assertRegex(dispatch_session.session_code, r'^DISP-\d{8}-01$')
        self.assertEqual(dispatch_session.total_orders, 2)
        self.assertEqual(dispatch_session.total_cod_expected, Decimal('100000.00'))
        self.assertEqual(self.cod.status, OrderStatus.SHIPPED)
        self.assertEqual(self.cod.active_dispatch_session_id, dispatch_session.id)
        self.assertEqual(orders_to_dispatch(self.db, store_id=self.store.id), [])

        lines = {
            line.order_number: line
            for line in self.db.execute(
                select(DispatchSessionOrder).where(DispatchSessionOrder.session_id == dispatch_session.id)
            ).scalars()
        }
        self.assertEqual(lines['A-100'].carrier_fee, Decimal('25000.00'))
        self.assertTrue(lines['A-100'].is_cod)
        self.assertEqual(lines['A-101'].carrier_fee, Decimal('0.00'))
        self.assertFalse(lines['A-101'].is_cod)

        groups = shipped_orders_grouped(self.db, store_id=self.store.id)
        self.assertEqual(len(groups), 1)
        self.assertEqual(groups[0]['order_count'], 2)
        self.assertEqual(groups[0]['cod_count'], 1)

    def test_second_session_cannot_claim_same_order(self) -> None:
        self._create(self.cod)
        with self.assertRaises(LedgerValidationError) as ctx:
            self._create(self.cod)
        self.assertEqual(ctx.exception.code, 'ORDER_NOT_DISPATCHABLE')

    def test_claimed_ready_order_is_rejected_as_already_dispatched(self) -> None:
        dispatch_session = self._create(self.cod)
        self.cod.status = OrderStatus.READY_TO_SHIP
        self.db.flush()
        with self.assertRaises(LedgerConflictError) as ctx:
            self._create(self.cod)
        self.assertEqual(ctx.exception.code, 'ORDER_ALREADY_DISPATCHED')
        self.assertEqual(self.cod.active_dispatch_session_id, dispatch_session.id)

    def test_rejects_duplicates_and_unknown_orders(self) -> None:
        with self.assertRaises(LedgerValidationError) as ctx:
            self._create(self.cod, self.cod)
        self.assertEqual(ctx.exception.code, 'DUPLICATE_ORDER_IDS')
        with self.assertRaises(LedgerNotFoundError):
            create_dispatch_session(
                self.db,
                store_id=self.store.id,
                carrier_id=self.carrier.id,
                order_ids=[random_id()],
                created_by=None,
            )

    def test_import_is_partial_and_idempotent(self) -> None:
        dispatch_session = self._create(self.cod, self.prepaid)
        rows = [
            DispatchResultRow(order_number='a-100', delivery_status='delivered', amount_collected='90000'),
            DispatchResultRow(order_id=self.prepaid.id, delivered=False, failure_reason='Nobody home'),
            DispatchResultRow(order_number='Z-999', delivery_status='delivered'),
            DispatchResultRow(order_number='A-100', delivery_status='lost'),
        ]
        result = import_dispatch_results(
            self.db, store_id=self.store.id, session_id=dispatch_session.id, rows=rows, actor_principal_id=None
        )
        self.assertEqual(result['applied'], 2)
        self.assertEqual(result['failed'], 2)
        self.assertEqual(result['status'], DispatchSessionStatus.RESULTS_IMPORTED.value)
        self.assertEqual(len(result['warnings']), 1)

        again = import_dispatch_results(
            self.db, store_id=self.store.id, session_id=dispatch_session.id, rows=rows[:2], actor_principal_id=None
        )
        self.assertEqual(again['applied'], 0)
        self.assertEqual(again['skipped'], 2)

        detail = get_dispatch_session(self.db, store_id=self.store.id, session_id=dispatch_session.id)
        by_number = {line['order_number']: line for line in detail['orders']}
        self.assertEqual(by_number['A-100']['delivery_status'], 'DELIVERED')
        self.assertEqual(by_number['A-100']['amount_collected'], Decimal('90000.00'))
        self.assertEqual(by_number['A-101']['failure_reason'], 'Nobody home')

    def test_cancel_releases_orders(self) -> None:
        dispatch_session = self._create(self.cod)
        cancel_dispatch_session(self.db, store_id=self.store.id, session_id=dispatch_session.id, actor_principal_id=None)
        self.assertEqual(dispatch_session.status, DispatchSessionStatus.CANCELLED)
        self.assertEqual(self.cod.status, OrderStatus.READY_TO_SHIP)
        self.assertIsNone(self.cod.active_dispatch_session_id)

        with self.assertRaises(LedgerConflictError) as ctx:
            import_dispatch_results(
                self.db,
                store_id=self.store.id,
                session_id=dispatch_session.id,
                rows=[DispatchResultRow(order_number='A-100', delivered=True)],
                actor_principal_id=None,
            )
        self.assertEqual(ctx.exception.code, 'SESSION_CANCELLED')

    def test_cancel_after_import_keeps_orders_shipped(self) -> None:
        dispatch_session = self._create(self.cod)
        import_dispatch_results(
            self.db,
            store_id=self.store.id,
            session_id=dispatch_session.id,
            rows=[DispatchResultRow(order_number='A-100', delivered=True)],
            actor_principal_id=None,
        )
        cancel_dispatch_session(self.db, store_id=self.store.id, session_id=dispatch_session.id, actor_principal_id=None)
        self.assertEqual(dispatch_session.status, DispatchSessionStatus.CANCELLED)
        self.assertEqual(self.cod.status, OrderStatus.SHIPPED)
        self.assertIsNone(self.cod.active_dispatch_session_id)

        with self.assertRaises(LedgerConflictError) as ctx:
            cancel_dispatch_session(self.db, store_id=self.store.id, session_id=dispatch_session.id, actor_principal_id=None)
        self.assertEqual(ctx.exception.code, 'SESSION_CANCELLED')

    def test_pending_reconciliation_groups_by_store_local_day(self) -> None:
        late = make_order(self.db, self.store, self.carrier, 'A-200', '50000', status=OrderStatus.DELIVERED)
        late.delivered_at = datetime(2026, 3, 10, 2, 0, tzinfo=timezone.utc)
        early = make_order(self.db, self.store, self.carrier, 'A-201', '60000', status=OrderStatus.DELIVERED)
        early.delivered_at = datetime(2026, 3, 9, 15, 0, tzinfo=timezone.utc)
        done = make_order(self.db, self.store, self.carrier, 'A-202', '70000', status=OrderStatus.DELIVERED)
        done.delivered_at = early.delivered_at
        done.reconciled_at = early.delivered_at
        self.db.flush()

        groups = pending_reconciliation(self.db, store_id=self.store.id)
        self.assertEqual(len(groups), 1)
        self.assertEqual(groups[0]['date'], date(2026, 3, 9))
        self.assertEqual(groups[0]['order_count'], 2)
        self.assertEqual(groups[0]['cod_expected'], Decimal('110000.00'))

    def test_export_csv(self) -> None:
        dispatch_session = self._create(self.cod, self.prepaid)
        filename, content = export_dispatch_csv(self.db, store_id=self.store.id, session_id=dispatch_session.id)
        self.assertEqual(filename, f'{dispatch_session.session_code}.csv')
        rows = list(csv.reader(io.StringIO(content.decode('utf-8'))))
        self.assertEqual(rows[0][:2], ['carrier', 'Rapido'])
        self.assertEqual(len(rows), 4)
        self.assertEqual(rows[2][1], 'A-100')
        self.assertEqual(rows[2][2], '100000.00')
        self.assertEqual(rows[2][6], 'pending')


if __name__ == '__main__':
    unittest.main()
