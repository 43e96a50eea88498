from __future__ import annotations

import unittest
from decimal import Decimal
from types import SimpleNamespace

from sqlalchemy import select

from carrier_ledger.errors import LedgerNotFoundError, LedgerValidationError
from carrier_ledger.models import AuditLog, MovementGranularity, SettlementType
from carrier_ledger.services.carrier_service import (
    CarrierConfigUpdate,
    bulk_import_carrier_zones,
    coerce_choice,
    delete_carrier_zone,
    fee_for_order,
    list_carrier_zones,
    normalize_zone_name,
    resolve_carrier_fee,
    update_carrier_config,
    upsert_carrier_zone,
    zone_rates_for,
)
from tests.support import make_carrier, make_engine, make_session_factory, make_store, random_id


class FeeLookupTests(unittest.TestCase):
    def test_normalize_strips_accents_case_and_spacing(self) -> None:
        self.assertEqual(normalize_zone_name('  San   Lorenzo '), 'san lorenzo')
        self.assertEqual(normalize_zone_name('Asunción'), 'asuncion')
        self.assertEqual(normalize_zone_name(None), '')

    def test_city_beats_zone_and_fallback(self) -> None:
        rates = {'asuncion': Decimal('25000'), 'centro': Decimal('30000'), 'default': Decimal('40000')}
        self.assertEqual(resolve_carrier_fee(rates, city='ASUNCIÓN', zone='Centro'), Decimal('25000'))
        self.assertEqual(resolve_carrier_fee(rates, city='Luque', zone='centro'), Decimal('30000'))
        self.assertEqual(resolve_carrier_fee(rates, city='Luque', zone=None), Decimal('40000'))

    def test_no_match_without_fallback_is_free(self) -> None:
        self.assertEqual(resolve_carrier_fee({'asuncion': Decimal('1')}, city='Luque', zone=None), Decimal('0.00'))

    def test_salary_carriers_never_charge(self) -> None:
        config = SimpleNamespace(settlement_type=SettlementType.SALARY)
        self.assertEqual(fee_for_order({'default': Decimal('40000')}, config, city='x', zone=None), Decimal('0.00'))

    def test_coerce_choice_accepts_lowercase(self) -> None:
        self.assertEqual(coerce_choice(SettlementType, 'gross', field='settlement_type'), SettlementType.GROSS)
        with self.assertRaises(LedgerValidationError):
            coerce_choice(SettlementType, 'weird', field='settlement_type')


class CarrierZoneTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = make_engine()
        self.db = make_session_factory(self.engine)()
        self.store = make_store(self.db)
        self.carrier = make_carrier(self.db, self.store)

    def tearDown(self) -> None:
        self.db.close()
        self.engine.dispose()

    def test_upsert_updates_existing_zone_by_normalized_name(self) -> None:
        first = upsert_carrier_zone(
            self.db,
            store_id=self.store.id,
            carrier_id=self.carrier.id,
            zone_name='Asunción',
            rate='25000',
            actor_principal_id=None,
        )
        second = upsert_carrier_zone(
            self.db,
            store_id=self.store.id,
            carrier_id=self.carrier.id,
            zone_name='ASUNCION',
            rate='27000',
            actor_principal_id=None,
        )
        self.assertEqual(first.id, second.id)
        rates = zone_rates_for(self.db, store_id=self.store.id, carrier_id=self.carrier.id)
        self.assertEqual(rates, {'asuncion': Decimal('27000.00')})

    def test_bulk_import_reports_row_failures(self) -> None:
        upsert_carrier_zone(
            self.db,
            store_id=self.store.id,
            carrier_id=self.carrier.id,
            zone_name='Luque',
            rate='20000',
            actor_principal_id=None,
        )
        result = bulk_import_carrier_zones(
            self.db,
            store_id=self.store.id,
            carrier_id=self.carrier.id,
            rows=[
                {'zone_name': 'Asuncion', 'rate': '25000'},
                {'zone_name': 'luque', 'rate': '22000'},
                {'zone_name': 'Capiata', 'rate': '-5'},
                {'zone_name': '', 'rate': '1000'},
                {'zone_name': 'ASUNCION', 'rate': '26000'},
            ],
            actor_principal_id=None,
        )
        self.assertEqual(result['created'], 1)
        self.assertEqual(result['updated'], 1)
        self.assertEqual(result['failed'], 3)
        self.assertEqual([error['row'] for error in result['errors']], [2, 3, 4])

        zones = list_carrier_zones(self.db, store_id=self.store.id, carrier_id=self.carrier.id)
        self.assertEqual({zone.zone_key: zone.rate for zone in zones}, {'asuncion': Decimal('25000.00'), 'luque': Decimal('22000.00')})

    def test_delete_zone(self) -> None:
        zone = upsert_carrier_zone(
            self.db,
            store_id=self.store.id,
            carrier_id=self.carrier.id,
            zone_name='Luque',
            rate='20000',
            actor_principal_id=None,
        )
        delete_carrier_zone(
            self.db, store_id=self.store.id, carrier_id=self.carrier.id, zone_id=zone.id, actor_principal_id=None
        )
        self.assertEqual(list_carrier_zones(self.db, store_id=self.store.id, carrier_id=self.carrier.id), [])
        with self.assertRaises(LedgerNotFoundError):
            delete_carrier_zone(
                self.db, store_id=self.store.id, carrier_id=self.carrier.id, zone_id=zone.id, actor_principal_id=None
            )

    def test_config_update_is_audited(self) -> None:
        config = update_carrier_config(
            self.db,
            store_id=self.store.id,
            carrier_id=self.carrier.id,
            changes=CarrierConfigUpdate(
                settlement_type=SettlementType.GROSS,
                movement_granularity=MovementGranularity.AGGREGATE,
                failed_attempt_fee_percent=Decimal('30'),
            ),
            actor_principal_id=None,
        )
        self.assertEqual(config.settlement_type, SettlementType.GROSS)
        self.assertEqual(config.failed_attempt_fee_percent, Decimal('30.00'))
        self.db.flush()
        audit = self.db.execute(select(AuditLog).where(AuditLog.action == 'CARRIER_CONFIG_UPDATE')).scalar_one()
        self.assertEqual(audit.meta['before']['settlement_type'], 'NET')
        self.assertEqual(audit.meta['after']['movement_granularity'], 'AGGREGATE')

    def test_unknown_carrier(self) -> None:
        with self.assertRaises(LedgerNotFoundError) as ctx:
            list_carrier_zones(self.db, store_id=self.store.id, carrier_id=random_id())
        self.assertEqual(ctx.exception.code, 'CARRIER_NOT_FOUND')


if __name__ == '__main__':
    unittest.main()
