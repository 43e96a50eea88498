from decimal import Decimal

from sqlalchemy import select

from carrier_ledger.db import SessionLocal
from carrier_ledger.models import (
    Carrier,
    CarrierConfig,
    MovementGranularity,
    Order,
    OrderStatus,
    Principal,
    PrincipalRole,
    SettlementType,
    Store,
)
from carrier_ledger.security.passwords import hash_password
from carrier_ledger.services.carrier_service import upsert_carrier_zone

DEMO_ZONES = [('Asuncion', Decimal('25000')), ('Gran Asuncion', Decimal('30000')), ('Interior', Decimal('45000'))]
DEMO_ORDERS = [
    ('DEMO-1001', Decimal('150000'), 'cod', False, 'Asuncion'),
    ('DEMO-1002', Decimal('98000'), 'cod', False, 'Lambare'),
    ('DEMO-1003', Decimal('210000'), 'card', True, 'Asuncion'),
    ('DEMO-1004', Decimal('64000'), 'cash_on_delivery', False, 'Encarnacion'),
]


def seed() -> None:
    with SessionLocal() as db:
        store = db.execute(select(Store).where(Store.name == 'Demo Store')).scalar_one_or_none()
        if not store:
            store = Store(name='Demo Store', timezone='America/Asuncion', active=True)
            db.add(store)
            db.flush()

        carrier = db.execute(select(Carrier).where(Carrier.name == 'Demo Courier')).scalar_one_or_none()
        if not carrier:
            carrier = Carrier(name='Demo Courier', active=True)
            db.add(carrier)
            db.flush()

        config = db.execute(
            select(CarrierConfig).where(CarrierConfig.store_id == store.id, CarrierConfig.carrier_id == carrier.id)
        ).scalar_one_or_none()
        if not config:
            db.add(
                CarrierConfig(
                    store_id=store.id,
                    carrier_id=carrier.id,
                    settlement_type=SettlementType.NET,
                    charges_failed_attempts=True,
                    failed_attempt_fee_percent=Decimal('50'),
                    movement_granularity=MovementGranularity.PER_ORDER,
                    active=True,
                )
            )
            db.flush()

        for zone_name, rate in DEMO_ZONES:
            upsert_carrier_zone(
                db,
                store_id=store.id,
                carrier_id=carrier.id,
                zone_name=zone_name,
                rate=rate,
                actor_principal_id=None,
            )

        for number, total, method, prepaid, city in DEMO_ORDERS:
            existing = db.execute(
                select(Order).where(Order.store_id == store.id, Order.order_number == number)
            ).scalar_one_or_none()
            if existing:
                continue
            db.add(
                Order(
                    store_id=store.id,
                    order_number=number,
                    carrier_id=carrier.id,
                    status=OrderStatus.READY_TO_SHIP,
                    total_price=total,
                    payment_method=method,
                    is_prepaid=prepaid,
                    shipping_city=city,
                )
            )

        admin = db.execute(select(Principal).where(Principal.username == 'admin')).scalar_one_or_none()
        if not admin:
            db.add(
                Principal(
                    username='admin',
                    password_hash=hash_password('adminpass'),
                    role=PrincipalRole.ADMIN,
                    store_id=None,
                    active=True,
                )
            )

        manager = db.execute(select(Principal).where(Principal.username == 'manager')).scalar_one_or_none()
        if not manager:
            db.add(
                Principal(
                    username='manager',
                    password_hash=hash_password('managerpass'),
                    role=PrincipalRole.MANAGER,
                    store_id=store.id,
                    active=True,
                )
            )

        operator = db.execute(select(Principal).where(Principal.username == 'operator')).scalar_one_or_none()
        if not operator:
            db.add(
                Principal(
                    username='operator',
                    password_hash=hash_password('operatorpass'),
                    role=PrincipalRole.OPERATOR,
                    store_id=store.id,
                    active=True,
                )
            )

        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
