from __future__ import annotations

import uuid
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import create_engine, event
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from carrier_ledger.models import (
    Base,
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

STORE_TIMEZONE = 'America/Asuncion'


def make_engine():
    engine = create_engine(
        'sqlite://',
        connect_args={'check_same_thread': False},
        poolclass=StaticPool,
    )

    # pysqlite's own transaction handling breaks SAVEPOINT; let SQLAlchemy emit BEGIN.
    @event.listens_for(engine, 'connect')
    def _disable_pysqlite_transactions(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, 'begin')
    def _emit_begin(conn):
        conn.exec_driver_sql('BEGIN')

    Base.metadata.create_all(engine)
    return engine


def make_session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False)


def make_store(db: Session, *, name: str = 'Test Store', tz: str | None = STORE_TIMEZONE) -> Store:
    store = Store(name=name, timezone=tz, active=True)
    db.add(store)
    db.flush()
    return store


def make_carrier(
    db: Session,
    store: Store,
    *,
    name: str = 'Courier',
    settlement_type: SettlementType = SettlementType.NET,
    charges_failed_attempts: bool = False,
    failed_attempt_fee_percent: Decimal = Decimal('50'),
    granularity: MovementGranularity = MovementGranularity.PER_ORDER,
    active: bool = True,
) -> Carrier:
    carrier = Carrier(name=name, active=True)
    db.add(carrier)
    db.flush()
    db.add(
        CarrierConfig(
            store_id=store.id,
            carrier_id=carrier.id,
            settlement_type=settlement_type,
            charges_failed_attempts=charges_failed_attempts,
            failed_attempt_fee_percent=failed_attempt_fee_percent,
            movement_granularity=granularity,
            active=active,
        )
    )
    db.flush()
    return carrier


def make_order(
    db: Session,
    store: Store,
    carrier: Carrier | None,
    number: str,
    total: str | Decimal,
    *,
    payment_method: str = 'cod',
    is_prepaid: bool = False,
    status: OrderStatus = OrderStatus.READY_TO_SHIP,
    city: str | None = None,
    zone: str | None = None,
    shipped_at: datetime | None = None,
) -> Order:
    order = Order(
        store_id=store.id,
        order_number=number,
        carrier_id=carrier.id if carrier else None,
        status=status,
        total_price=Decimal(total),
        payment_method=payment_method,
        is_prepaid=is_prepaid,
        shipping_city=city,
        delivery_zone=zone,
        shipped_at=shipped_at,
    )
    db.add(order)
    db.flush()
    return order


def make_shipped_order(db: Session, store: Store, carrier: Carrier, number: str, total: str | Decimal, **kwargs) -> Order:
    kwargs.setdefault('shipped_at', datetime.now(tz=timezone.utc))
    return make_order(db, store, carrier, number, total, status=OrderStatus.SHIPPED, **kwargs)


def make_principal(
    db: Session,
    *,
    username: str,
    password: str = 'secret-pass',
    role: PrincipalRole = PrincipalRole.MANAGER,
    store: Store | None = None,
    active: bool = True,
) -> Principal:
    principal = Principal(
        username=username,
        password_hash=hash_password(password),
        role=role,
        store_id=store.id if store else None,
        active=active,
    )
    db.add(principal)
    db.flush()
    return principal


def random_id() -> uuid.UUID:
    return uuid.uuid4()
