from __future__ import annotations

import uuid
from datetime import date, datetime, timezone
from decimal import Decimal
from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
    text,
)
from sqlalchemy.dialects.postgresql import CITEXT, INET
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

CaseInsensitiveText = Text().with_variant(CITEXT(), 'postgresql')
IPAddress = String(64).with_variant(INET(), 'postgresql')
Money = Numeric(14, 2)


def _utcnow() -> datetime:
    return datetime.now(tz=timezone.utc)


class Base(DeclarativeBase):
    pass


class PrincipalRole(str, Enum):
    ADMIN = 'ADMIN'
    MANAGER = 'MANAGER'
    OPERATOR = 'OPERATOR'


class SettlementType(str, Enum):
    GROSS = 'GROSS'
    NET = 'NET'
    SALARY = 'SALARY'


class PaymentSchedule(str, Enum):
    DAILY = 'DAILY'
    WEEKLY = 'WEEKLY'
    BIWEEKLY = 'BIWEEKLY'
    MONTHLY = 'MONTHLY'
    ON_DEMAND = 'ON_DEMAND'


class MovementGranularity(str, Enum):
    PER_ORDER = 'PER_ORDER'
    AGGREGATE = 'AGGREGATE'


class OrderStatus(str, Enum):
    PENDING = 'PENDING'
    CONFIRMED = 'CONFIRMED'
    READY_TO_SHIP = 'READY_TO_SHIP'
    SHIPPED = 'SHIPPED'
    IN_TRANSIT = 'IN_TRANSIT'
    DELIVERED = 'DELIVERED'
    RETURNED = 'RETURNED'
    CANCELLED = 'CANCELLED'


class DispatchSessionStatus(str, Enum):
    OPEN = 'OPEN'
    RESULTS_IMPORTED = 'RESULTS_IMPORTED'
    SETTLED = 'SETTLED'
    CANCELLED = 'CANCELLED'


class DeliveryStatus(str, Enum):
    PENDING = 'PENDING'
    DELIVERED = 'DELIVERED'
    NOT_DELIVERED = 'NOT_DELIVERED'
    REJECTED = 'REJECTED'
    RESCHEDULED = 'RESCHEDULED'
    RETURNED = 'RETURNED'


class SettlementSource(str, Enum):
    DISPATCH_SESSION = 'DISPATCH_SESSION'
    DELIVERY = 'DELIVERY'


class SettlementStatus(str, Enum):
    PENDING = 'PENDING'
    COMPLETED = 'COMPLETED'
    WITH_ISSUES = 'WITH_ISSUES'


class MovementType(str, Enum):
    DELIVERY_COLLECTED = 'DELIVERY_COLLECTED'
    FAILED_ATTEMPT_FEE = 'FAILED_ATTEMPT_FEE'
    SETTLEMENT_PAYABLE = 'SETTLEMENT_PAYABLE'
    ADJUSTMENT_CREDIT = 'ADJUSTMENT_CREDIT'
    ADJUSTMENT_DEBIT = 'ADJUSTMENT_DEBIT'
    PAYMENT_RECEIVED = 'PAYMENT_RECEIVED'
    PAYMENT_SENT = 'PAYMENT_SENT'


SETTLEMENT_MOVEMENT_TYPES = (
    MovementType.DELIVERY_COLLECTED,
    MovementType.FAILED_ATTEMPT_FEE,
    MovementType.SETTLEMENT_PAYABLE,
)


class PaymentDirection(str, Enum):
    FROM_CARRIER = 'FROM_CARRIER'
    TO_CARRIER = 'TO_CARRIER'


class PaymentMethod(str, Enum):
    CASH = 'CASH'
    BANK_TRANSFER = 'BANK_TRANSFER'
    MOBILE_PAYMENT = 'MOBILE_PAYMENT'
    CHECK = 'CHECK'
    DEDUCTION = 'DEDUCTION'
    OTHER = 'OTHER'


class Store(Base):
    __tablename__ = 'stores'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    timezone: Mapped[str | None] = mapped_column(Text)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Principal(Base):
    __tablename__ = 'principals'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    username: Mapped[str] = mapped_column(CaseInsensitiveText, nullable=False, unique=True)
    password_hash: Mapped[str] = mapped_column(Text, nullable=False)
    role: Mapped[PrincipalRole] = mapped_column(SQLEnum(PrincipalRole, name='principal_role'), nullable=False)
    store_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('stores.id'))
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuthEvent(Base):
    __tablename__ = 'auth_events'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    attempted_username: Mapped[str] = mapped_column(CaseInsensitiveText, nullable=False)
    success: Mapped[bool] = mapped_column(Boolean, nullable=False)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    principal_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('principals.id'))
    ip: Mapped[str | None] = mapped_column(IPAddress)
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_log'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    actor_principal_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('principals.id'))
    action: Mapped[str] = mapped_column(Text, nullable=False)
    store_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('stores.id'))
    ip: Mapped[str | None] = mapped_column(IPAddress)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict, server_default='{}')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class WebSession(Base):
    __tablename__ = 'web_sessions'
    __table_args__ = (
        UniqueConstraint('token_hash', name='web_sessions_token_hash_key'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    token_hash: Mapped[str] = mapped_column(String(64), nullable=False)
    principal_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('principals.id'), nullable=False)
    ip: Mapped[str | None] = mapped_column(IPAddress)
    user_agent: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    last_seen_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    revoked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Carrier(Base):
    __tablename__ = 'carriers'

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(Text, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class CarrierConfig(Base):
    __tablename__ = 'carrier_configs'
    __table_args__ = (
        UniqueConstraint('store_id', 'carrier_id', name='carrier_configs_store_carrier_key'),
        CheckConstraint(
            'failed_attempt_fee_percent >= 0 AND failed_attempt_fee_percent <= 100',
            name='carrier_configs_fee_percent_ck',
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('stores.id', ondelete='CASCADE'), nullable=False)
    carrier_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('carriers.id'), nullable=False)
    settlement_type: Mapped[SettlementType] = mapped_column(
        SQLEnum(SettlementType, name='carrier_settlement_type'),
        nullable=False,
        default=SettlementType.NET,
    )
    charges_failed_attempts: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    failed_attempt_fee_percent: Mapped[Decimal] = mapped_column(
        Numeric(5, 2), nullable=False, default=Decimal('50'), server_default='50'
    )
    payment_schedule: Mapped[PaymentSchedule] = mapped_column(
        SQLEnum(PaymentSchedule, name='carrier_payment_schedule'),
        nullable=False,
        default=PaymentSchedule.WEEKLY,
    )
    movement_granularity: Mapped[MovementGranularity] = mapped_column(
        SQLEnum(MovementGranularity, name='carrier_movement_granularity'),
        nullable=False,
        default=MovementGranularity.PER_ORDER,
    )
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class CarrierZone(Base):
    __tablename__ = 'carrier_zones'
    __table_args__ = (
        UniqueConstraint('store_id', 'carrier_id', 'zone_key', name='carrier_zones_store_carrier_zone_key'),
        CheckConstraint('rate >= 0', name='carrier_zones_rate_non_negative_ck'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('stores.id', ondelete='CASCADE'), nullable=False)
    carrier_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('carriers.id'), nullable=False)
    zone_name: Mapped[str] = mapped_column(Text, nullable=False)
    zone_key: Mapped[str] = mapped_column(Text, nullable=False)
    rate: Mapped[Decimal] = mapped_column(Money, nullable=False)
    active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True, server_default='true')
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Order(Base):
    __tablename__ = 'orders'
    __table_args__ = (
        UniqueConstraint('store_id', 'order_number', name='orders_store_order_number_key'),
        Index('orders_store_status_idx', 'store_id', 'status'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('stores.id', ondelete='CASCADE'), nullable=False)
    order_number: Mapped[str] = mapped_column(Text, nullable=False)
    carrier_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('carriers.id'))
    status: Mapped[OrderStatus] = mapped_column(SQLEnum(OrderStatus, name='order_status'), nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    payment_method: Mapped[str | None] = mapped_column(Text)
    is_prepaid: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    delivery_zone: Mapped[str | None] = mapped_column(Text)
    shipping_city: Mapped[str | None] = mapped_column(Text)
    active_dispatch_session_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('dispatch_sessions.id'))
    shipped_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    reconciled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    amount_collected: Mapped[Decimal | None] = mapped_column(Money)
    has_amount_discrepancy: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class DispatchSession(Base):
    __tablename__ = 'dispatch_sessions'
    __table_args__ = (
        UniqueConstraint('store_id', 'session_code', name='dispatch_sessions_store_code_key'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_code: Mapped[str] = mapped_column(Text, nullable=False)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('stores.id', ondelete='CASCADE'), nullable=False)
    carrier_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('carriers.id'), nullable=False)
    dispatch_date: Mapped[date] = mapped_column(Date, nullable=False)
    status: Mapped[DispatchSessionStatus] = mapped_column(
        SQLEnum(DispatchSessionStatus, name='dispatch_session_status'),
        nullable=False,
        default=DispatchSessionStatus.OPEN,
    )
    total_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cod_expected: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'))
    settlement_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('settlements.id', use_alter=True))
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('principals.id'))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    imported_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    settled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class DispatchSessionOrder(Base):
    __tablename__ = 'dispatch_session_orders'
    __table_args__ = (
        UniqueConstraint('session_id', 'order_id', name='dispatch_session_orders_session_order_key'),
        CheckConstraint('amount_collected IS NULL OR amount_collected >= 0', name='dispatch_session_orders_collected_ck'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    session_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey('dispatch_sessions.id', ondelete='CASCADE'), nullable=False
    )
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('orders.id'), nullable=False)
    order_number: Mapped[str] = mapped_column(Text, nullable=False)
    total_price: Mapped[Decimal] = mapped_column(Money, nullable=False)
    is_cod: Mapped[bool] = mapped_column(Boolean, nullable=False)
    carrier_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'))
    delivery_zone: Mapped[str | None] = mapped_column(Text)
    delivery_status: Mapped[DeliveryStatus] = mapped_column(
        SQLEnum(DeliveryStatus, name='dispatch_delivery_status'),
        nullable=False,
        default=DeliveryStatus.PENDING,
    )
    amount_collected: Mapped[Decimal | None] = mapped_column(Money)
    failure_reason: Mapped[str | None] = mapped_column(Text)
    courier_notes: Mapped[str | None] = mapped_column(Text)
    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))


class Settlement(Base):
    __tablename__ = 'settlements'
    __table_args__ = (
        UniqueConstraint('store_id', 'settlement_date', 'carrier_id', name='settlements_store_date_carrier_key'),
        UniqueConstraint('store_id', 'settlement_code', name='settlements_store_code_key'),
        CheckConstraint('amount_paid >= 0', name='settlements_amount_paid_non_negative_ck'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    settlement_code: Mapped[str] = mapped_column(Text, nullable=False)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('stores.id', ondelete='CASCADE'), nullable=False)
    carrier_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('carriers.id'), nullable=False)
    settlement_date: Mapped[date] = mapped_column(Date, nullable=False)
    source: Mapped[SettlementSource] = mapped_column(SQLEnum(SettlementSource, name='settlement_source'), nullable=False)
    dispatch_session_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('dispatch_sessions.id'))
    total_orders: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_delivered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_not_delivered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_cod_delivered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    total_prepaid_delivered: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    expected_cash: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'))
    collected_cash: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'))
    difference: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'))
    total_carrier_fees: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'))
    failed_attempt_fees: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'))
    net_receivable: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'))
    amount_paid: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'))
    status: Mapped[SettlementStatus] = mapped_column(
        SQLEnum(SettlementStatus, name='settlement_status'),
        nullable=False,
        default=SettlementStatus.PENDING,
    )
    discrepancy_confirmed: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    movement_granularity: Mapped[MovementGranularity] = mapped_column(
        SQLEnum(MovementGranularity, name='carrier_movement_granularity'),
        nullable=False,
        default=MovementGranularity.PER_ORDER,
    )
    notes: Mapped[str | None] = mapped_column(Text)
    payment_method: Mapped[PaymentMethod | None] = mapped_column(SQLEnum(PaymentMethod, name='carrier_payment_method'))
    payment_reference: Mapped[str | None] = mapped_column(Text)
    paid_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('principals.id'))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class SettlementOrder(Base):
    __tablename__ = 'settlement_orders'
    __table_args__ = (
        UniqueConstraint('settlement_id', 'order_id', name='settlement_orders_settlement_order_key'),
        Index(
            'settlement_orders_delivered_order_key',
            'order_id',
            unique=True,
            postgresql_where=text('delivered'),
            sqlite_where=text('delivered = 1'),
        ),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    settlement_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('settlements.id', ondelete='CASCADE'), nullable=False)
    order_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('orders.id'), nullable=False)
    order_number: Mapped[str] = mapped_column(Text, nullable=False)
    order_total: Mapped[Decimal] = mapped_column(Money, nullable=False)
    is_cod: Mapped[bool] = mapped_column(Boolean, nullable=False)
    delivered: Mapped[bool] = mapped_column(Boolean, nullable=False)
    expected_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'))
    amount_collected: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'))
    carrier_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'))
    failed_attempt_fee: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'))
    failure_reason: Mapped[str | None] = mapped_column(Text)


class CarrierAccountMovement(Base):
    __tablename__ = 'carrier_account_movements'
    __table_args__ = (
        UniqueConstraint(
            'settlement_id', 'order_id', 'movement_type', name='carrier_account_movements_settlement_order_type_key'
        ),
        Index(
            'carrier_account_movements_delivery_order_key',
            'order_id',
            unique=True,
            postgresql_where=text("movement_type = 'DELIVERY_COLLECTED'"),
            sqlite_where=text("movement_type = 'DELIVERY_COLLECTED'"),
        ),
        Index(
            'carrier_account_movements_payable_settlement_key',
            'settlement_id',
            unique=True,
            postgresql_where=text("movement_type = 'SETTLEMENT_PAYABLE'"),
            sqlite_where=text("movement_type = 'SETTLEMENT_PAYABLE'"),
        ),
        Index('carrier_account_movements_store_carrier_idx', 'store_id', 'carrier_id', 'created_at'),
        CheckConstraint('settled_amount >= 0', name='carrier_account_movements_settled_non_negative_ck'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('stores.id', ondelete='CASCADE'), nullable=False)
    carrier_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('carriers.id'), nullable=False)
    movement_type: Mapped[MovementType] = mapped_column(
        SQLEnum(MovementType, name='carrier_movement_type'), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    settled_amount: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'))
    is_settled: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    order_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('orders.id'))
    order_number: Mapped[str | None] = mapped_column(Text)
    dispatch_session_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('dispatch_sessions.id'))
    settlement_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('settlements.id'))
    payment_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('carrier_payments.id'))
    description: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    movement_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('principals.id'))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class CarrierPayment(Base):
    __tablename__ = 'carrier_payments'
    __table_args__ = (
        UniqueConstraint('store_id', 'payment_code', name='carrier_payments_store_code_key'),
        UniqueConstraint('store_id', 'idempotency_key', name='carrier_payments_store_idempotency_key'),
        CheckConstraint('amount > 0', name='carrier_payments_amount_positive_ck'),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    payment_code: Mapped[str] = mapped_column(Text, nullable=False)
    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('stores.id', ondelete='CASCADE'), nullable=False)
    carrier_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('carriers.id'), nullable=False)
    direction: Mapped[PaymentDirection] = mapped_column(
        SQLEnum(PaymentDirection, name='carrier_payment_direction'), nullable=False
    )
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    method: Mapped[PaymentMethod] = mapped_column(SQLEnum(PaymentMethod, name='carrier_payment_method'), nullable=False)
    reference: Mapped[str | None] = mapped_column(Text)
    notes: Mapped[str | None] = mapped_column(Text)
    idempotency_key: Mapped[str | None] = mapped_column(String(128))
    settlement_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    payment_date: Mapped[date] = mapped_column(Date, nullable=False)
    created_by: Mapped[uuid.UUID | None] = mapped_column(Uuid, ForeignKey('principals.id'))
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )


class PaymentApplication(Base):
    __tablename__ = 'payment_applications'
    __table_args__ = (
        CheckConstraint('amount > 0', name='payment_applications_amount_positive_ck'),
    )

    payment_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey('carrier_payments.id', ondelete='CASCADE'), primary_key=True
    )
    movement_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('carrier_account_movements.id'), primary_key=True)
    amount: Mapped[Decimal] = mapped_column(Money, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class CarrierAccountBalance(Base):
    __tablename__ = 'carrier_account_balances'

    store_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('stores.id', ondelete='CASCADE'), primary_key=True)
    carrier_id: Mapped[uuid.UUID] = mapped_column(Uuid, ForeignKey('carriers.id'), primary_key=True)
    balance: Mapped[Decimal] = mapped_column(Money, nullable=False, default=Decimal('0'))
    movement_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=_utcnow, server_default=func.now()
    )
