from __future__ import annotations

import uuid
from datetime import date
from decimal import Decimal
from typing import Annotated, Literal

from pydantic import BaseModel, Field, model_validator

from carrier_ledger.config import settings

MAX_AMOUNT = settings.max_amount
PositiveAmount = Annotated[Decimal, Field(gt=0, le=MAX_AMOUNT, decimal_places=2)]
PaymentMethodName = Literal['cash', 'bank_transfer', 'mobile_payment', 'check', 'deduction', 'other']


class LoginRequest(BaseModel):
    username: str = Field(min_length=1, max_length=150)
    password: str = Field(min_length=1, max_length=256)


class CreateDispatchSessionRequest(BaseModel):
    carrier_id: uuid.UUID
    order_ids: list[uuid.UUID] = Field(min_length=1, max_length=500)


class DispatchResultRowIn(BaseModel):
    order_id: uuid.UUID | None = None
    order_number: str | None = Field(default=None, max_length=100)
    delivery_status: str | None = Field(default=None, max_length=32)
    delivered: bool | None = None
    amount_collected: Decimal | str | None = None
    failure_reason: str | None = Field(default=None, max_length=500)
    courier_notes: str | None = Field(default=None, max_length=1000)

    @model_validator(mode='after')
    def _needs_order_reference(self):
        if self.order_id is None and not (self.order_number or '').strip():
            raise ValueError('order_id or order_number is required')
        return self


class ImportResultsRequest(BaseModel):
    rows: list[DispatchResultRowIn] = Field(min_length=1, max_length=2000)


class ProcessSettlementRequest(BaseModel):
    confirm_discrepancy: bool = False
    notes: str | None = Field(default=None, max_length=1000)


class DeliveryOutcomeIn(BaseModel):
    order_id: uuid.UUID
    delivered: bool
    failure_reason: str | None = Field(default=None, max_length=500)


class DeliveryReconciliationRequest(BaseModel):
    carrier_id: uuid.UUID
    delivery_date: date
    orders: list[DeliveryOutcomeIn] = Field(min_length=1, max_length=500)
    total_amount_collected: Decimal = Field(ge=0, le=MAX_AMOUNT, decimal_places=2)
    discrepancy_notes: str | None = Field(default=None, max_length=1000)
    confirm_discrepancy: bool = False


class CompleteSettlementRequest(BaseModel):
    notes: str | None = Field(default=None, max_length=1000)


class PaySettlementRequest(BaseModel):
    amount: PositiveAmount
    method: PaymentMethodName
    payment_reference: str | None = Field(default=None, max_length=200)
    notes: str | None = Field(default=None, max_length=1000)
    idempotency_key: str | None = Field(default=None, max_length=128)


class AdjustmentRequest(BaseModel):
    amount: PositiveAmount
    type: Literal['credit', 'debit']
    description: str = Field(min_length=1, max_length=500)


class PaymentRequest(BaseModel):
    carrier_id: uuid.UUID
    amount: PositiveAmount
    direction: Literal['from_carrier', 'to_carrier']
    method: PaymentMethodName
    payment_reference: str | None = Field(default=None, max_length=200)
    notes: str | None = Field(default=None, max_length=1000)
    settlement_ids: list[uuid.UUID] = Field(default_factory=list, max_length=500)
    movement_ids: list[uuid.UUID] = Field(default_factory=list, max_length=2000)
    idempotency_key: str | None = Field(default=None, max_length=128)


class BackfillRequest(BaseModel):
    dry_run: bool = True


class CarrierConfigPatch(BaseModel):
    settlement_type: Literal['gross', 'net', 'salary'] | None = None
    charges_failed_attempts: bool | None = None
    failed_attempt_fee_percent: Decimal | None = Field(default=None, ge=0, le=100, decimal_places=2)
    payment_schedule: Literal['daily', 'weekly', 'biweekly', 'monthly', 'on_demand'] | None = None
    movement_granularity: Literal['per_order', 'aggregate'] | None = None
    active: bool | None = None


class ZoneIn(BaseModel):
    zone_name: str = Field(min_length=1, max_length=120)
    rate: Decimal = Field(ge=0, le=MAX_AMOUNT, decimal_places=2)


class ZoneRowIn(BaseModel):
    zone_name: str | None = Field(default=None, max_length=120)
    rate: Decimal | str | None = None


class ZoneBulkRequest(BaseModel):
    rows: list[ZoneRowIn] = Field(min_length=1, max_length=5000)
