from __future__ import annotations

import logging
import unicodedata
import uuid
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from carrier_ledger.errors import LedgerNotFoundError, LedgerValidationError
from carrier_ledger.models import (
    Carrier,
    CarrierConfig,
    CarrierZone,
    MovementGranularity,
    PaymentSchedule,
    SettlementType,
    Store,
)
from carrier_ledger.services.audit_service import log_audit
from carrier_ledger.services.money import ZERO, parse_amount

logger = logging.getLogger(__name__)

FALLBACK_ZONE_KEYS = ('default', 'general', 'otros', 'interior')
ZONE_IMPORT_CHUNK = 100


def coerce_choice(enum_cls: type[Enum], value, *, field: str):
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(str(value or '').strip().upper())
    except ValueError as exc:
        allowed = ', '.join(item.value.lower() for item in enum_cls)
        raise LedgerValidationError(f'{field} must be one of: {allowed}', field=field) from exc


def normalize_zone_name(value: str | None) -> str:
    if not value:
        return ''
    decomposed = unicodedata.normalize('NFD', value)
    stripped = ''.join(ch for ch in decomposed if unicodedata.category(ch) != 'Mn')
    return ' '.join(stripped.casefold().split())


def resolve_carrier_fee(zone_rates: dict[str, Decimal], *, city: str | None, zone: str | None) -> Decimal:
    for candidate in (normalize_zone_name(city), normalize_zone_name(zone)):
        if candidate and candidate in zone_rates:
            return zone_rates[candidate]
    for fallback in FALLBACK_ZONE_KEYS:
        if fallback in zone_rates:
            return zone_rates[fallback]
    return ZERO


def get_store(db: Session, store_id: uuid.UUID) -> Store:
    store = db.execute(select(Store).where(Store.id == store_id, Store.active.is_(True))).scalar_one_or_none()
    if not store:
        raise LedgerNotFoundError('Store not found', code='STORE_NOT_FOUND', details={'store_id': store_id})
    return store


def get_carrier_config(db: Session, *, store_id: uuid.UUID, carrier_id: uuid.UUID) -> CarrierConfig:
    config = db.execute(
        select(CarrierConfig).where(CarrierConfig.store_id == store_id, CarrierConfig.carrier_id == carrier_id)
    ).scalar_one_or_none()
    if not config:
        raise LedgerNotFoundError(
            'Carrier is not configured for this store',
            code='CARRIER_NOT_FOUND',
            details={'carrier_id': carrier_id},
        )
    return config


def get_active_carrier_config(db: Session, *, store_id: uuid.UUID, carrier_id: uuid.UUID) -> CarrierConfig:
    config = get_carrier_config(db, store_id=store_id, carrier_id=carrier_id)
    if not config.active:
        raise LedgerValidationError(
            'Carrier is inactive for this store',
            field='carrier_id',
            code='CARRIER_INACTIVE',
        )
    return config


def list_store_carriers(db: Session, *, store_id: uuid.UUID) -> list[tuple[Carrier, CarrierConfig]]:
    rows = db.execute(
        select(Carrier, CarrierConfig)
        .join(CarrierConfig, CarrierConfig.carrier_id == Carrier.id)
        .where(CarrierConfig.store_id == store_id)
        .order_by(Carrier.name.asc())
    ).all()
    return [(carrier, config) for carrier, config in rows]


def serialize_config(config: CarrierConfig) -> dict:
    return {
        'carrier_id': config.carrier_id,
        'settlement_type': config.settlement_type.value,
        'charges_failed_attempts': config.charges_failed_attempts,
        'failed_attempt_fee_percent': config.failed_attempt_fee_percent,
        'payment_schedule': config.payment_schedule.value,
        'movement_granularity': config.movement_granularity.value,
        'active': config.active,
    }


@dataclass(frozen=True)
class CarrierConfigUpdate:
    settlement_type: SettlementType | None = None
    charges_failed_attempts: bool | None = None
    failed_attempt_fee_percent: Decimal | None = None
    payment_schedule: PaymentSchedule | None = None
    movement_granularity: MovementGranularity | None = None
    active: bool | None = None


def update_carrier_config(
    db: Session,
    *,
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    changes: CarrierConfigUpdate,
    actor_principal_id: uuid.UUID | None,
    ip: str | None = None,
) -> CarrierConfig:
    config = get_carrier_config(db, store_id=store_id, carrier_id=carrier_id)
    before = serialize_config(config)

    if changes.failed_attempt_fee_percent is not None:
        percent = parse_amount(
            changes.failed_attempt_fee_percent,
            field='failed_attempt_fee_percent',
            maximum=Decimal('100'),
        )
        config.failed_attempt_fee_percent = percent
    if changes.settlement_type is not None:
        config.settlement_type = changes.settlement_type
    if changes.charges_failed_attempts is not None:
        config.charges_failed_attempts = changes.charges_failed_attempts
    if changes.payment_schedule is not None:
        config.payment_schedule = changes.payment_schedule
    if changes.movement_granularity is not None:
        config.movement_granularity = changes.movement_granularity
    if changes.active is not None:
        config.active = changes.active
    db.flush()

    after = serialize_config(config)
    log_audit(
        db,
        actor_principal_id=actor_principal_id,
        action='CARRIER_CONFIG_UPDATE',
        store_id=store_id,
        ip=ip,
        metadata={'carrier_id': carrier_id, 'before': before, 'after': after},
    )
    return config


def zone_rates_for(db: Session, *, store_id: uuid.UUID, carrier_id: uuid.UUID) -> dict[str, Decimal]:
    rows = db.execute(
        select(CarrierZone.zone_key, CarrierZone.rate).where(
            CarrierZone.store_id == store_id,
            CarrierZone.carrier_id == carrier_id,
            CarrierZone.active.is_(True),
        )
    ).all()
    return {row.zone_key: row.rate for row in rows}


def fee_for_order(zone_rates: dict[str, Decimal], config: CarrierConfig, *, city: str | None, zone: str | None) -> Decimal:
    if config.settlement_type == SettlementType.SALARY:
        return ZERO
    return resolve_carrier_fee(zone_rates, city=city, zone=zone)


def list_carrier_zones(db: Session, *, store_id: uuid.UUID, carrier_id: uuid.UUID) -> list[CarrierZone]:
    get_carrier_config(db, store_id=store_id, carrier_id=carrier_id)
    return db.execute(
        select(CarrierZone)
        .where(CarrierZone.store_id == store_id, CarrierZone.carrier_id == carrier_id)
        .order_by(CarrierZone.zone_name.asc())
    ).scalars().all()


def serialize_zone(zone: CarrierZone) -> dict:
    return {
        'id': zone.id,
        'carrier_id': zone.carrier_id,
        'zone_name': zone.zone_name,
        'rate': zone.rate,
        'active': zone.active,
    }


def _upsert_zone(db: Session, *, store_id: uuid.UUID, carrier_id: uuid.UUID, zone_name, rate) -> tuple[CarrierZone, bool]:
    name = (zone_name or '').strip()
    key = normalize_zone_name(name)
    if not key:
        raise LedgerValidationError('zone_name is required', field='zone_name')
    parsed_rate = parse_amount(rate, field='rate')

    zone = db.execute(
        select(CarrierZone).where(
            CarrierZone.store_id == store_id,
            CarrierZone.carrier_id == carrier_id,
            CarrierZone.zone_key == key,
        )
    ).scalar_one_or_none()
    if zone:
        zone.zone_name = name
        zone.rate = parsed_rate
        zone.active = True
        return zone, False

    zone = CarrierZone(store_id=store_id, carrier_id=carrier_id, zone_name=name, zone_key=key, rate=parsed_rate)
    db.add(zone)
    return zone, True


def upsert_carrier_zone(
    db: Session,
    *,
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    zone_name: str,
    rate,
    actor_principal_id: uuid.UUID | None,
) -> CarrierZone:
    get_carrier_config(db, store_id=store_id, carrier_id=carrier_id)
    zone, created = _upsert_zone(db, store_id=store_id, carrier_id=carrier_id, zone_name=zone_name, rate=rate)
    db.flush()
    log_audit(
        db,
        actor_principal_id=actor_principal_id,
        action='CARRIER_ZONE_CREATE' if created else 'CARRIER_ZONE_UPDATE',
        store_id=store_id,
        metadata={'carrier_id': carrier_id, 'zone_name': zone.zone_name, 'rate': zone.rate},
    )
    return zone


def delete_carrier_zone(
    db: Session,
    *,
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    zone_id: uuid.UUID,
    actor_principal_id: uuid.UUID | None,
) -> None:
    zone = db.execute(
        select(CarrierZone).where(
            CarrierZone.id == zone_id,
            CarrierZone.store_id == store_id,
            CarrierZone.carrier_id == carrier_id,
        )
    ).scalar_one_or_none()
    if not zone:
        raise LedgerNotFoundError('Zone not found', code='ZONE_NOT_FOUND', details={'zone_id': zone_id})
    db.delete(zone)
    db.flush()
    log_audit(
        db,
        actor_principal_id=actor_principal_id,
        action='CARRIER_ZONE_DELETE',
        store_id=store_id,
        metadata={'carrier_id': carrier_id, 'zone_name': zone.zone_name},
    )


def bulk_import_carrier_zones(
    db: Session,
    *,
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    rows: list[dict],
    actor_principal_id: uuid.UUID | None,
) -> dict:
    get_carrier_config(db, store_id=store_id, carrier_id=carrier_id)
    created = 0
    updated = 0
    errors: list[dict] = []
    seen: set[str] = set()

    for start in range(0, len(rows), ZONE_IMPORT_CHUNK):
        for index, row in enumerate(rows[start : start + ZONE_IMPORT_CHUNK], start=start):
            key = normalize_zone_name(row.get('zone_name'))
            if key and key in seen:
                errors.append({'row': index, 'zone_name': row.get('zone_name'), 'error': 'Duplicate zone in import'})
                continue
            try:
                with db.begin_nested():
                    _, was_created = _upsert_zone(
                        db,
                        store_id=store_id,
                        carrier_id=carrier_id,
                        zone_name=row.get('zone_name'),
                        rate=row.get('rate'),
                    )
                    db.flush()
            except LedgerValidationError as exc:
                errors.append({'row': index, 'zone_name': row.get('zone_name'), 'error': exc.message})
                continue
            except IntegrityError:
                errors.append({'row': index, 'zone_name': row.get('zone_name'), 'error': 'Zone conflicts with an existing row'})
                continue
            seen.add(key)
            if was_created:
                created += 1
            else:
                updated += 1

    log_audit(
        db,
        actor_principal_id=actor_principal_id,
        action='CARRIER_ZONE_BULK_IMPORT',
        store_id=store_id,
        metadata={'carrier_id': carrier_id, 'created': created, 'updated': updated, 'failed': len(errors)},
    )
    logger.info(
        'zone import for carrier %s: created=%s updated=%s failed=%s', carrier_id, created, updated, len(errors)
    )
    return {'created': created, 'updated': updated, 'failed': len(errors), 'errors': errors}
