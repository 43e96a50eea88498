from __future__ import annotations

import uuid

from fastapi import APIRouter, Depends, Request, status
from sqlalchemy.orm import Session

from carrier_ledger.auth import Principal, Role, assert_store_scope, require_role
from carrier_ledger.db import get_db
from carrier_ledger.dependencies import get_client_ip
from carrier_ledger.models import MovementGranularity, PaymentSchedule, SettlementType
from carrier_ledger.schemas import CarrierConfigPatch, ZoneBulkRequest, ZoneIn
from carrier_ledger.serialization import to_jsonable
from carrier_ledger.services.carrier_service import (
    CarrierConfigUpdate,
    bulk_import_carrier_zones,
    coerce_choice,
    delete_carrier_zone,
    get_carrier_config,
    list_carrier_zones,
    list_store_carriers,
    serialize_config,
    serialize_zone,
    update_carrier_config,
    upsert_carrier_zone,
)

router = APIRouter(prefix='/stores/{store_id}/carriers', tags=['carriers'])
operator_access = require_role(Role.ADMIN, Role.MANAGER, Role.OPERATOR)
manager_access = require_role(Role.ADMIN, Role.MANAGER)


def _optional_choice(enum_cls, value, field: str):
    return coerce_choice(enum_cls, value, field=field) if value is not None else None


@router.get('')
def carriers_index(
    store_id: uuid.UUID,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    carriers = [
        {'id': carrier.id, 'name': carrier.name, 'config': serialize_config(config)}
        for carrier, config in list_store_carriers(db, store_id=store_id)
    ]
    return to_jsonable({'carriers': carriers})


@router.get('/{carrier_id}/config')
def carrier_config(
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    return to_jsonable(serialize_config(get_carrier_config(db, store_id=store_id, carrier_id=carrier_id)))


@router.patch('/{carrier_id}/config')
def patch_carrier_config(
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    payload: CarrierConfigPatch,
    request: Request,
    principal: Principal = Depends(manager_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    changes = CarrierConfigUpdate(
        settlement_type=_optional_choice(SettlementType, payload.settlement_type, 'settlement_type'),
        charges_failed_attempts=payload.charges_failed_attempts,
        failed_attempt_fee_percent=payload.failed_attempt_fee_percent,
        payment_schedule=_optional_choice(PaymentSchedule, payload.payment_schedule, 'payment_schedule'),
        movement_granularity=_optional_choice(MovementGranularity, payload.movement_granularity, 'movement_granularity'),
        active=payload.active,
    )
    config = update_carrier_config(
        db,
        store_id=store_id,
        carrier_id=carrier_id,
        changes=changes,
        actor_principal_id=principal.id,
        ip=get_client_ip(request),
    )
    db.commit()
    return to_jsonable(serialize_config(config))


@router.get('/{carrier_id}/zones')
def zones_index(
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    principal: Principal = Depends(operator_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    zones = list_carrier_zones(db, store_id=store_id, carrier_id=carrier_id)
    return to_jsonable({'zones': [serialize_zone(zone) for zone in zones]})


@router.post('/{carrier_id}/zones')
def save_zone(
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    payload: ZoneIn,
    principal: Principal = Depends(manager_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    zone = upsert_carrier_zone(
        db,
        store_id=store_id,
        carrier_id=carrier_id,
        zone_name=payload.zone_name,
        rate=payload.rate,
        actor_principal_id=principal.id,
    )
    db.commit()
    return to_jsonable(serialize_zone(zone))


@router.post('/{carrier_id}/zones/bulk')
def import_zones(
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    payload: ZoneBulkRequest,
    principal: Principal = Depends(manager_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    result = bulk_import_carrier_zones(
        db,
        store_id=store_id,
        carrier_id=carrier_id,
        rows=[row.model_dump() for row in payload.rows],
        actor_principal_id=principal.id,
    )
    db.commit()
    return to_jsonable(result)


@router.delete('/{carrier_id}/zones/{zone_id}', status_code=status.HTTP_204_NO_CONTENT)
def remove_zone(
    store_id: uuid.UUID,
    carrier_id: uuid.UUID,
    zone_id: uuid.UUID,
    principal: Principal = Depends(manager_access),
    db: Session = Depends(get_db),
):
    assert_store_scope(principal, store_id)
    delete_carrier_zone(
        db,
        store_id=store_id,
        carrier_id=carrier_id,
        zone_id=zone_id,
        actor_principal_id=principal.id,
    )
    db.commit()
