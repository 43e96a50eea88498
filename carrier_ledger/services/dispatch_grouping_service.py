from __future__ import annotations

import uuid
from collections import OrderedDict

from sqlalchemy import select
from sqlalchemy.orm import Session

from carrier_ledger.models import Carrier, Order, OrderStatus
from carrier_ledger.services.carrier_service import get_store
from carrier_ledger.services.money import ZERO, is_cod_order, quantize_money
from carrier_ledger.services.store_time import local_date, store_zone

DISPATCHABLE_STATUSES = (OrderStatus.CONFIRMED, OrderStatus.READY_TO_SHIP)
IN_FLIGHT_STATUSES = (OrderStatus.SHIPPED, OrderStatus.IN_TRANSIT)


def _order_row(order: Order) -> dict:
    return {
        'id': order.id,
        'order_number': order.order_number,
        'status': order.status.value,
        'carrier_id': order.carrier_id,
        'total_price': quantize_money(order.total_price),
        'is_cod': is_cod_order(is_prepaid=order.is_prepaid, payment_method=order.payment_method),
        'delivery_zone': order.delivery_zone,
        'shipping_city': order.shipping_city,
        'shipped_at': order.shipped_at,
        'delivered_at': order.delivered_at,
    }


def orders_to_dispatch(db: Session, *, store_id: uuid.UUID, carrier_id: uuid.UUID | None = None) -> list[dict]:
    get_store(db, store_id)
    stmt = select(Order).where(
        Order.store_id == store_id,
        Order.status.in_(DISPATCHABLE_STATUSES),
        Order.active_dispatch_session_id.is_(None),
    )
    if carrier_id:
        stmt = stmt.where(Order.carrier_id == carrier_id)
    orders = db.execute(stmt.order_by(Order.created_at.asc(), Order.order_number.asc())).scalars().all()
    return [_order_row(order) for order in orders]


def _group(orders: list[Order], carrier_names: dict[uuid.UUID, str], zone, timestamp_attr: str) -> list[dict]:
    groups: OrderedDict[tuple, dict] = OrderedDict()
    for order in orders:
        day = local_date(getattr(order, timestamp_attr), zone)
        key = (day, order.carrier_id)
        group = groups.get(key)
        if group is None:
            group = {
                'date': day,
                'carrier_id': order.carrier_id,
                'carrier_name': carrier_names.get(order.carrier_id),
                'order_count': 0,
                'cod_count': 0,
                'prepaid_count': 0,
                'cod_expected': ZERO,
                'orders': [],
            }
            groups[key] = group
        cod = is_cod_order(is_prepaid=order.is_prepaid, payment_method=order.payment_method)
        group['order_count'] += 1
        if cod:
            group['cod_count'] += 1
            group['cod_expected'] = quantize_money(group['cod_expected'] + order.total_price)
        else:
            group['prepaid_count'] += 1
        group['orders'].append(_order_row(order))
    return sorted(groups.values(), key=lambda g: (g['date'] is None, g['date'], g['carrier_name'] or ''))


def _carrier_names(db: Session, orders: list[Order]) -> dict[uuid.UUID, str]:
    ids = {order.carrier_id for order in orders if order.carrier_id}
    if not ids:
        return {}
    return dict(db.execute(select(Carrier.id, Carrier.name).where(Carrier.id.in_(ids))).all())


def shipped_orders_grouped(db: Session, *, store_id: uuid.UUID) -> list[dict]:
    store = get_store(db, store_id)
    orders = db.execute(
        select(Order)
        .where(
            Order.store_id == store_id,
            Order.status.in_(IN_FLIGHT_STATUSES),
            Order.carrier_id.is_not(None),
            Order.reconciled_at.is_(None),
        )
        .order_by(Order.shipped_at.asc(), Order.order_number.asc())
    ).scalars().all()
    return _group(orders, _carrier_names(db, orders), store_zone(store), 'shipped_at')


def pending_reconciliation(db: Session, *, store_id: uuid.UUID) -> list[dict]:
    store = get_store(db, store_id)
    orders = db.execute(
        select(Order)
        .where(
            Order.store_id == store_id,
            Order.status == OrderStatus.DELIVERED,
            Order.carrier_id.is_not(None),
            Order.delivered_at.is_not(None),
            Order.reconciled_at.is_(None),
            Order.active_dispatch_session_id.is_(None),
        )
        .order_by(Order.delivered_at.asc(), Order.order_number.asc())
    ).scalars().all()
    return _group(orders, _carrier_names(db, orders), store_zone(store), 'delivered_at')
