from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from carrier_ledger.config import settings
from carrier_ledger.models import Store

logger = logging.getLogger(__name__)


def now_utc() -> datetime:
    return datetime.now(tz=timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    # Some drivers hand back naive timestamps; they are stored as UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def store_zone(store: Store | None) -> ZoneInfo:
    name = (store.timezone if store else None) or settings.default_store_timezone
    try:
        return ZoneInfo(name)
    except ZoneInfoNotFoundError:
        logger.warning('unknown store timezone %r, falling back to %s', name, settings.default_store_timezone)
        return ZoneInfo(settings.default_store_timezone)


def local_date(value: datetime | None, zone: ZoneInfo) -> date | None:
    value = as_utc(value)
    if value is None:
        return None
    return value.astimezone(zone).date()


def local_today(zone: ZoneInfo) -> date:
    return now_utc().astimezone(zone).date()
