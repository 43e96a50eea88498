from __future__ import annotations

import logging
import uuid
from datetime import date

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from carrier_ledger.config import settings
from carrier_ledger.errors import LedgerConflictError
from carrier_ledger.models import CarrierPayment, DispatchSession, Settlement

logger = logging.getLogger(__name__)

CODE_FORMATS = {
    DispatchSession: ('session_code', 'DISP', 2),
    Settlement: ('settlement_code', 'LIQ', 2),
    CarrierPayment: ('payment_code', 'PAG', 3),
}


def next_code(db: Session, model, *, store_id: uuid.UUID, on_date: date, offset: int = 0) -> str:
    attr, prefix, width = CODE_FORMATS[model]
    column = getattr(model, attr)
    stem = f"{prefix}-{on_date.strftime('%d%m%Y')}-"
    taken = db.execute(
        select(func.count()).select_from(model).where(model.store_id == store_id, column.like(stem + '%'))
    ).scalar_one()
    return f'{stem}{taken + 1 + offset:0{width}d}'


def _code_taken(db: Session, model, *, store_id: uuid.UUID, code: str) -> bool:
    column = getattr(model, CODE_FORMATS[model][0])
    found = db.execute(select(model.id).where(model.store_id == store_id, column == code)).scalar_one_or_none()
    return found is not None


def add_with_code(db: Session, row, *, on_date: date) -> str:
    """Insert row under the next free code for its store, retrying on collisions.

    Integrity errors that are not code collisions propagate unchanged.
    """
    model = type(row)
    attr = CODE_FORMATS[model][0]
    for attempt in range(settings.code_generation_retries):
        code = next_code(db, model, store_id=row.store_id, on_date=on_date, offset=attempt)
        setattr(row, attr, code)
        try:
            with db.begin_nested():
                db.add(row)
                db.flush()
        except IntegrityError:
            if not _code_taken(db, model, store_id=row.store_id, code=code):
                raise
            logger.warning('%s %s already taken, retrying (attempt %s)', attr, code, attempt + 1)
            continue
        return code
    raise LedgerConflictError(
        f'Could not allocate a unique {attr}',
        code='CODE_GENERATION_FAILED',
        details={'attempts': settings.code_generation_retries},
    )
