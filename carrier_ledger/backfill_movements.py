from __future__ import annotations

import argparse
import uuid

from carrier_ledger.db import SessionLocal
from carrier_ledger.logging_config import configure_logging
from carrier_ledger.services.ledger_health_service import backfill_carrier_movements


def run_backfill(*, store_id: uuid.UUID, apply: bool = False, batch_size: int | None = None) -> dict:
    with SessionLocal() as db:
        summary = backfill_carrier_movements(db, store_id=store_id, dry_run=not apply, batch_size=batch_size)
        if apply:
            db.commit()
        else:
            db.rollback()
    return summary


def main() -> None:
    parser = argparse.ArgumentParser(description='Reconcile carrier account movements against settlements.')
    parser.add_argument('--store-id', required=True, type=uuid.UUID, help='Store to scan.')
    parser.add_argument(
        '--apply',
        action='store_true',
        help='Write the corrections. Without this flag the run only reports what it would change.',
    )
    parser.add_argument('--batch-size', type=int, default=None, help='Settlements per savepoint.')
    args = parser.parse_args()

    configure_logging()
    summary = run_backfill(store_id=args.store_id, apply=args.apply, batch_size=args.batch_size)
    planned = summary['planned']
    applied = summary['applied']
    mode = 'applied' if args.apply else 'dry run'
    print(
        f'Movement backfill ({mode}): scanned={summary["settlements_scanned"]}, '
        f'planned create={planned["create"]} correct={planned["correct"]} remove={planned["remove"]} '
        f'rebuild_cache={planned["rebuild_cache"]}, '
        f'applied create={applied.get("create", 0)} correct={applied.get("correct", 0)} remove={applied.get("remove", 0)}, '
        f'unresolvable={len(summary["unresolvable"])}, failed={len(summary["failed"])}'
    )
    for problem in summary['unresolvable']:
        print(f'  unresolvable: {problem["settlement_code"]} {problem["movement_type"]} {problem["reason"]}')


if __name__ == '__main__':
    main()
