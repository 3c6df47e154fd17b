"""
Daily telemetry consolidation: builds one Merkle-rooted batch per vehicle for a UTC day
and anchors it on Solana. Schedule once a day (e.g. 02:00 UTC); safe to re-run.

Usage:
  python scripts/consolidate_telemetry.py                 # yesterday
  python scripts/consolidate_telemetry.py --date 2026-05-01
  python scripts/consolidate_telemetry.py --retry-failed
"""
from __future__ import annotations

import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))


def run(app, *, day: str | None = None, retry_failed: bool = False) -> dict:
    from app.veridrive.db import db_session
    from app.veridrive.modules.telemetry.consolidation import consolidate_day, parse_batch_date, retry_failed_batches

    with app.app_context():
        s = db_session()
        summary = consolidate_day(s, parse_batch_date(day)).to_dict()
        if retry_failed:
            summary["retried"] = retry_failed_batches(s)
        s.commit()
    return summary


def main() -> None:
    import argparse

    parser = argparse.ArgumentParser(description="Consolidate a day of vehicle telemetry and anchor the Merkle roots")
    parser.add_argument("--date", help="UTC day to consolidate (YYYY-MM-DD); defaults to yesterday")
    parser.add_argument("--retry-failed", action="store_true", help="Also retry batches left in error by earlier runs")
    args = parser.parse_args()

    from app.veridrive import create_app

    summary = run(create_app(), day=args.date, retry_failed=args.retry_failed)
    print(
        f"Consolidated {summary['date']}: processed={summary['processed']} "
        f"anchored={summary['anchored']} failed={summary['failed']}"
    )
    for err in summary["errors"]:
        print(f"  {err}")
    if "retried" in summary:
        print(f"Retried batches anchored: {summary['retried']}")
    if summary["failed"]:
        sys.exit(1)


if __name__ == "__main__":
    main()
