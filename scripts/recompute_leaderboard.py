#!/usr/bin/env python3
"""
Recompute contest leaderboards by hand, e.g. after restoring a database backup.
Runs inline against DATABASE_URL instead of going through the Celery queue.
"""

import argparse
import sys

from skillport.core.errors import LeaderboardError
from skillport.core.logging_config import setup_logging
from skillport.db.session import SessionLocal
from skillport.models import Contest, ContestStatus
from skillport.services.broadcast import leaderboard_broadcaster
from skillport.services.leaderboard import LeaderboardCalculator


def recompute(contest_ids: list[str], broadcast: bool) -> bool:
    db = SessionLocal()
    ok = True
    try:
        if not contest_ids:
            contest_ids = [cid for (cid,) in db.query(Contest.id).filter(Contest.status == ContestStatus.ACTIVE).all()]
        calculator = LeaderboardCalculator(db, leaderboard_broadcaster if broadcast else None)
        for contest_id in contest_ids:
            try:
                snapshot = calculator.recompute(contest_id)
                print(f"{contest_id}: ranked {len(snapshot.entries)} participants")
            except LeaderboardError as e:
                ok = False
                print(f"{contest_id}: failed ({e.message})", file=sys.stderr)
    finally:
        db.close()
    return ok


if __name__ == "__main__":
    parser = argparse.ArgumentParser(description=__doc__)
    parser.add_argument("contest_ids", nargs="*", help="Contests to recompute (default: all ACTIVE)")
    parser.add_argument("--no-broadcast", action="store_true", help="Skip pushing snapshots to live viewers")
    args = parser.parse_args()

    setup_logging()
    success = recompute(args.contest_ids, broadcast=not args.no_broadcast)
    sys.exit(0 if success else 1)
