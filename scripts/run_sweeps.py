"""
Run the periodic time-clock sweeps once (escalation, auto-approval,
reminders, missing clock-outs, shift closing, retention cleanup).

Usage:
    python scripts/run_sweeps.py [--only escalate,auto_approve] [--loop 3600]

Schedule it with cron, a container job, or --loop.
"""
import sys
import os
import time
import argparse

# Add parent directory to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '..')))

from timeclock.db import SessionLocal
from timeclock.logging import setup_logging
from timeclock.services import sweeps
from timeclock.services.notifications import NotificationOutbox


SWEEPS = {
    "escalate": lambda db, outbox: sweeps.escalate_stale_corrections(db),
    "auto_approve": lambda db, outbox: sweeps.auto_approve_escalated_corrections(db),
    "remind": lambda db, outbox: sweeps.remind_pending_corrections(db, outbox),
    "missing_clock_outs": lambda db, outbox: sweeps.flag_missing_clock_outs(db),
    "close_shifts": lambda db, outbox: sweeps.close_ended_shifts(db),
    "cleanup_pings": lambda db, outbox: sweeps.cleanup_location_pings(db),
    "cleanup_notifications": lambda db, outbox: sweeps.cleanup_notifications(db),
}


def run_once(only=None) -> int:
    db = SessionLocal()
    outbox = NotificationOutbox()
    failures = 0
    try:
        if not only:
            results = sweeps.run_all_sweeps(db, outbox)
            failures = sum(1 for v in results.values() if v < 0)
        else:
            results = {}
            for name in only:
                try:
                    results[name] = SWEEPS[name](db, outbox)
                except Exception as e:
                    print(f"[ERROR] Sweep {name} failed: {e}")
                    results[name] = -1
                    failures += 1
        report = outbox.flush()
    finally:
        db.close()

    print("[STATS] Sweep summary:")
    for name, count in results.items():
        print(f"   {name}: {count}")
    print(f"   notifications sent: {report.sent}, failed: {len(report.failed)}")
    return failures


def main():
    parser = argparse.ArgumentParser(description="Run time-clock background sweeps")
    parser.add_argument("--only", help=f"Comma-separated subset of: {', '.join(SWEEPS)}")
    parser.add_argument("--loop", type=int, help="Repeat every N seconds instead of running once")
    args = parser.parse_args()

    only = None
    if args.only:
        only = [name.strip() for name in args.only.split(",") if name.strip()]
        unknown = [name for name in only if name not in SWEEPS]
        if unknown:
            parser.error(f"Unknown sweep(s): {', '.join(unknown)}")

    setup_logging()
    if not args.loop:
        sys.exit(1 if run_once(only) else 0)

    while True:
        run_once(only)
        time.sleep(args.loop)


if __name__ == "__main__":
    main()
