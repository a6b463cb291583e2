import argparse
import csv
import os
import sys
from datetime import datetime
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
INVOKED_FROM = Path.cwd()
os.chdir(BACKEND)
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from changedesk.clock import FixedClock, SystemClock  # noqa: E402
from changedesk.db import SessionLocal  # noqa: E402
from changedesk.lifecycle import RequestLifecycle  # noqa: E402

FIELDS = ["code", "student_id", "type", "state", "priority", "created_at", "response_deadline", "days_late"]


def parse_args():
    p = argparse.ArgumentParser(description="List undecided change requests past their response deadline as CSV.")
    p.add_argument("--at", type=datetime.fromisoformat, help="Report as of this UTC instant (ISO format)")
    p.add_argument("--out", help="Write CSV here instead of stdout")
    return p.parse_args()


def main():
    args = parse_args()
    clock = FixedClock(args.at) if args.at else SystemClock()
    now = clock.now()
    with SessionLocal() as db:
        rows = []
        for req in RequestLifecycle(db, clock).find_overdue(now):
            rows.append(
                {
                    "code": req.code,
                    "student_id": req.student_id,
                    "type": req.type.value,
                    "state": req.state.value,
                    "priority": req.priority,
                    "created_at": req.created_at.isoformat(),
                    "response_deadline": req.response_deadline.isoformat(),
                    "days_late": (now - req.response_deadline).days,
                }
            )

    if args.out:
        with open(INVOKED_FROM / args.out, "w", newline="", encoding="utf-8") as fh:
            writer = csv.DictWriter(fh, fieldnames=FIELDS)
            writer.writeheader()
            writer.writerows(rows)
        print(f"Wrote {len(rows)} overdue requests to {args.out}")
    else:
        writer = csv.DictWriter(sys.stdout, fieldnames=FIELDS)
        writer.writeheader()
        writer.writerows(rows)


if __name__ == "__main__":
    main()
