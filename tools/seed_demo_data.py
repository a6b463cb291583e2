import argparse
import os
import sys
from datetime import datetime
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
BACKEND = ROOT / "backend"
os.chdir(BACKEND)
if str(BACKEND) not in sys.path:
    sys.path.insert(0, str(BACKEND))

from changedesk.clock import FixedClock, SystemClock  # noqa: E402
from changedesk.db import Base, SessionLocal, engine  # noqa: E402
from changedesk.main import seed_demo_data  # noqa: E402


def parse_args():
    p = argparse.ArgumentParser(description="Seed a demo period, groups and enrollments into the configured DB.")
    p.add_argument("--at", type=datetime.fromisoformat, help="Pretend it is this UTC instant (ISO format)")
    return p.parse_args()


def main():
    args = parse_args()
    clock = FixedClock(args.at) if args.at else SystemClock()
    Base.metadata.create_all(engine)
    with SessionLocal() as db:
        summary = seed_demo_data(db, clock)
    print(f"Seeded: {summary}")


if __name__ == "__main__":
    main()
