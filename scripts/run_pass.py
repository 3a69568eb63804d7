"""Script to run one automation pass (cron-style deployments)

Usage:
    python scripts/run_pass.py
    python scripts/run_pass.py --now 2025-06-07T09:00:00Z
"""
import argparse
import json
import os
import sys
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from studioflow.engine.engine import get_engine
from studioflow.utils.logger import setup_logging
from studioflow.utils.time import parse_iso


def main():
    parser = argparse.ArgumentParser(description="Run one StudioFlow automation pass")
    parser.add_argument("--now", type=str, default=None, help="ISO timestamp to run the pass at")
    args = parser.parse_args()

    setup_logging()
    now = parse_iso(args.now) if args.now else None
    summary = get_engine().run_pass(now=now)

    print(f"Pass finished on {summary.server_id}")
    print(f"  Due items created: {summary.due_items_created}")
    print(f"  Planned: {summary.planned}")
    print(f"  Outcomes: {json.dumps(summary.counts, sort_keys=True)}")

    failed = summary.counts.get("FAILED", 0)
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
