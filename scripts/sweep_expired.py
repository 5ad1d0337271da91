"""
Reclaim expired record locks and stale presence rows once.

For deployments that run the sweep from cron instead of the in-app
background tasks (SWEEPER_ENABLED=false).
"""

from __future__ import annotations

import argparse
import logging
import sys
from pathlib import Path

_ROOT = Path(__file__).resolve().parents[1]
if str(_ROOT) not in sys.path:
    sys.path.insert(0, str(_ROOT))

from calcrm.core.background_tasks import (  # noqa: E402
    cleanup_expired_locks,
    cleanup_stale_presence,
    run_sweep_once,
)


def main() -> int:
    parser = argparse.ArgumentParser(
        description="Delete expired record locks and stale presence rows."
    )
    parser.add_argument(
        "--only",
        choices=("locks", "presence"),
        default=None,
        help="Run a single sweep instead of both.",
    )
    parser.add_argument("--verbose", action="store_true")
    args = parser.parse_args()

    logging.basicConfig(
        level=logging.INFO if args.verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    if args.only == "locks":
        print(f"locks_removed={cleanup_expired_locks()}")
    elif args.only == "presence":
        print(f"presence_removed={cleanup_stale_presence()}")
    else:
        result = run_sweep_once()
        print(f"locks_removed={result.locks_removed} presence_removed={result.presence_removed}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
