"""Trigger a cascade re-drive sweep once.

Intended usage: schedule via cron or run by hand after an incident left
earn events with unfinished StepUp, Ripple, Infinity, or voucher steps.

Example:
    python tooling/scripts/run_cascade_redrive.py --trigger cron --limit 500
"""

from __future__ import annotations

import argparse
import asyncio
import sys
from pathlib import Path

from loguru import logger


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Execute a cascade re-drive sweep once")
    parser.add_argument(
        "--trigger",
        default="manual",
        help="Label recorded on the run row to describe the invocation source.",
    )
    parser.add_argument(
        "--limit",
        type=int,
        default=None,
        help="Override the number of pending records scanned per step.",
    )
    parser.add_argument(
        "--steps",
        default=None,
        help="Comma separated subset of steps (step_up,ripple,affiliate,infinity,voucher).",
    )
    return parser.parse_args()


async def _run(trigger: str, limit: int | None, steps: list[str] | None) -> dict[str, int]:
    repo_root = Path(__file__).resolve().parents[2]
    api_src = repo_root / "src"
    if str(api_src) not in sys.path:
        sys.path.insert(0, str(api_src))

    from holyloy_api.db.session import async_session  # type: ignore import-position
    from holyloy_api.workers import CascadeRedriveWorker  # type: ignore import-position

    worker = CascadeRedriveWorker(
        async_session,  # type: ignore[arg-type]
        batch_size=limit,
        steps=steps,
    )
    return await worker.run_once(triggered_by=trigger)


def main() -> int:
    args = parse_args()
    steps = [item.strip() for item in args.steps.split(",") if item.strip()] if args.steps else None
    summary = asyncio.run(_run(args.trigger, args.limit, steps))
    logger.success(
        "Cascade re-drive run completed",
        queued=summary.get("queued", 0),
        processed=summary.get("processed", 0),
        vouchers_expired=summary.get("vouchers_expired", 0),
        trigger=args.trigger,
    )
    return 0


if __name__ == "__main__":
    sys.exit(main())
