#!/usr/bin/env python3
"""
Run a single scheduler tick.

Intended for an external cron when the in-process APScheduler is disabled
(SCHEDULER_ENABLED=false). Prints the tick summary as JSON.
"""

import asyncio
import json
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from marketsync.db.session import engine
from marketsync.logging_config import setup_logging
from marketsync.worker.tasks import task_runner


async def run() -> int:
    try:
        summary = await task_runner.scheduler.run_tick()
    finally:
        await task_runner.close()
        await engine.dispose()

    print(json.dumps(summary.to_dict(), indent=2))
    return 1 if summary.errors else 0


if __name__ == "__main__":
    setup_logging()
    sys.exit(asyncio.run(run()))
