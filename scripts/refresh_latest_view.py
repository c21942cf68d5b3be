#!/usr/bin/env python3
"""Rebuild the latest-price view once."""

import asyncio
from pathlib import Path
import sys

# Add project root to path
sys.path.insert(0, str(Path(__file__).parent.parent))

from marketsync.db.session import AsyncSessionLocal, engine
from marketsync.logging_config import setup_logging
from marketsync.market.latest_view import latest_price_view


async def run() -> None:
    try:
        async with AsyncSessionLocal() as db:
            rows = await latest_price_view.refresh(db)
    finally:
        await engine.dispose()
    print(f"Latest-price view rebuilt: {rows} series")


if __name__ == "__main__":
    setup_logging()
    asyncio.run(run())
