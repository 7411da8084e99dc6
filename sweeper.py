"""Marks available donations whose expiry date has passed as expired."""

import asyncio
import logging

from starlette.concurrency import run_in_threadpool

from database import Database

logger = logging.getLogger(__name__)

DONATIONS = "donation"


class ExpirySweeper:
    def __init__(self, database: Database):
        self.db = database

    def expired_filter(self) -> dict:
        return {"status": "available", "expiry_date": {"$ne": None, "$lte": self.db.clock()}}

    def sweep(self) -> int:
        """Expire stale donations. Safe to call repeatedly and concurrently."""
        modified = self.db.update_many(DONATIONS, self.expired_filter(), {"$set": {"status": "expired"}})
        if modified > 0:
            logger.info(f"Updated {modified} expired donations")
        return modified

    async def run_periodically(self, interval: float):
        """Sweep now, then every `interval` seconds until cancelled."""
        logger.info(f"Donation expiry checker started - checking every {interval:g}s")
        while True:
            try:
                await run_in_threadpool(self.sweep)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Error checking expired donations: {e}", exc_info=e)
            await asyncio.sleep(interval)
