"""Purge scanner service - periodically rebuilds the purged marker cache"""

import logging
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from core.errors import ServerError
from core.purge_commands import PurgeCommands

logger = logging.getLogger(__name__)


class PurgeScanner:
    """Runs a server-wide purge scan on a fixed interval"""

    JOB_ID = "purge_scan"

    def __init__(self, purge_commands: PurgeCommands, interval_hours: float):
        self._purges = purge_commands
        self.interval_hours = interval_hours
        self._scheduler: Optional[AsyncIOScheduler] = None
        self.last_count: Optional[int] = None

    @property
    def is_running(self) -> bool:
        return self._scheduler is not None and self._scheduler.running

    def start(self) -> bool:
        """Schedule the scan. Must be called from inside a running event loop."""
        if self.interval_hours <= 0:
            logger.debug("Purge scan interval is 0, background scans disabled")
            return False
        if not self._purges.enabled:
            logger.info("Marker backup is disabled, background purge scans won't run")
            return False

        self._scheduler = AsyncIOScheduler(
            job_defaults={
                'coalesce': True,
                'max_instances': 1,
            }
        )
        self._scheduler.add_job(
            self.run_scan,
            trigger=IntervalTrigger(hours=self.interval_hours),
            id=self.JOB_ID,
            replace_existing=True,
        )
        self._scheduler.start()
        logger.info(f"Background purge scan scheduled every {self.interval_hours} hour(s)")
        return True

    def stop(self) -> None:
        if self._scheduler is not None:
            if self._scheduler.running:
                self._scheduler.shutdown(wait=False)
            self._scheduler = None

    async def run_scan(self) -> Optional[int]:
        """Run one scan. Failures are logged, the next interval tries again."""
        try:
            self.last_count = await self._purges.scan_all()
        except ServerError as e:
            logger.error(f"Background purge scan failed: {e.message}")
            return None
        return self.last_count
