"""
Quota Sweep

Optional in-process runner for the weekly quota reset. Deployments with an
external scheduler call ``POST /api/cron/reset-quotas`` or
``backend/scripts/reset_weekly_quotas.py`` instead.
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

from fusha_tutor_memory.quota_tracker import QuotaTracker

logger = logging.getLogger(__name__)


class QuotaSweep:
    """
    Periodically resets expired quota windows.

    Safe to run alongside the lazy per-request reset: both only touch
    profiles whose window has already ended.
    """

    def __init__(
        self,
        tracker: QuotaTracker,
        interval_minutes: float = 60,
        enabled: bool = True,
        retry_delay_seconds: float = 300,
    ):
        """
        Initialize the sweep.

        Args:
            tracker: QuotaTracker whose store is swept
            interval_minutes: Minutes between sweeps (default: 60)
            enabled: Whether the sweep runs at all
            retry_delay_seconds: Wait after a failed sweep before retrying
        """
        self.tracker = tracker
        self.interval_minutes = interval_minutes
        self.enabled = enabled
        self.retry_delay_seconds = retry_delay_seconds
        self.last_run: Optional[datetime] = None
        self.last_reset_count = 0
        self.total_reset = 0
        self.sweep_task: Optional[asyncio.Task] = None
        self.running = False

    async def start(self):
        """Start the background sweep task."""
        if not self.enabled:
            logger.info("📚 [QuotaSweep] Quota sweep is disabled")
            return

        if self.running:
            logger.warning("⚠️ [QuotaSweep] Sweep already running")
            return

        self.running = True
        logger.info(f"🔄 [QuotaSweep] Starting quota sweep (interval: {self.interval_minutes}m)")
        self.sweep_task = asyncio.create_task(self._sweep_loop())

    async def stop(self):
        """Stop the background sweep task."""
        self.running = False
        if self.sweep_task:
            self.sweep_task.cancel()
            try:
                await self.sweep_task
            except asyncio.CancelledError:
                pass
            self.sweep_task = None
        logger.info("🛑 [QuotaSweep] Quota sweep stopped")

    async def _sweep_loop(self):
        while self.running:
            try:
                await self.run_once()
                await asyncio.sleep(self.interval_minutes * 60)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error(f"❌ [QuotaSweep] Error in sweep loop: {e}", exc_info=True)
                await asyncio.sleep(self.retry_delay_seconds)

    async def run_once(self) -> int:
        """Run a single sweep and return how many profiles were reset."""
        count = await self.tracker.reset_expired()
        self.last_run = self.tracker.clock()
        self.last_reset_count = count
        self.total_reset += count
        if count:
            logger.info(f"✅ [QuotaSweep] Reset {count} expired quota windows")
        return count

    def get_status(self) -> dict:
        return {
            "enabled": self.enabled,
            "running": self.running,
            "last_run": self.last_run.isoformat() if self.last_run else None,
            "last_reset_count": self.last_reset_count,
            "total_reset": self.total_reset,
            "interval_minutes": self.interval_minutes,
        }
