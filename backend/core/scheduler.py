"""
Engine Scheduler
================
Drives the execution engine and the auto-close monitor on fixed intervals.

Schedule (seconds, from TradingConfig):
  - decision_scan_interval  execute pending AI decisions        (default 60)
  - sltp_monitor_interval   manual SL/TP check                  (default 60)
  - pnl_update_interval     refresh floating PnL and equity     (default 300)
  - auto_close_interval     full auto-close sweep               (default 300)

Wakes every 60 seconds; a failing job is logged and never stops the loop.

Usage:
  scheduler = EngineScheduler(engine, monitor)
  asyncio.create_task(scheduler.run())
"""

import asyncio
import logging
from datetime import datetime
from typing import Dict, Optional

from core.trading_config import get_config

logger = logging.getLogger("Scheduler")

TICK_SECONDS = 60


class EngineScheduler:
    def __init__(self, engine, monitor, get_config_fn=get_config, startup_delay: float = 5):
        self.engine        = engine
        self.monitor       = monitor
        self.get_config    = get_config_fn
        self.startup_delay = startup_delay
        self._last_run: Dict[str, datetime] = {}   # job name → last run
        self._running      = True

    def stop(self):
        self._running = False

    async def run(self):
        logger.info("Engine scheduler started")
        await asyncio.sleep(self.startup_delay)
        while self._running:
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Scheduler tick error: {e}")
            await asyncio.sleep(TICK_SECONDS)

    def _due(self, job: str, interval: int, now: datetime) -> bool:
        last = self._last_run.get(job)
        return last is None or (now - last).total_seconds() >= interval

    async def tick(self, now: Optional[datetime] = None):
        now = now or datetime.utcnow()
        config = self.get_config()

        jobs = (
            ("execute_pending", config.decision_scan_interval, self.engine.execute_pending_decisions),
            ("monitor_sltp",    config.sltp_monitor_interval,  self.monitor.monitor_sltp),
            ("update_pnl",      config.pnl_update_interval,    self.monitor.update_all_floating_pnl),
            ("auto_close",      config.auto_close_interval,    self.monitor.auto_close_positions),
        )
        for name, interval, job in jobs:
            if not self._due(name, interval, now):
                continue
            self._last_run[name] = now
            try:
                await job()
            except Exception as e:
                logger.error(f"Scheduled job {name} failed: {e}")
