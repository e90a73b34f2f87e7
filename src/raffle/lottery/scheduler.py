"""
Upkeep Scheduler - polls raffle eligibility and triggers draws
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from raffle.lottery.engine import RaffleEngine
from raffle.lottery.errors import UpkeepNotNeeded
from raffle.utils.logger import get_logger

logger = get_logger(__name__)


class UpkeepScheduler:
    """Keeper loop: check_upkeep at a fixed cadence, perform_upkeep when due."""

    def __init__(
        self,
        engine: RaffleEngine,
        *,
        check_interval: float = 10.0,
        error_backoff: float = 30.0,
    ) -> None:
        self.engine = engine
        self.check_interval = check_interval
        self.error_backoff = error_backoff
        self.running = False
        self.scheduler_task: Optional[asyncio.Task] = None
        self.draws_triggered = 0

    async def start(self) -> None:
        """Start the scheduler loop in the background"""
        if self.running:
            logger.warning("Upkeep scheduler already running")
            return
        self.running = True
        logger.info("Starting upkeep scheduler (every %ss)", self.check_interval)
        self.scheduler_task = asyncio.create_task(self._scheduler_loop(), name="raffle-upkeep")

    async def stop(self) -> None:
        """Stop the scheduler loop"""
        self.running = False
        if self.scheduler_task:
            self.scheduler_task.cancel()
            try:
                await self.scheduler_task
            except asyncio.CancelledError:
                pass
            self.scheduler_task = None
        logger.info("Upkeep scheduler stopped")

    async def _scheduler_loop(self) -> None:
        while self.running:
            try:
                await self.run_once()
                await asyncio.sleep(self.check_interval)
            except asyncio.CancelledError:
                break
            except Exception as exc:
                logger.error("Error in upkeep scheduler loop: %s", exc)
                await asyncio.sleep(self.error_backoff)

    async def run_once(self) -> Optional[int]:
        """One poll. Returns the request id when a draw was triggered."""
        status = await asyncio.to_thread(self.engine.check_upkeep)
        if not status.upkeep_needed:
            logger.debug("Upkeep not needed: %s", ", ".join(status.failed_conditions()))
            return None

        try:
            request_id = await asyncio.to_thread(self.engine.perform_upkeep)
        except UpkeepNotNeeded as exc:
            # Eligibility changed between check and perform
            logger.info("Draw skipped: %s", exc)
            return None

        self.draws_triggered += 1
        logger.info("Draw triggered, randomness request %s", request_id)
        return request_id

    def get_status(self) -> Dict[str, Any]:
        return {
            "status": "running" if self.running else "stopped",
            "check_interval": self.check_interval,
            "draws_triggered": self.draws_triggered,
        }
