#!/usr/bin/env python3
"""
Raffle service application

Wires configuration, randomness provider, payout handler, raffle engine,
upkeep scheduler and the FastAPI web server together.
"""

import asyncio
import signal
import sys
from pathlib import Path
from typing import Any, Dict, Optional

from dotenv import load_dotenv

from raffle.lottery.engine import RaffleEngine
from raffle.lottery.event_manager import EventStore
from raffle.lottery.payout import LedgerPayoutHandler, PayoutHandler, Web3PayoutHandler
from raffle.lottery.scheduler import UpkeepScheduler
from raffle.randomness.provider import LOCAL_COORDINATOR_ADDRESS, LocalRandomnessProvider
from raffle.utils.config import build_raffle_config, get_config_value, load_config
from raffle.utils.logger import get_logger
from raffle.web_server import RaffleWebServer

logger = get_logger(__name__)


class RaffleApp:
    """Responsible for building the service components and running them until
    a shutdown signal is received."""

    def __init__(self, config: Optional[Dict[str, Any]] = None):
        self.config = config if config is not None else load_config()
        self.raffle_config = build_raffle_config(self.config)
        self.store = EventStore(feed_capacity=int(get_config_value(self.config, "server.feed_capacity", 100)))
        self.provider = LocalRandomnessProvider(
            address=get_config_value(self.config, "vrf.coordinator_address", LOCAL_COORDINATOR_ADDRESS),
        )
        self.payout_handler = self._build_payout_handler()
        self.engine = RaffleEngine(self.raffle_config, self.provider, self.payout_handler, store=self.store)
        self.provider.register_consumer(self.engine)
        self.scheduler = UpkeepScheduler(
            self.engine,
            check_interval=float(get_config_value(self.config, "scheduler.check_interval", 10)),
            error_backoff=float(get_config_value(self.config, "scheduler.error_backoff", 30)),
        )
        callback_secret = str(get_config_value(self.config, "vrf.callback_secret", "") or "")
        if not callback_secret:
            logger.warning("vrf.callback_secret is not set; /api/vrf/fulfill will reject every delivery")
        self.web_server = RaffleWebServer(
            self.engine,
            self.store,
            self.scheduler,
            callback_secret=callback_secret.encode(),
        )
        self._stop_event: Optional[asyncio.Event] = None

    def _build_payout_handler(self) -> PayoutHandler:
        mode = str(get_config_value(self.config, "payout.mode", "ledger")).lower()
        if mode == "web3":
            logger.info("Using on-chain payouts")
            return Web3PayoutHandler.from_config(self.config.get("payout", {}))
        if mode != "ledger":
            raise ValueError(f"Unknown payout mode: {mode}")
        ledger = LedgerPayoutHandler()
        balances = get_config_value(self.config, "payout.initial_balances", {}) or {}
        for account, amount in balances.items():
            ledger.credit(account, amount)
        logger.info("Using in-memory ledger payouts")
        return ledger

    def _display_config_summary(self) -> None:
        logger.info("=" * 60)
        logger.info("CONFIGURATION SUMMARY")
        logger.info("=" * 60)
        logger.info(f"Entrance fee: {self.raffle_config.entrance_fee}")
        logger.info(f"Interval: {self.raffle_config.interval}s")
        logger.info(f"Coordinator: {self.provider.address}")
        logger.info(f"Key hash: {self.raffle_config.vrf.key_hash}")
        logger.info(f"Subscription: {self.raffle_config.vrf.subscription_id}")
        logger.info(f"Callback gas limit: {self.raffle_config.vrf.callback_gas_limit}")
        logger.info(f"Confirmations: {self.raffle_config.vrf.request_confirmations}")
        logger.info(f"Upkeep check interval: {self.scheduler.check_interval}s")
        logger.info("=" * 60)

    async def start(self) -> None:
        """Start services and run until a shutdown signal is received."""
        self._stop_event = asyncio.Event()
        loop = asyncio.get_running_loop()
        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                loop.add_signal_handler(sig, self._handle_signal, sig)
            except NotImplementedError:  # pragma: no cover - non-POSIX event loops
                signal.signal(sig, lambda signum, frame: self._handle_signal(signum))

        self._display_config_summary()

        host = str(get_config_value(self.config, "server.host", "0.0.0.0"))
        port = int(get_config_value(self.config, "server.port", 6080))
        fulfill_delay = float(get_config_value(self.config, "vrf.fulfill_delay", 2))

        await self.scheduler.start()
        web_task = asyncio.create_task(self.web_server.start(host=host, port=port), name="raffle-web")
        vrf_task = asyncio.create_task(self.provider.run(fulfill_delay=fulfill_delay), name="raffle-vrf")
        stop_task = asyncio.create_task(self._stop_event.wait(), name="raffle-stop")
        logger.info(f"API available at http://{host}:{port}/api/")

        try:
            # The web server exits on its own when uvicorn handles the signal
            await asyncio.wait({web_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            await self.stop([web_task, vrf_task, stop_task])

    async def stop(self, tasks=()) -> None:
        logger.info("Stopping raffle service...")
        await self.scheduler.stop()
        self.provider.stop()
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info("Raffle service stopped")

    def _handle_signal(self, signum) -> None:
        logger.info(f"Received signal {signum}, initiating graceful shutdown...")
        if self._stop_event is not None:
            self._stop_event.set()


async def main() -> None:
    app = RaffleApp()
    try:
        await app.start()
    except KeyboardInterrupt:
        logger.info("Interrupted by user")


def run() -> None:
    load_dotenv(Path.cwd() / ".env")
    try:
        asyncio.run(main())
    except Exception as e:
        logger.exception(f"Raffle service failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    run()
