"""FastAPI gateway for the raffle service."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Dict, List, Optional

from fastapi import FastAPI, Header, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field

from raffle.lottery.engine import RaffleEngine
from raffle.lottery.errors import (
    InsufficientPayment,
    LotteryNotOpen,
    PaymentFailed,
    PayoutFailed,
    RaffleError,
    UnauthorizedCallback,
    UnknownOrStaleRequest,
    UpkeepNotNeeded,
)
from raffle.lottery.event_manager import EventStore
from raffle.lottery.scheduler import UpkeepScheduler
from raffle.randomness.provider import verify_callback
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

ERROR_STATUS = {
    InsufficientPayment: 402,
    PaymentFailed: 402,
    LotteryNotOpen: 409,
    UpkeepNotNeeded: 409,
    UnauthorizedCallback: 403,
    UnknownOrStaleRequest: 409,
    PayoutFailed: 502,
}


class EnterRequest(BaseModel):
    participant: str = Field(min_length=1)
    amount: Decimal
    transaction_hash: Optional[str] = None


class FulfillRequest(BaseModel):
    request_id: int
    random_words: List[int]


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _http_error(exc: Exception) -> HTTPException:
    if isinstance(exc, RaffleError):
        status = ERROR_STATUS.get(type(exc), 400)
        detail: Dict[str, Any] = {"error": type(exc).__name__, "message": str(exc)}
        if isinstance(exc, UpkeepNotNeeded):
            detail["diagnostics"] = exc.to_dict()
        return HTTPException(status_code=status, detail=detail)
    return HTTPException(status_code=400, detail={"error": type(exc).__name__, "message": str(exc)})


class RaffleWebServer:
    """HTTP gateway over the raffle engine."""

    def __init__(
        self,
        engine: RaffleEngine,
        store: EventStore,
        scheduler: Optional[UpkeepScheduler] = None,
        *,
        callback_secret: Optional[bytes] = None,
    ) -> None:
        self.engine = engine
        self._callback_secret = callback_secret or b""
        self.scheduler = scheduler
        self._store = store

        self.app = FastAPI(
            title="Raffle API",
            description="Entry, upkeep and randomness callback endpoints for the raffle",
            version="1.0.0",
        )
        self._setup_middleware()
        self._setup_routes()

    # ------------------------------------------------------------------
    # FastAPI scaffolding
    # ------------------------------------------------------------------
    def _setup_middleware(self) -> None:
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_methods=["*"],
            allow_headers=["*"],
        )

    def _setup_routes(self) -> None:  # noqa: C901 - routing setup intentionally verbose
        # ------------------------------------------------------------------
        # Health & status
        # ------------------------------------------------------------------
        @self.app.get("/api/health")
        async def health_check() -> Dict[str, Any]:
            return {
                "status": "ok",
                "timestamp": _now(),
                "components": {
                    "engine": self.engine.state.name,
                    "scheduler": self.scheduler.get_status() if self.scheduler else {"status": "disabled"},
                },
            }

        @self.app.get("/api/raffle/status")
        async def get_status() -> Dict[str, Any]:
            response = self.engine.snapshot()
            response["timestamp"] = _now()
            return response

        @self.app.get("/api/raffle/upkeep")
        async def get_upkeep() -> Dict[str, Any]:
            return self.engine.check_upkeep().to_dict()

        @self.app.get("/api/raffle/participants/{index}")
        async def get_participant(index: int) -> Dict[str, Any]:
            try:
                participant = self.engine.get_participant(index)
            except IndexError:
                raise HTTPException(status_code=404, detail=f"No participant at index {index}")
            return {"index": index, "participant": participant}

        @self.app.get("/api/raffle/winner")
        async def get_recent_winner() -> Dict[str, Any]:
            return {"recentWinner": self.engine.recent_winner, "timestamp": _now()}

        @self.app.get("/api/activities")
        async def get_live_feed(limit: int = 50) -> Dict[str, Any]:
            limit = max(1, min(limit, 200))
            feed = self._store.get_live_feed(limit=limit)
            return {"activities": [item.to_dict() for item in reversed(feed)]}

        # ------------------------------------------------------------------
        # Mutating operations
        # ------------------------------------------------------------------
        @self.app.post("/api/raffle/enter")
        async def enter(request: EnterRequest) -> Dict[str, Any]:
            try:
                await asyncio.to_thread(
                    self.engine.enter,
                    request.participant,
                    request.amount,
                    payment_reference=request.transaction_hash,
                )
            except (RaffleError, ValueError) as exc:
                raise _http_error(exc)
            return {
                "status": "entered",
                "participant": request.participant,
                "numParticipants": self.engine.num_participants,
            }

        @self.app.post("/api/raffle/perform-upkeep")
        async def perform_upkeep() -> Dict[str, Any]:
            try:
                request_id = await asyncio.to_thread(self.engine.perform_upkeep)
            except RaffleError as exc:
                raise _http_error(exc)
            return {"status": "calculating", "requestId": request_id}

        @self.app.post("/api/vrf/fulfill")
        async def fulfill(
            request: FulfillRequest,
            x_callback_signature: str = Header(default=""),
        ) -> Dict[str, Any]:
            # Only a delivery signed with the coordinator's shared secret
            # speaks for the coordinator.
            signed = verify_callback(
                self._callback_secret, request.request_id, request.random_words, x_callback_signature
            )
            if not signed:
                logger.warning("Rejected unsigned or mis-signed fulfilment of request %s", request.request_id)
                raise _http_error(UnauthorizedCallback("unauthenticated", self.engine.provider_address))
            try:
                winner = await asyncio.to_thread(
                    self.engine.fulfill_random_words,
                    request.request_id,
                    request.random_words,
                    caller=self.engine.provider_address,
                )
            except (RaffleError, ValueError) as exc:
                raise _http_error(exc)
            return {"status": "fulfilled", "requestId": request.request_id, "winner": winner}

    # ------------------------------------------------------------------
    # Lifecycle management
    # ------------------------------------------------------------------
    async def start(self, host: str = "0.0.0.0", port: int = 6080) -> None:
        import uvicorn

        logger.info("Starting raffle web server on %s:%s", host, port)
        config = uvicorn.Config(self.app, host=host, port=port, log_level="info", access_log=True)
        server = uvicorn.Server(config)
        try:
            await server.serve()
        finally:
            logger.info("Raffle web server stopped")
