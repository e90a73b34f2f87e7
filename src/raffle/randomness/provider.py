"""Randomness provider interface and an in-process coordinator.

The raffle engine only depends on :class:`RandomnessProvider`. The local
coordinator mirrors the behaviour of the VRF coordinator mock used when
developing against a local chain: requests are queued and answered later,
out of band, with words derived from the request id.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from threading import Lock
from typing import Dict, List, Optional, Protocol, Sequence

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac
from web3 import Web3

from raffle.lottery.errors import InvalidRandomnessRequest
from raffle.lottery.models import RandomnessRequest
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

LOCAL_COORDINATOR_ADDRESS = "0x7a1BaC17ccC5b313516C5E16fb24f7659aA5ebed"
MAX_CALLBACK_GAS_LIMIT = 2_500_000
MAX_NUM_WORDS = 500


class RandomnessConsumer(Protocol):
    def fulfill_random_words(
        self, request_id: int, random_words: Sequence[int], *, caller: str
    ) -> object:
        ...


class RandomnessProvider(Protocol):
    """What the engine needs from a randomness coordinator."""

    address: str

    def request_random_words(self, request: RandomnessRequest) -> int:
        ...


@dataclass
class PendingRequest:
    request_id: int
    request: RandomnessRequest
    consumer: RandomnessConsumer
    requested_at: float


def derive_random_words(request_id: int, num_words: int) -> List[int]:
    """Deterministic words: keccak256(abi.encode(requestId, i)) for each i."""
    return [
        int.from_bytes(Web3.solidity_keccak(["uint256", "uint256"], [request_id, i]), "big")
        for i in range(num_words)
    ]


def _callback_message(request_id: int, random_words: Sequence[int]) -> bytes:
    return f"{int(request_id)}:{','.join(str(int(word)) for word in random_words)}".encode()


def sign_callback(secret: bytes, request_id: int, random_words: Sequence[int]) -> str:
    """HMAC-SHA256 over the delivered request id and words, hex encoded."""
    h = hmac.HMAC(secret, hashes.SHA256())
    h.update(_callback_message(request_id, random_words))
    return h.finalize().hex()


def verify_callback(secret: bytes, request_id: int, random_words: Sequence[int], signature: str) -> bool:
    """True if ``signature`` was produced by :func:`sign_callback` with ``secret``."""
    if not secret or not signature:
        return False
    try:
        expected = bytes.fromhex(signature.removeprefix("0x"))
    except ValueError:
        return False
    h = hmac.HMAC(secret, hashes.SHA256())
    h.update(_callback_message(request_id, random_words))
    try:
        h.verify(expected)
    except InvalidSignature:
        return False
    return True


class LocalRandomnessProvider:
    """In-process coordinator delivering one response per accepted request."""

    def __init__(
        self,
        address: str = LOCAL_COORDINATOR_ADDRESS,
        *,
        max_gas_limit: int = MAX_CALLBACK_GAS_LIMIT,
        clock=time.time,
    ) -> None:
        self.address = address
        self._max_gas_limit = max_gas_limit
        self._clock = clock
        self._lock = Lock()
        self._next_request_id = 1
        self._pending: Dict[int, PendingRequest] = {}
        self._consumer: Optional[RandomnessConsumer] = None
        self._running = False

    def register_consumer(self, consumer: RandomnessConsumer) -> None:
        self._consumer = consumer
        logger.info("Registered randomness consumer %s", type(consumer).__name__)

    # ------------------------------------------------------------------
    # Request side
    # ------------------------------------------------------------------
    def request_random_words(self, request: RandomnessRequest) -> int:
        if self._consumer is None:
            raise InvalidRandomnessRequest("No consumer registered")
        if request.num_words < 1 or request.num_words > MAX_NUM_WORDS:
            raise InvalidRandomnessRequest(f"Invalid word count {request.num_words}")
        if request.callback_gas_limit > self._max_gas_limit:
            raise InvalidRandomnessRequest(
                f"Gas limit {request.callback_gas_limit} exceeds {self._max_gas_limit}"
            )

        with self._lock:
            request_id = self._next_request_id
            self._next_request_id += 1
            self._pending[request_id] = PendingRequest(
                request_id=request_id,
                request=request,
                consumer=self._consumer,
                requested_at=self._clock(),
            )
        logger.info(
            "RandomWordsRequested id=%s keyHash=%s sub=%s confirmations=%s words=%s",
            request_id,
            request.key_hash,
            request.subscription_id,
            request.request_confirmations,
            request.num_words,
        )
        return request_id

    def pending_request_ids(self) -> List[int]:
        with self._lock:
            return sorted(self._pending)

    # ------------------------------------------------------------------
    # Delivery side
    # ------------------------------------------------------------------
    def fulfill(self, request_id: int, words: Optional[Sequence[int]] = None) -> object:
        """Deliver the response for ``request_id`` to its consumer.

        The request is consumed before delivery; if the consumer raises it is
        put back so the same request can be delivered again.
        """
        with self._lock:
            pending = self._pending.pop(request_id, None)
        if pending is None:
            raise InvalidRandomnessRequest(f"Unknown request {request_id}")

        if words is None:
            words = derive_random_words(request_id, pending.request.num_words)
        try:
            result = pending.consumer.fulfill_random_words(request_id, list(words), caller=self.address)
        except Exception:
            with self._lock:
                self._pending[request_id] = pending
            logger.exception("Delivery of request %s failed; kept pending", request_id)
            raise
        logger.info("RandomWordsFulfilled id=%s", request_id)
        return result

    async def run(self, poll_interval: float = 1.0, fulfill_delay: float = 0.0) -> None:
        """Answer pending requests once they are ``fulfill_delay`` seconds old.

        A request whose delivery failed is not retried by the loop; it stays
        pending for a manual :meth:`fulfill`.
        """
        self._running = True
        failed: set[int] = set()
        logger.info("Local randomness provider loop started (delay=%ss)", fulfill_delay)
        while self._running:
            try:
                now = self._clock()
                with self._lock:
                    due = [
                        item.request_id
                        for item in self._pending.values()
                        if now - item.requested_at >= fulfill_delay and item.request_id not in failed
                    ]
                for request_id in due:
                    try:
                        await asyncio.to_thread(self.fulfill, request_id)
                    except Exception as exc:
                        failed.add(request_id)
                        logger.error("Fulfilment of request %s failed: %s", request_id, exc)
                await asyncio.sleep(poll_interval)
            except asyncio.CancelledError:
                break
        logger.info("Local randomness provider loop stopped")

    def stop(self) -> None:
        self._running = False
