"""
Raffle Engine - single-round raffle state machine

Participants enter by paying the entrance fee. Once the interval has elapsed
and the round holds players and funds, a keeper triggers a draw which asks the
randomness provider for one word. The provider calls back with the words and
the engine picks ``participants[word % count]``, pays out the whole pool and
reopens the round.
"""

from __future__ import annotations

import time
from decimal import Decimal
from collections import deque
from threading import Lock, RLock
from typing import Any, Callable, Deque, Dict, List, Optional, Sequence

from raffle.lottery.errors import (
    InsufficientPayment,
    LotteryNotOpen,
    PaymentFailed,
    PayoutFailed,
    PayoutUnresolved,
    UnauthorizedCallback,
    UnknownOrStaleRequest,
    UpkeepNotNeeded,
)
from raffle.lottery.event_manager import EventStore
from raffle.lottery.models import (
    RaffleConfig,
    RaffleEvent,
    RaffleState,
    RandomnessRequest,
    UpkeepStatus,
)
from raffle.lottery.payout import PayoutHandler
from raffle.randomness.provider import RandomnessProvider
from raffle.utils.common import to_decimal
from raffle.utils.logger import get_logger

logger = get_logger(__name__)

NUM_WORDS = 1


class RaffleEngine:
    """Authoritative raffle state and the operations that change it.

    Every mutating operation runs under one lock, so a round is changed by
    at most one caller at a time. Events are queued under that lock in commit
    order and published after it is released, only for committed changes.
    """

    def __init__(
        self,
        config: RaffleConfig,
        provider: RandomnessProvider,
        payout_handler: PayoutHandler,
        *,
        store: Optional[EventStore] = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.config = config
        self._provider = provider
        self._payout_handler = payout_handler
        self._store = store
        self._clock = clock
        self._lock = Lock()

        # Round state
        self._state = RaffleState.OPEN
        self._participants: List[str] = []
        self._pool_balance = Decimal(0)
        self._last_draw_timestamp = int(clock())
        self._pending_request_id: Optional[int] = None
        self._recent_winner: Optional[str] = None
        # Broadcast payout of the pending request whose outcome is unknown
        self._unresolved_payout: Optional[Dict[str, Any]] = None

        # Committed events waiting to be published
        self._outbox: Deque[RaffleEvent] = deque()
        self._event_sequence = 0
        self._publish_lock = RLock()

        logger.info(
            "Raffle engine initialized: fee=%s interval=%ss coordinator=%s",
            config.entrance_fee,
            config.interval,
            provider.address,
        )

    # =============== ENTRY ===============

    def enter(self, participant: str, paid_amount, *, payment_reference: Optional[str] = None) -> None:
        """Add ``participant`` to the round for ``paid_amount``.

        The payment is collected through the payout handler before the entry
        is recorded; ``payment_reference`` identifies it there.
        """
        if not participant:
            raise ValueError("participant must not be empty")
        amount = to_decimal(paid_amount)

        with self._lock:
            if amount < self.config.entrance_fee:
                logger.warning("Entry by %s rejected: paid %s < fee %s", participant, amount, self.config.entrance_fee)
                raise InsufficientPayment(amount, self.config.entrance_fee)
            if self._state != RaffleState.OPEN:
                logger.warning("Entry by %s rejected: raffle is %s", participant, self._state.name)
                raise LotteryNotOpen(self._state)

            try:
                self._payout_handler.collect(participant, amount, reference=payment_reference)
            except Exception as exc:
                logger.warning("Entry by %s rejected: payment not collected: %s", participant, exc)
                raise PaymentFailed(participant, amount, str(exc)) from exc

            self._participants.append(participant)
            self._pool_balance += amount
            slot = len(self._participants) - 1
            pool = self._pool_balance
            self._record("RaffleEnter", {"player": participant, "amount": str(amount), "slot": slot})

        logger.info("Participant %s entered (slot %s, pool %s)", participant, slot, pool)
        self._flush_events()

    # =============== UPKEEP ===============

    def check_upkeep(self) -> UpkeepStatus:
        """Evaluate the draw conditions without changing anything."""
        with self._lock:
            status = self._upkeep_status()
        logger.debug(
            "check_upkeep: needed=%s time_passed=%s open=%s balance=%s players=%s",
            status.upkeep_needed,
            status.time_passed,
            status.is_open,
            status.has_balance,
            status.has_players,
        )
        return status

    def _upkeep_status(self) -> UpkeepStatus:
        now = int(self._clock())
        return UpkeepStatus(
            time_passed=(now - self._last_draw_timestamp) >= self.config.interval,
            is_open=self._state == RaffleState.OPEN,
            has_balance=self._pool_balance > 0,
            has_players=len(self._participants) > 0,
            balance=self._pool_balance,
            num_players=len(self._participants),
            state=self._state,
        )

    def perform_upkeep(self) -> int:
        """Close the round and request randomness; returns the request id."""
        vrf = self.config.vrf
        request = RandomnessRequest(
            key_hash=vrf.key_hash,
            subscription_id=vrf.subscription_id,
            request_confirmations=vrf.request_confirmations,
            callback_gas_limit=vrf.callback_gas_limit,
            num_words=NUM_WORDS,
        )

        with self._lock:
            status = self._upkeep_status()
            if not status.upkeep_needed:
                logger.info("Upkeep not needed: failed %s", ", ".join(status.failed_conditions()))
                raise UpkeepNotNeeded(status.balance, status.num_players, status.state)

            self._state = RaffleState.CALCULATING
            try:
                request_id = self._provider.request_random_words(request)
            except Exception:
                self._state = RaffleState.OPEN
                logger.exception("Randomness request failed; raffle reopened")
                raise
            self._pending_request_id = request_id
            self._record("RequestedRaffleWinner", {"requestId": request_id})

        logger.info("Requested raffle winner: request %s", request_id)
        self._flush_events()
        return request_id

    # =============== RANDOMNESS CALLBACK ===============

    def fulfill_random_words(self, request_id: int, random_words: Sequence[int], *, caller: str) -> str:
        """Complete the draw for ``request_id``; only the provider may call.

        The pool is paid out before any state is committed, so a failed
        payout leaves the round exactly as it was before the callback. If a
        transfer was broadcast without a known outcome, later deliveries pay
        the same winner instead of drawing again.
        """
        if caller != self._provider.address:
            logger.warning("Rejected fulfilment of request %s from %s", request_id, caller)
            raise UnauthorizedCallback(caller, self._provider.address)

        with self._lock:
            if self._state != RaffleState.CALCULATING or request_id != self._pending_request_id:
                logger.warning(
                    "Rejected fulfilment of request %s (pending=%s, state=%s)",
                    request_id,
                    self._pending_request_id,
                    self._state.name,
                )
                raise UnknownOrStaleRequest(request_id, self._pending_request_id)
            if not random_words:
                raise ValueError("random_words must contain at least one word")

            if self._unresolved_payout is not None:
                winner_index = self._unresolved_payout["winnerIndex"]
                winner = self._unresolved_payout["winner"]
                logger.info("Request %s has transfer %s in flight; keeping winner %s",
                            request_id, self._unresolved_payout["txHash"], winner)
            else:
                # Modulo reduction is biased for counts that are not powers of two.
                winner_index = int(random_words[0]) % len(self._participants)
                winner = self._participants[winner_index]
            prize = self._pool_balance

            try:
                receipt = self._payout_handler.payout(winner, prize, reference=request_id)
            except PayoutUnresolved as exc:
                self._unresolved_payout = {"winner": winner, "winnerIndex": winner_index, "txHash": exc.tx_hash}
                logger.error("Payout of %s to %s unresolved (%s), round stays closed", prize, winner, exc.tx_hash)
                raise PayoutFailed(winner, prize, str(exc)) from exc
            except Exception as exc:
                self._unresolved_payout = None
                logger.error("Payout of %s to %s failed, draw rolled back: %s", prize, winner, exc)
                raise PayoutFailed(winner, prize, str(exc)) from exc

            self._recent_winner = winner
            self._state = RaffleState.OPEN
            self._participants = []
            self._pool_balance = Decimal(0)
            self._last_draw_timestamp = int(self._clock())
            self._pending_request_id = None
            self._unresolved_payout = None
            self._record(
                "WinnerPicked",
                {
                    "winner": winner,
                    "prize": str(prize),
                    "requestId": request_id,
                    "winnerIndex": winner_index,
                    "receipt": receipt,
                },
            )

        logger.info("Winner picked for request %s: %s (index %s, prize %s)", request_id, winner, winner_index, prize)
        self._flush_events()
        return winner

    # =============== READ-ONLY ACCESSORS ===============

    @property
    def entrance_fee(self) -> Decimal:
        return self.config.entrance_fee

    @property
    def interval(self) -> int:
        return self.config.interval

    @property
    def num_words(self) -> int:
        return NUM_WORDS

    @property
    def request_confirmations(self) -> int:
        return self.config.vrf.request_confirmations

    @property
    def provider_address(self) -> str:
        return self._provider.address

    @property
    def state(self) -> RaffleState:
        with self._lock:
            return self._state

    @property
    def num_participants(self) -> int:
        with self._lock:
            return len(self._participants)

    @property
    def recent_winner(self) -> Optional[str]:
        with self._lock:
            return self._recent_winner

    @property
    def last_draw_timestamp(self) -> int:
        with self._lock:
            return self._last_draw_timestamp

    @property
    def pool_balance(self) -> Decimal:
        with self._lock:
            return self._pool_balance

    @property
    def pending_request_id(self) -> Optional[int]:
        with self._lock:
            return self._pending_request_id

    def get_participant(self, index: int) -> str:
        with self._lock:
            if index < 0 or index >= len(self._participants):
                raise IndexError(f"No participant at index {index}")
            return self._participants[index]

    def snapshot(self) -> Dict[str, Any]:
        """Consistent view of the whole round."""
        with self._lock:
            return {
                "state": self._state.name,
                "participants": list(self._participants),
                "numParticipants": len(self._participants),
                "poolBalance": str(self._pool_balance),
                "lastDrawTimestamp": self._last_draw_timestamp,
                "pendingRequestId": self._pending_request_id,
                "recentWinner": self._recent_winner,
                "entranceFee": str(self.config.entrance_fee),
                "interval": self.config.interval,
                "numWords": NUM_WORDS,
                "requestConfirmations": self.config.vrf.request_confirmations,
                "coordinator": self._provider.address,
                "unresolvedPayout": dict(self._unresolved_payout) if self._unresolved_payout else None,
            }

    def _record(self, name: str, details: Dict[str, Any]) -> None:
        # Caller holds self._lock.
        self._event_sequence += 1
        self._outbox.append(
            RaffleEvent(name=name, details=details, timestamp=int(self._clock()), sequence=self._event_sequence)
        )

    def _flush_events(self) -> None:
        """Publish queued events in the order they were committed."""
        with self._publish_lock:
            while True:
                try:
                    event = self._outbox.popleft()
                except IndexError:
                    return
                if self._store is not None:
                    self._store.publish(event)
