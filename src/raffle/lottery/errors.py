"""Exceptions raised by the raffle engine and its collaborators."""

from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict

from raffle.lottery.models import RaffleState


class RaffleError(Exception):
    """Base class for every rejected raffle operation."""


class InsufficientPayment(RaffleError):
    def __init__(self, paid: Decimal, required: Decimal) -> None:
        super().__init__(f"Paid {paid}, entrance fee is {required}")
        self.paid = paid
        self.required = required


class LotteryNotOpen(RaffleError):
    def __init__(self, state: RaffleState) -> None:
        super().__init__(f"Raffle is not open (state={state.name})")
        self.state = state


class UpkeepNotNeeded(RaffleError):
    """Draw requested while ineligible; carries the diagnostic triple."""

    def __init__(self, balance: Decimal, num_players: int, state: RaffleState) -> None:
        super().__init__(
            f"Upkeep not needed (balance={balance}, players={num_players}, state={state.name})"
        )
        self.balance = balance
        self.num_players = num_players
        self.state = state

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balance": str(self.balance),
            "numPlayers": self.num_players,
            "state": self.state.name,
        }


class UnauthorizedCallback(RaffleError):
    def __init__(self, caller: str, expected: str) -> None:
        super().__init__(f"Only coordinator {expected} can fulfill, got {caller}")
        self.caller = caller
        self.expected = expected


class UnknownOrStaleRequest(RaffleError):
    def __init__(self, request_id: int, pending_request_id: int | None) -> None:
        super().__init__(
            f"Request {request_id} is not the pending request ({pending_request_id})"
        )
        self.request_id = request_id
        self.pending_request_id = pending_request_id


class PayoutFailed(RaffleError):
    def __init__(self, recipient: str, amount: Decimal, reason: str) -> None:
        super().__init__(f"Payout of {amount} to {recipient} failed: {reason}")
        self.recipient = recipient
        self.amount = amount


class PaymentFailed(RaffleError):
    """The entry payment could not be collected from the participant."""

    def __init__(self, participant: str, amount: Decimal, reason: str) -> None:
        super().__init__(f"Payment of {amount} from {participant} failed: {reason}")
        self.participant = participant
        self.amount = amount


# ----------------------------------------------------------------------
# Collaborator errors
# ----------------------------------------------------------------------
class PayoutError(Exception):
    """Raised by payout handlers when a transfer cannot be made."""


class InsufficientFunds(PayoutError):
    pass


class TransferRejected(PayoutError):
    pass


class PaymentRejected(PayoutError):
    pass


class PayoutUnresolved(PayoutError):
    """The transfer was broadcast but its outcome is not known yet.

    The same payout must not be sent again; retrying waits on ``tx_hash``.
    """

    def __init__(self, recipient: str, tx_hash: str, reason: str) -> None:
        super().__init__(f"Transfer {tx_hash} to {recipient} unresolved: {reason}")
        self.recipient = recipient
        self.tx_hash = tx_hash


class InvalidRandomnessRequest(Exception):
    """Raised by a randomness provider for malformed or unknown requests."""
