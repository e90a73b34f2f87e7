"""Core data models for the raffle engine."""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from enum import IntEnum
from typing import Any, Dict


class RaffleState(IntEnum):
    """Raffle round states, numbered as the on-chain enum."""

    OPEN = 0
    CALCULATING = 1


@dataclass(frozen=True)
class VrfSettings:
    """Randomness coordinator parameters forwarded without interpretation."""

    key_hash: str
    subscription_id: int
    callback_gas_limit: int = 500_000
    request_confirmations: int = 3


@dataclass(frozen=True)
class RaffleConfig:
    """Immutable raffle configuration supplied at construction."""

    entrance_fee: Decimal
    interval: int
    vrf: VrfSettings

    def __post_init__(self) -> None:
        if self.entrance_fee < 0:
            raise ValueError("entrance_fee must not be negative")
        if self.interval < 0:
            raise ValueError("interval must not be negative")


@dataclass(frozen=True)
class RandomnessRequest:
    """Fixed-shape request handed to a randomness provider."""

    key_hash: str
    subscription_id: int
    request_confirmations: int
    callback_gas_limit: int
    num_words: int


@dataclass(frozen=True)
class UpkeepStatus:
    """Result of an eligibility check, one flag per condition."""

    time_passed: bool
    is_open: bool
    has_balance: bool
    has_players: bool
    balance: Decimal
    num_players: int
    state: RaffleState

    @property
    def upkeep_needed(self) -> bool:
        return self.time_passed and self.is_open and self.has_balance and self.has_players

    def failed_conditions(self) -> list[str]:
        checks = {
            "time_passed": self.time_passed,
            "is_open": self.is_open,
            "has_balance": self.has_balance,
            "has_players": self.has_players,
        }
        return [name for name, ok in checks.items() if not ok]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "upkeepNeeded": self.upkeep_needed,
            "timePassed": self.time_passed,
            "isOpen": self.is_open,
            "hasBalance": self.has_balance,
            "hasPlayers": self.has_players,
            "balance": str(self.balance),
            "numPlayers": self.num_players,
            "state": self.state.name,
        }


@dataclass(frozen=True)
class RaffleEvent:
    """Observable event emitted by the engine after a committed state change.

    ``sequence`` numbers the engine's events in commit order.
    """

    name: str
    details: Dict[str, Any] = field(default_factory=dict)
    timestamp: int = 0
    sequence: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "type": self.name,
            "details": dict(self.details),
            "timestamp": self.timestamp,
            "sequence": self.sequence,
        }
