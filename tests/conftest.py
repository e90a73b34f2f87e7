from decimal import Decimal

import pytest

from raffle.lottery.engine import RaffleEngine
from raffle.lottery.event_manager import EventStore
from raffle.lottery.models import RaffleConfig, VrfSettings
from raffle.lottery.payout import LedgerPayoutHandler
from raffle.randomness.provider import LocalRandomnessProvider

ENTRANCE_FEE = Decimal("1.0")
STARTING_BALANCE = Decimal(100)
CALLBACK_SECRET = b"coordinator-shared-secret"
INTERVAL = 30
START_TIME = 1_700_000_000

PLAYERS = [f"0x{str(i) * 40}" for i in range(1, 7)]


class FakeClock:
    def __init__(self, now: float = START_TIME) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def raffle_config():
    return RaffleConfig(
        entrance_fee=ENTRANCE_FEE,
        interval=INTERVAL,
        vrf=VrfSettings(key_hash="0x" + "ab" * 32, subscription_id=7, callback_gas_limit=500_000, request_confirmations=3),
    )


@pytest.fixture
def store():
    return EventStore()


@pytest.fixture
def ledger():
    """Ledger with every player funded."""
    ledger = LedgerPayoutHandler()
    for player in PLAYERS:
        ledger.credit(player, STARTING_BALANCE)
    return ledger


@pytest.fixture
def provider(clock):
    return LocalRandomnessProvider(clock=clock)


@pytest.fixture
def engine(raffle_config, provider, ledger, store, clock):
    engine = RaffleEngine(raffle_config, provider, ledger, store=store, clock=clock)
    provider.register_consumer(engine)
    return engine


@pytest.fixture
def ready_engine(engine, clock):
    """Engine with all six players entered and the interval elapsed."""
    for player in PLAYERS:
        engine.enter(player, ENTRANCE_FEE)
    clock.advance(INTERVAL + 1)
    return engine
