from raffle.randomness.provider import (
    LOCAL_COORDINATOR_ADDRESS,
    LocalRandomnessProvider,
    RandomnessConsumer,
    RandomnessProvider,
    derive_random_words,
    sign_callback,
    verify_callback,
)

__all__ = [
    "LOCAL_COORDINATOR_ADDRESS",
    "LocalRandomnessProvider",
    "RandomnessConsumer",
    "RandomnessProvider",
    "derive_random_words",
    "sign_callback",
    "verify_callback",
]
