"""Single-round raffle with verifiable randomness and keeper-driven draws."""

__version__ = "1.0.0"
