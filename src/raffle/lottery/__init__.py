"""Raffle state machine, payouts, keeper scheduling and event feed."""
