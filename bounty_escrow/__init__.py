"""Escrow payment and payout engine for creator bounties."""

__version__ = "0.1.0"
