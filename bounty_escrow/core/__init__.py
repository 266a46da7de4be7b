"""
Core modules for the bounty escrow engine.

This package contains the escrow lifecycle, fee calculation, payout ledger,
quota enforcement, payout eligibility and reconciliation.
"""
