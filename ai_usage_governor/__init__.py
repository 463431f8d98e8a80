"""
AI usage governor.

Guards calls to paid AI completion providers with per-key budgets,
sliding-window rate limits and an append-only usage ledger.
"""

__version__ = "0.1.0"
