"""
Data models for storage layer.

Defines the credential, usage record and aggregation entities.
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Optional


PROVIDERS = ("openai", "anthropic")


@dataclass(frozen=True)
class Credential:
    """A named API key under one provider.

    The secret itself is never carried on this object; it is only
    returned decoded by ``CredentialStore.get_active``.
    ``current_month_spend`` is bookkeeping only, the ledger is authoritative.
    """
    id: str
    provider: str
    name: str
    is_active: bool
    created_at: datetime
    monthly_budget: float
    last_used_at: Optional[datetime] = None
    current_month_spend: float = 0.0


@dataclass(frozen=True)
class UsageRecord:
    """Immutable record of one attempted provider call.

    Written for successes and failures alike. Once written, these records
    must never be modified.
    """
    id: str
    timestamp: datetime
    provider: str
    model: str
    feature: str
    tokens_used: int
    estimated_cost: float
    success: bool
    error_message: Optional[str] = None


@dataclass(frozen=True)
class MonthlyStats:
    """Aggregated usage for one calendar month (YYYY-MM)."""
    month: str
    total_requests: int
    total_tokens: int
    total_cost: float
    failed_requests: int
    last_request_at: datetime
