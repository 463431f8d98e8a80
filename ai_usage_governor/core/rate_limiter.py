"""
Sliding-window rate limiting.

Counts are derived from the usage ledger on every check: a record ages
out of the hourly count exactly 60 minutes after it was written, so
there is no burst at fixed bucket boundaries.

Check Order (first tripped condition wins):
1. Active credential present
2. Hourly request ceiling
3. Daily request ceiling
4. Monthly budget of the active credential
"""

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Optional

from ai_usage_governor.config.loader import GovernanceConfig, default_config
from ai_usage_governor.storage.credentials import CredentialStore
from ai_usage_governor.storage.ledger import UsageLedger


NO_ACTIVE_KEY = "No active API key found"
HOURLY_LIMIT_EXCEEDED = "Hourly request limit exceeded"
DAILY_LIMIT_EXCEEDED = "Daily request limit exceeded"
MONTHLY_LIMIT_EXCEEDED = "Monthly usage limit exceeded"

HOUR = timedelta(hours=1)
DAY = timedelta(days=1)


@dataclass(frozen=True)
class RateLimitStatus:
    """Outcome of a limit check plus the figures behind it.

    Token totals are reported for dashboards only; the token ceilings
    are not enforced.
    """
    allowed: bool
    reason: Optional[str]
    hourly_requests: int
    hourly_limit: int
    daily_requests: int
    daily_limit: int
    monthly_cost: float
    hourly_tokens: int = 0
    hourly_token_limit: int = 0
    daily_tokens: int = 0
    daily_token_limit: int = 0


class RateLimiter:
    """Compares ledger-derived request counts against the policy."""

    def __init__(
        self,
        ledger: UsageLedger,
        credentials: CredentialStore,
        config: Optional[GovernanceConfig] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.ledger = ledger
        self.credentials = credentials
        self.config = config or default_config()
        self.clock = clock or ledger.clock

    def check(
        self,
        provider: str,
        in_flight: int = 0,
        in_flight_cost: float = 0.0
    ) -> RateLimitStatus:
        """Check whether a new request for ``provider`` may proceed.

        Args:
            provider: Provider name
            in_flight: Requests already admitted but not yet recorded
            in_flight_cost: Their estimated cost

        Returns:
            RateLimitStatus; ``reason`` names the first tripped limit
        """
        policy = self.config.policy_for(provider)
        credential = self.credentials.get_active_credential(provider)
        if credential is None:
            return RateLimitStatus(
                allowed=False,
                reason=NO_ACTIVE_KEY,
                hourly_requests=0,
                hourly_limit=policy.requests_per_hour,
                daily_requests=0,
                daily_limit=policy.requests_per_day,
                monthly_cost=0.0,
                hourly_token_limit=policy.tokens_per_hour,
                daily_token_limit=policy.tokens_per_day
            )

        now = self.clock()
        daily_records = self.ledger.records_after(provider, now - DAY)
        hourly_records = [r for r in daily_records if r.timestamp > now - HOUR]

        hourly_requests = len(hourly_records) + in_flight
        daily_requests = len(daily_records) + in_flight
        monthly_cost = self.ledger.current_month_cost(provider)

        reason = None
        if hourly_requests >= policy.requests_per_hour:
            reason = HOURLY_LIMIT_EXCEEDED
        elif daily_requests >= policy.requests_per_day:
            reason = DAILY_LIMIT_EXCEEDED
        elif monthly_cost + in_flight_cost >= credential.monthly_budget:
            reason = MONTHLY_LIMIT_EXCEEDED

        return RateLimitStatus(
            allowed=reason is None,
            reason=reason,
            hourly_requests=hourly_requests,
            hourly_limit=policy.requests_per_hour,
            daily_requests=daily_requests,
            daily_limit=policy.requests_per_day,
            monthly_cost=monthly_cost,
            hourly_tokens=sum(r.tokens_used for r in hourly_records),
            hourly_token_limit=policy.tokens_per_hour,
            daily_tokens=sum(r.tokens_used for r in daily_records),
            daily_token_limit=policy.tokens_per_day
        )
