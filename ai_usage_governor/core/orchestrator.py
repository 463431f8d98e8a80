"""
Request orchestration.

The single entry point feature code uses to reach a provider. Every
request runs the same sequence:

1. Rate limit check - hourly/daily ceilings and the spent budget
2. Active credential lookup
3. Pre-flight budget check on the estimated input cost
4. Provider call
5. Actual cost from reported usage
6. Ledger append, whatever the outcome of step 4

Steps 1-3 have no side effects and abort before any network call.
The pre-flight estimate ignores output tokens, so one admitted call can
overshoot the budget by at most ``max_tokens`` x the output price; the
next request is then refused.
"""

import asyncio
import logging
import uuid
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Callable, Dict, List, Optional, Tuple

from ai_usage_governor.config.loader import GovernanceConfig, default_config
from ai_usage_governor.sdk.providers import ProviderAdapter, default_providers
from ai_usage_governor.storage.credentials import CredentialStore
from ai_usage_governor.storage.ledger import UsageLedger
from ai_usage_governor.storage.models import Credential, UsageRecord
from .errors import AIError, AIErrorKind
from .pricing import PRICING_TABLE, PricingTable
from .rate_limiter import (
    MONTHLY_LIMIT_EXCEEDED,
    NO_ACTIVE_KEY,
    RateLimiter,
    RateLimitStatus,
)
from .token_counter import TokenUsage, estimate_message_tokens, estimate_tokens

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AIRequest:
    """A chat completion request from feature code."""
    provider: str
    model: str
    messages: List[Dict[str, str]]
    feature: str  # analytics only, e.g. 'template_generation'
    temperature: Optional[float] = None
    max_tokens: Optional[int] = None
    timeout: Optional[float] = None


@dataclass(frozen=True)
class AIResponse:
    """Normalized result of a successful request."""
    content: str
    tokens_used: int
    estimated_cost: float
    model_used: str


@dataclass(frozen=True)
class UsageStatus:
    """Read-only snapshot for status indicators."""
    rate_limits: RateLimitStatus
    monthly_usage: float
    monthly_limit: float
    recent_request_count: int


class RequestOrchestrator:
    """Composes limits, credentials, pricing and the ledger around a provider call.

    Requests for the same provider are admitted one at a time under the
    ledger's provider lock. Admitted requests hold a reservation until
    their record is written, so concurrent requests cannot jointly pass
    a ceiling. The provider call itself runs outside the lock.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        ledger: UsageLedger,
        providers: Optional[Dict[str, ProviderAdapter]] = None,
        config: Optional[GovernanceConfig] = None,
        pricing: Optional[PricingTable] = None,
        clock: Optional[Callable[[], datetime]] = None
    ):
        self.credentials = credentials
        self.ledger = ledger
        self.providers = providers if providers is not None else default_providers()
        self.config = config or default_config()
        self.pricing = (pricing or PRICING_TABLE).extended(self.config.pricing)
        self.clock = clock or ledger.clock
        self.rate_limiter = RateLimiter(ledger, credentials, self.config, self.clock)
        # provider -> reservation id -> estimated cost
        self._in_flight: Dict[str, Dict[str, float]] = {}

    def execute(self, request: AIRequest) -> AIResponse:
        """Run a request through the full governance sequence.

        Args:
            request: The request to perform

        Returns:
            AIResponse with content, token count, cost and model

        Raises:
            ValueError: If model, feature or messages are empty
            AIError: For every rejected or failed request, including an
                unsupported provider (UNKNOWN)
        """
        self._validate(request)

        with self.ledger.provider_lock(request.provider):
            reservation_id, secret, credential = self._admit(request)

        success = False
        tokens_used = 0
        cost = 0.0
        error_message = "Request interrupted before completion"
        try:
            response = self._call(request, secret)
            success = True
            tokens_used = response.tokens_used
            cost = response.estimated_cost
            error_message = None
            return response
        except AIError as e:
            error_message = str(e)
            logger.warning(
                "%s request for %s failed (%s): %s",
                request.provider, request.feature, e.kind.value, e
            )
            raise
        except Exception as e:
            error_message = str(e) or type(e).__name__
            logger.exception("Unexpected failure calling %s", request.provider)
            raise AIError(AIErrorKind.UNKNOWN, error_message) from e
        finally:
            self._settle(
                reservation_id, request, credential,
                success, tokens_used, cost, error_message
            )

    async def execute_async(self, request: AIRequest) -> AIResponse:
        """Run ``execute`` in a worker thread.

        Cancelling the awaiting task does not cancel the provider call: it
        runs to completion and is recorded, so an abandoned request still
        counts toward limits and spend.
        """
        return await asyncio.shield(asyncio.to_thread(self.execute, request))

    def get_usage_status(self, provider: str = "openai") -> UsageStatus:
        """Snapshot of limits and spend for a provider."""
        rate_limits = self.rate_limiter.check(provider)
        credential = self.credentials.get_active_credential(provider)
        if credential is not None:
            monthly_limit = credential.monthly_budget
        else:
            monthly_limit = self.config.credentials.default_monthly_budget

        return UsageStatus(
            rate_limits=rate_limits,
            monthly_usage=self.ledger.current_month_cost(provider),
            monthly_limit=monthly_limit,
            recent_request_count=rate_limits.daily_requests
        )

    def _validate(self, request: AIRequest) -> None:
        if request.provider not in self.providers:
            raise AIError(AIErrorKind.UNKNOWN, f"Unsupported provider: {request.provider}")
        if not request.model or not request.model.strip():
            raise ValueError("model is required and cannot be empty")
        if not request.feature or not request.feature.strip():
            raise ValueError("feature is required and cannot be empty")
        if not request.messages:
            raise ValueError("messages is required and cannot be empty")

    def _admit(self, request: AIRequest) -> Tuple[str, str, Credential]:
        """Pre-flight checks. Must run under the provider lock.

        Returns:
            (reservation id, decoded secret, charged credential)
        """
        provider = request.provider
        in_flight = self._in_flight.setdefault(provider, {})
        in_flight_cost = sum(in_flight.values())

        status = self.rate_limiter.check(
            provider, in_flight=len(in_flight), in_flight_cost=in_flight_cost
        )
        if not status.allowed:
            logger.warning("Rejected %s request for %s: %s", provider, request.feature, status.reason)
            raise AIError(_rejection_kind(status.reason), status.reason, details=status)

        active = self.credentials.get_active_with_secret(provider)
        if active is None:
            logger.warning("Rejected %s request for %s: no usable key", provider, request.feature)
            raise AIError(
                AIErrorKind.NO_KEY,
                "No active API key found. Please add your API key in settings."
            )
        secret, credential = active

        estimated_tokens = estimate_message_tokens(request.messages)
        estimated_cost = self.pricing.calculate_cost(request.model, TokenUsage(estimated_tokens))
        projected = self.ledger.current_month_cost(provider) + in_flight_cost
        if projected + estimated_cost > credential.monthly_budget:
            logger.warning(
                "Rejected %s request for %s: projected $%.4f over budget $%.2f",
                provider, request.feature, projected + estimated_cost, credential.monthly_budget
            )
            raise AIError(
                AIErrorKind.USAGE_LIMIT_EXCEEDED,
                f"{MONTHLY_LIMIT_EXCEEDED}: this request would exceed your monthly "
                f"limit of ${credential.monthly_budget:.2f}. Current usage: ${projected:.2f}",
                details=replace(status, allowed=False, reason=MONTHLY_LIMIT_EXCEEDED)
            )

        reservation_id = uuid.uuid4().hex
        in_flight[reservation_id] = estimated_cost
        logger.debug(
            "Admitted %s/%s for %s, estimated $%.4f, worst-case overrun $%.4f",
            provider, request.model, request.feature, estimated_cost,
            self.pricing.max_output_cost(request.model, self._max_tokens(request))
        )
        return reservation_id, secret, credential

    def _call(self, request: AIRequest, secret: str) -> AIResponse:
        adapter = self.providers[request.provider]
        temperature = request.temperature
        if temperature is None:
            temperature = self.config.requests.default_temperature
        timeout = request.timeout or self.config.requests.timeout_seconds

        result = adapter.complete(
            secret,
            model=request.model,
            messages=request.messages,
            temperature=temperature,
            max_tokens=self._max_tokens(request),
            timeout=timeout
        )
        if not result.content:
            raise AIError(AIErrorKind.UNKNOWN, "No content received from AI")

        # Heuristic only for figures the provider did not report
        input_tokens = result.prompt_tokens
        if input_tokens is None:
            input_tokens = estimate_message_tokens(request.messages)
        output_tokens = result.completion_tokens
        if output_tokens is None:
            output_tokens = estimate_tokens(result.content)
        usage = TokenUsage(input_tokens, output_tokens)

        tokens_used = result.total_tokens
        if tokens_used is None:
            tokens_used = usage.total_tokens

        return AIResponse(
            content=result.content,
            tokens_used=tokens_used,
            estimated_cost=self.pricing.calculate_cost(request.model, usage),
            model_used=result.model
        )

    def _max_tokens(self, request: AIRequest) -> int:
        return request.max_tokens or self.config.requests.default_max_tokens

    def _settle(
        self,
        reservation_id: str,
        request: AIRequest,
        credential: Credential,
        success: bool,
        tokens_used: int,
        cost: float,
        error_message: Optional[str]
    ) -> None:
        """Write the ledger record and release the reservation together."""
        timestamp = self.clock()
        record = UsageRecord(
            id=uuid.uuid4().hex,
            timestamp=timestamp,
            provider=request.provider,
            model=request.model,
            feature=request.feature,
            tokens_used=tokens_used,
            estimated_cost=cost,
            success=success,
            error_message=error_message
        )
        with self.ledger.provider_lock(request.provider):
            self.ledger.append(record)
            self._in_flight[request.provider].pop(reservation_id, None)

        self.credentials.record_usage(credential.id, cost, timestamp)


def _rejection_kind(reason: Optional[str]) -> AIErrorKind:
    if reason == NO_ACTIVE_KEY:
        return AIErrorKind.NO_KEY
    if reason == MONTHLY_LIMIT_EXCEEDED:
        return AIErrorKind.USAGE_LIMIT_EXCEEDED
    return AIErrorKind.RATE_LIMITED
