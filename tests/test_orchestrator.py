"""
Unit tests for request orchestration.

Covers the full admit/call/record sequence against a fake provider.
"""

import asyncio
import threading
import time
from decimal import Decimal
from unittest.mock import patch

import pytest

from ai_usage_governor.config.loader import GovernanceConfig, RateLimitPolicy
from ai_usage_governor.core.errors import AIError, AIErrorKind
from ai_usage_governor.core.orchestrator import AIRequest, RequestOrchestrator
from ai_usage_governor.core.pricing import ModelPricing
from ai_usage_governor.core.rate_limiter import (
    HOURLY_LIMIT_EXCEEDED,
    MONTHLY_LIMIT_EXCEEDED,
    NO_ACTIVE_KEY,
)
from ai_usage_governor.sdk.providers import CompletionResult


MESSAGES = [{"role": "user", "content": "Hello"}]


def make_request(**overrides):
    fields = {
        "provider": "openai",
        "model": "gpt-3.5-turbo",
        "messages": MESSAGES,
        "feature": "template_generation",
    }
    fields.update(overrides)
    return AIRequest(**fields)


@pytest.fixture
def make_orchestrator(credentials, ledger, adapter, clock):
    def factory(**config_kwargs):
        return RequestOrchestrator(
            credentials,
            ledger,
            providers={"openai": adapter, "anthropic": adapter},
            config=GovernanceConfig(**config_kwargs),
            clock=clock
        )
    return factory


@pytest.fixture
def orchestrator(make_orchestrator):
    return make_orchestrator()


class TestSuccessfulRequest:
    """Test the happy path."""

    def test_response_fields(self, orchestrator, openai_key):
        response = orchestrator.execute(make_request())

        assert response.content == "Hello!"
        assert response.tokens_used == 150
        assert response.estimated_cost == 0.0003
        assert response.model_used == "gpt-3.5-turbo"

    def test_success_recorded(self, orchestrator, ledger, clock, openai_key):
        orchestrator.execute(make_request())

        records = ledger.query_recent()
        assert len(records) == 1
        record = records[0]
        assert record.success
        assert record.error_message is None
        assert record.provider == "openai"
        assert record.model == "gpt-3.5-turbo"
        assert record.feature == "template_generation"
        assert record.tokens_used == 150
        assert record.estimated_cost == 0.0003
        assert record.timestamp == clock()

    def test_credential_bookkeeping(self, orchestrator, credentials, clock, openai_key):
        orchestrator.execute(make_request())

        credential = credentials.get_active_credential("openai")
        assert credential.current_month_spend == pytest.approx(0.0003)
        assert credential.last_used_at == clock()

    def test_adapter_receives_secret_and_defaults(self, orchestrator, adapter, openai_key):
        orchestrator.execute(make_request())

        adapter.complete.assert_called_once_with(
            "sk-test123",
            model="gpt-3.5-turbo",
            messages=MESSAGES,
            temperature=0.7,
            max_tokens=2000,
            timeout=60.0
        )

    def test_explicit_parameters_passed_through(self, orchestrator, adapter, openai_key):
        orchestrator.execute(make_request(temperature=0.0, max_tokens=300, timeout=5.0))

        kwargs = adapter.complete.call_args.kwargs
        assert kwargs["temperature"] == 0.0
        assert kwargs["max_tokens"] == 300
        assert kwargs["timeout"] == 5.0

    def test_usage_estimated_when_not_reported(self, orchestrator, adapter, openai_key):
        adapter.complete.return_value = CompletionResult(content="abcdefgh", model="gpt-3.5-turbo")

        response = orchestrator.execute(make_request(messages=[{"role": "user", "content": "x" * 1970}]))

        # 2000 chars of JSON -> 500 prompt tokens, 8 chars of content -> 2
        assert response.tokens_used == 502
        # 500/1000 * 0.0015 + 2/1000 * 0.002 = 0.000754
        assert response.estimated_cost == 0.0008

    def test_model_used_reported_by_provider(self, orchestrator, adapter, openai_key):
        adapter.complete.return_value = CompletionResult(
            content="Hi", model="gpt-3.5-turbo-0125",
            prompt_tokens=1, completion_tokens=1, total_tokens=2
        )
        assert orchestrator.execute(make_request()).model_used == "gpt-3.5-turbo-0125"


class TestRejections:
    """Test pre-flight refusals."""

    def test_no_key(self, orchestrator, adapter, ledger):
        with pytest.raises(AIError) as exc_info:
            orchestrator.execute(make_request())

        assert exc_info.value.kind == AIErrorKind.NO_KEY
        assert str(exc_info.value) == NO_ACTIVE_KEY
        adapter.complete.assert_not_called()
        assert ledger.query_recent() == []

    def test_hourly_limit_and_window(self, make_orchestrator, adapter, ledger, clock, openai_key):
        orchestrator = make_orchestrator(rate_limits=RateLimitPolicy(requests_per_hour=3))
        for _ in range(3):
            orchestrator.execute(make_request())
            clock.advance(minutes=10)

        with pytest.raises(AIError) as exc_info:
            orchestrator.execute(make_request())

        error = exc_info.value
        assert error.kind == AIErrorKind.RATE_LIMITED
        assert error.retryable
        assert error.details.reason == HOURLY_LIMIT_EXCEEDED
        assert error.details.hourly_requests == 3
        assert adapter.complete.call_count == 3
        assert len(ledger.query_recent()) == 3

        # first record ages out 60 minutes after it was written
        clock.advance(minutes=30)
        orchestrator.execute(make_request())
        assert adapter.complete.call_count == 4

    def test_failed_calls_count_toward_limits(self, make_orchestrator, adapter, ledger, openai_key):
        orchestrator = make_orchestrator(rate_limits=RateLimitPolicy(requests_per_hour=1))
        adapter.complete.side_effect = AIError(AIErrorKind.NETWORK_ERROR, "API request failed: boom")

        with pytest.raises(AIError):
            orchestrator.execute(make_request())
        with pytest.raises(AIError) as exc_info:
            orchestrator.execute(make_request())

        assert exc_info.value.kind == AIErrorKind.RATE_LIMITED
        assert adapter.complete.call_count == 1

    def test_spent_budget(self, orchestrator, ledger, credentials, adapter):
        credentials.save("openai", "sk-test123", "Personal", 0.0003)
        orchestrator.execute(make_request())

        with pytest.raises(AIError) as exc_info:
            orchestrator.execute(make_request())

        assert exc_info.value.kind == AIErrorKind.USAGE_LIMIT_EXCEEDED
        assert str(exc_info.value) == MONTHLY_LIMIT_EXCEEDED
        assert not exc_info.value.retryable
        assert adapter.complete.call_count == 1

    def test_budget_reached_by_estimate(self, make_orchestrator, adapter, credentials, ledger):
        credentials.save("openai", "sk-test123", "Personal", 0.042)
        orchestrator = make_orchestrator(
            pricing={"test-model": ModelPricing(Decimal("0.002"), Decimal("0"))}
        )
        adapter.complete.return_value = CompletionResult(
            content="ok", model="test-model",
            prompt_tokens=2000, completion_tokens=0, total_tokens=2000
        )
        # 8000 chars of JSON -> 2000 estimated tokens -> $0.004
        messages = [{"role": "user", "content": "a" * 7970}]

        for _ in range(10):
            orchestrator.execute(make_request(model="test-model", messages=messages))
        assert ledger.current_month_cost("openai") == pytest.approx(0.04)

        with pytest.raises(AIError) as exc_info:
            orchestrator.execute(make_request(model="test-model", messages=messages))

        error = exc_info.value
        assert error.kind == AIErrorKind.USAGE_LIMIT_EXCEEDED
        assert "monthly limit of $0.04" in str(error)
        assert "Current usage: $0.04" in str(error)
        assert error.details.allowed is False
        assert error.details.reason == MONTHLY_LIMIT_EXCEEDED
        assert adapter.complete.call_count == 10
        assert len(ledger.query_recent()) == 10

    def test_unknown_model_passes_budget_check(self, orchestrator, adapter, credentials):
        credentials.save("openai", "sk-test123", "Personal", 0.0001)
        adapter.complete.return_value = CompletionResult(
            content="ok", model="mystery", prompt_tokens=10**6, completion_tokens=10**6, total_tokens=2 * 10**6
        )

        response = orchestrator.execute(make_request(model="mystery"))
        assert response.estimated_cost == 0.0

    @pytest.mark.parametrize("overrides,match", [
        ({"model": " "}, "model"),
        ({"feature": ""}, "feature"),
        ({"messages": []}, "messages"),
    ])
    def test_malformed_request(self, orchestrator, ledger, openai_key, overrides, match):
        with pytest.raises(ValueError, match=match):
            orchestrator.execute(make_request(**overrides))
        assert ledger.query_recent() == []

    def test_unsupported_provider(self, orchestrator, adapter, ledger, openai_key):
        with pytest.raises(AIError) as exc_info:
            orchestrator.execute(make_request(provider="cohere"))

        assert exc_info.value.kind == AIErrorKind.UNKNOWN
        assert str(exc_info.value) == "Unsupported provider: cohere"
        adapter.complete.assert_not_called()
        assert ledger.query_recent() == []


class TestProviderFailures:
    """Test failures during the provider call."""

    def test_provider_error_recorded(self, orchestrator, adapter, ledger, openai_key):
        adapter.complete.side_effect = AIError(AIErrorKind.NETWORK_ERROR, "API request failed: boom")

        with pytest.raises(AIError) as exc_info:
            orchestrator.execute(make_request())

        assert exc_info.value.kind == AIErrorKind.NETWORK_ERROR
        record = ledger.query_recent()[0]
        assert not record.success
        assert record.estimated_cost == 0.0
        assert record.tokens_used == 0
        assert record.error_message == "API request failed: boom"

    def test_unexpected_exception_wrapped(self, orchestrator, adapter, ledger, openai_key):
        adapter.complete.side_effect = RuntimeError("socket closed")

        with pytest.raises(AIError) as exc_info:
            orchestrator.execute(make_request())

        assert exc_info.value.kind == AIErrorKind.UNKNOWN
        assert isinstance(exc_info.value.__cause__, RuntimeError)
        assert ledger.query_recent()[0].error_message == "socket closed"

    def test_empty_content(self, orchestrator, adapter, ledger, openai_key):
        adapter.complete.return_value = CompletionResult(content=None, model="gpt-3.5-turbo")

        with pytest.raises(AIError) as exc_info:
            orchestrator.execute(make_request())

        assert exc_info.value.kind == AIErrorKind.UNKNOWN
        assert str(exc_info.value) == "No content received from AI"
        assert not ledger.query_recent()[0].success

    def test_interrupted_call_still_recorded(self, orchestrator, adapter, ledger, openai_key):
        class Interrupted(BaseException):
            pass

        adapter.complete.side_effect = Interrupted()

        with pytest.raises(Interrupted):
            orchestrator.execute(make_request())

        record = ledger.query_recent()[0]
        assert not record.success
        assert record.error_message == "Request interrupted before completion"
        assert orchestrator._in_flight["openai"] == {}


class TestConcurrency:
    """Concurrent requests must not jointly pass a ceiling."""

    def test_parallel_requests_respect_hourly_limit(self, make_orchestrator, adapter, ledger, openai_key):
        orchestrator = make_orchestrator(rate_limits=RateLimitPolicy(requests_per_hour=2))
        release = threading.Event()
        result = adapter.complete.return_value

        def slow_complete(*args, **kwargs):
            release.wait(timeout=5)
            return result

        adapter.complete.side_effect = slow_complete
        outcomes = []
        outcomes_lock = threading.Lock()

        def worker():
            try:
                orchestrator.execute(make_request())
                outcome = "ok"
            except AIError as e:
                outcome = e.kind
            with outcomes_lock:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(5)]
        for thread in threads:
            thread.start()

        # two calls are parked inside the provider while the rest are admitted or refused
        deadline = time.monotonic() + 5
        while time.monotonic() < deadline:
            with outcomes_lock:
                if len(outcomes) == 3:
                    break
            time.sleep(0.01)
        release.set()
        for thread in threads:
            thread.join(timeout=5)

        assert outcomes.count("ok") == 2
        assert outcomes.count(AIErrorKind.RATE_LIMITED) == 3
        assert len(ledger.query_recent()) == 2
        assert orchestrator._in_flight["openai"] == {}


class TestAsync:

    def test_execute_async(self, orchestrator, openai_key):
        response = asyncio.run(orchestrator.execute_async(make_request()))
        assert response.content == "Hello!"

    def test_cancelled_caller_still_recorded(self, orchestrator, adapter, ledger, openai_key):
        started = threading.Event()
        release = threading.Event()
        result = adapter.complete.return_value

        def slow_complete(*args, **kwargs):
            started.set()
            release.wait(timeout=5)
            return result

        adapter.complete.side_effect = slow_complete

        async def main():
            task = asyncio.ensure_future(orchestrator.execute_async(make_request()))
            while not started.is_set():
                await asyncio.sleep(0.01)
            task.cancel()
            with pytest.raises(asyncio.CancelledError):
                await task
            release.set()

        # asyncio.run waits for the worker thread before returning
        asyncio.run(main())

        records = ledger.query_recent()
        assert len(records) == 1
        assert records[0].success


class TestUsageStatus:

    def test_without_key(self, orchestrator):
        status = orchestrator.get_usage_status("openai")

        assert not status.rate_limits.allowed
        assert status.rate_limits.reason == NO_ACTIVE_KEY
        assert status.monthly_usage == 0.0
        assert status.monthly_limit == 50.0
        assert status.recent_request_count == 0

    def test_with_usage(self, orchestrator, credentials, clock):
        credentials.save("openai", "sk-test123", "Personal", 25.0)
        orchestrator.execute(make_request())
        clock.advance(hours=2)
        orchestrator.execute(make_request())

        status = orchestrator.get_usage_status("openai")

        assert status.rate_limits.allowed
        assert status.rate_limits.hourly_requests == 1
        assert status.recent_request_count == 2
        assert status.monthly_usage == pytest.approx(0.0006)
        assert status.monthly_limit == 25.0

    def test_default_provider(self, orchestrator, openai_key):
        assert orchestrator.get_usage_status().monthly_limit == 50.0

    def test_read_only(self, orchestrator, ledger, adapter, openai_key):
        orchestrator.get_usage_status("openai")
        assert ledger.query_recent() == []
        adapter.complete.assert_not_called()


def test_status_window_matches_clock(orchestrator, clock, openai_key):
    orchestrator.execute(make_request())
    clock.advance(days=1)
    assert orchestrator.get_usage_status("openai").recent_request_count == 0


def test_secret_and_charged_credential_from_one_read(orchestrator, credentials, adapter, clock):
    credentials.save("openai", "sk-first", "Work", 10.0)
    clock.advance(seconds=1)
    newest = credentials.save("openai", "sk-second", "Personal", 20.0)

    with patch.object(credentials, "get_active", side_effect=AssertionError("separate secret read")):
        orchestrator.execute(make_request())

    assert adapter.complete.call_args.args[0] == "sk-second"
    charged = {c.id: c for c in credentials.list()}
    assert charged[newest.id].current_month_spend == pytest.approx(0.0003)
    assert charged[newest.id].last_used_at == clock()
    assert [c.current_month_spend for c in credentials.list() if c.id != newest.id] == [0.0]
