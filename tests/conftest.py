"""
Shared fixtures: a controllable clock, a fake provider adapter and
throwaway SQLite databases.
"""

from datetime import datetime, timedelta
from unittest.mock import Mock

import pytest

from ai_usage_governor.sdk.providers import CompletionResult, ProviderAdapter
from ai_usage_governor.storage.credentials import CredentialStore
from ai_usage_governor.storage.db import initialize_schema
from ai_usage_governor.storage.ledger import InMemoryUsageLedger


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now += timedelta(**kwargs)


@pytest.fixture
def clock():
    return FakeClock(datetime(2024, 5, 15, 12, 0, 0))


@pytest.fixture
def adapter():
    """Provider adapter that accepts any key and answers every call."""
    adapter = Mock(spec=ProviderAdapter)
    adapter.has_valid_format.return_value = True
    adapter.validate_key.return_value = True
    adapter.complete.return_value = CompletionResult(
        content="Hello!",
        model="gpt-3.5-turbo",
        prompt_tokens=100,
        completion_tokens=50,
        total_tokens=150
    )
    return adapter


@pytest.fixture
def db_path(tmp_path):
    path = str(tmp_path / "test.db")
    initialize_schema(path)
    return path


@pytest.fixture
def credentials(db_path, adapter, clock):
    return CredentialStore(
        db_path,
        providers={"openai": adapter, "anthropic": adapter},
        clock=clock
    )


@pytest.fixture
def ledger(clock):
    return InMemoryUsageLedger(clock=clock)


@pytest.fixture
def openai_key(credentials):
    """An active OpenAI credential with the default budget."""
    return credentials.save("openai", "sk-test123", "Personal", 50.0)
