"""
Typed failures surfaced to callers of the governance layer.
"""

from enum import Enum
from typing import Any, Optional


class AIErrorKind(Enum):
    """Categories callers branch on to pick user messaging."""
    NO_KEY = "no_key"
    RATE_LIMITED = "rate_limit"
    USAGE_LIMIT_EXCEEDED = "usage_limit"
    NETWORK_ERROR = "network"
    UNKNOWN = "unknown"


class AIError(Exception):
    """Raised by the orchestrator for every rejected or failed request.

    Callers must never retry USAGE_LIMIT_EXCEEDED without user action;
    NETWORK_ERROR may be retried with backoff.
    """
    def __init__(self, kind: AIErrorKind, message: str, details: Optional[Any] = None):
        super().__init__(message)
        self.kind = kind
        self.details = details

    @property
    def retryable(self) -> bool:
        return self.kind in (AIErrorKind.NETWORK_ERROR, AIErrorKind.RATE_LIMITED)


class CredentialErrorKind(Enum):
    INVALID_FORMAT = "invalid_format"
    VALIDATION_FAILED = "validation_failed"
    NOT_FOUND = "not_found"


class CredentialError(Exception):
    """Raised by the credential store when a key cannot be saved or found."""
    def __init__(self, kind: CredentialErrorKind, message: str):
        super().__init__(message)
        self.kind = kind
