"""
Provider adapters.

Wraps the OpenAI-compatible chat completion endpoint of each supported
provider and maps transport and HTTP failures onto AIError kinds.
"""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional

import openai
from openai import OpenAI

from ..core.errors import AIError, AIErrorKind

logger = logging.getLogger(__name__)

VALIDATION_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class CompletionResult:
    """Normalized provider response. Usage figures are None when omitted."""
    content: Optional[str]
    model: str
    prompt_tokens: Optional[int] = None
    completion_tokens: Optional[int] = None
    total_tokens: Optional[int] = None


class ProviderAdapter:
    """Chat completion client for one provider.

    The SDK client is built per call with the caller's secret and with
    retries disabled: every attempt is a real, billable, logged attempt.
    """

    def __init__(self, name: str, key_prefix: str, base_url: Optional[str] = None):
        self.name = name
        self.key_prefix = key_prefix
        self.base_url = base_url

    def has_valid_format(self, secret: str) -> bool:
        return bool(secret) and secret.startswith(self.key_prefix)

    def _client(self, secret: str, timeout: float) -> OpenAI:
        return OpenAI(
            api_key=secret,
            base_url=self.base_url,
            timeout=timeout,
            max_retries=0
        )

    def validate_key(self, secret: str) -> bool:
        """Check a secret with a live model listing call."""
        try:
            self._client(secret, VALIDATION_TIMEOUT_SECONDS).models.list()
        except openai.OpenAIError as e:
            logger.warning("Key validation against %s failed: %s", self.name, type(e).__name__)
            return False
        return True

    def complete(
        self,
        secret: str,
        model: str,
        messages: List[Dict[str, str]],
        temperature: float,
        max_tokens: int,
        timeout: float
    ) -> CompletionResult:
        """Perform one chat completion call.

        Raises:
            AIError: NO_KEY on 401, RATE_LIMITED on 429, NETWORK_ERROR on
                timeouts, connection failures and other non-2xx responses
        """
        try:
            response = self._client(secret, timeout).chat.completions.create(
                model=model,
                messages=messages,
                temperature=temperature,
                max_tokens=max_tokens
            )
        except openai.AuthenticationError as e:
            raise AIError(
                AIErrorKind.NO_KEY,
                f"Invalid API key. Please check your {self.name} API key.",
                details=_error_detail(e)
            ) from e
        except openai.RateLimitError as e:
            raise AIError(
                AIErrorKind.RATE_LIMITED,
                "Rate limit exceeded. Please try again in a moment.",
                details=_error_detail(e)
            ) from e
        except openai.APITimeoutError as e:
            raise AIError(
                AIErrorKind.NETWORK_ERROR,
                f"Request to {self.name} timed out after {timeout}s"
            ) from e
        except openai.APIConnectionError as e:
            raise AIError(
                AIErrorKind.NETWORK_ERROR,
                f"Could not reach {self.name}: {e}"
            ) from e
        except openai.APIStatusError as e:
            detail = _error_detail(e)
            raise AIError(
                AIErrorKind.NETWORK_ERROR,
                f"API request failed: {detail}",
                details=detail
            ) from e

        content = None
        if response.choices:
            content = response.choices[0].message.content

        usage = response.usage
        if usage is None:
            return CompletionResult(content=content, model=model)
        return CompletionResult(
            content=content,
            model=model,
            prompt_tokens=usage.prompt_tokens,
            completion_tokens=usage.completion_tokens,
            total_tokens=usage.total_tokens
        )


def _error_detail(error: openai.APIStatusError) -> str:
    """The provider's ``error.message`` if the body carries one."""
    body = error.body
    if isinstance(body, dict):
        inner = body.get("error", body)
        if isinstance(inner, dict) and inner.get("message"):
            return str(inner["message"])
    return error.message


def default_providers() -> Dict[str, ProviderAdapter]:
    """Adapters for the closed provider set."""
    return {
        "openai": ProviderAdapter("openai", key_prefix="sk-"),
        # Anthropic's OpenAI SDK compatibility endpoint
        "anthropic": ProviderAdapter(
            "anthropic",
            key_prefix="sk-ant-",
            base_url="https://api.anthropic.com/v1/"
        ),
    }
