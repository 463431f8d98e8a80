"""
Token counting and usage tracking.

Exact counts come from the provider; the length heuristic here is only
used for pre-flight checks and when a provider omits usage figures.
"""

import json
import math
from dataclasses import dataclass
from typing import Dict, List


CHARS_PER_TOKEN = 4


@dataclass(frozen=True)
class TokenUsage:
    """Token usage data for cost calculation."""
    prompt_tokens: int
    completion_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        """Total tokens used (prompt + completion)."""
        return self.prompt_tokens + self.completion_tokens


def estimate_tokens(text: str) -> int:
    """Rough token count: characters / 4, rounded up."""
    if not text:
        return 0
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def estimate_message_tokens(messages: List[Dict[str, str]]) -> int:
    """Estimate prompt tokens over the JSON-serialized message list.

    Non-ASCII characters are kept as-is, one character each.
    """
    return estimate_tokens(json.dumps(messages, separators=(",", ":"), ensure_ascii=False))
