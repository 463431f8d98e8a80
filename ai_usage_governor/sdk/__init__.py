"""
Provider SDK adapters for the governance layer.

Provides the outbound chat completion call for each supported provider.
"""

from .providers import CompletionResult, ProviderAdapter, default_providers

__all__ = ["CompletionResult", "ProviderAdapter", "default_providers"]
