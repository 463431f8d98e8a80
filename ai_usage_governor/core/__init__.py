"""
Core modules for the AI usage governor.

This package contains cost estimation, rate limiting, request
orchestration and the typed errors callers branch on.
"""
