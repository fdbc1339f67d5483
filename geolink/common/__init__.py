"""
Shared utilities for the GeoLink rule engine.
"""

from .cancellation import CancellationToken
from .retry import exponential_backoff, retry_with_backoff

__all__ = ["CancellationToken", "exponential_backoff", "retry_with_backoff"]
