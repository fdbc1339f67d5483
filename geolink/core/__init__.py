"""
Core domain models and pure functions for the GeoLink rule engine.

This package contains the domain models and pure business logic
that are independent of external I/O and infrastructure concerns.
"""

from .errors import AuthorizationError, EngineError, ReconciliationError, SubmissionError, ValidationError
from .gate import admit
from .models import AuthMode, ContractRef, MatchEvent, MatchKey, Rule, RuleMatch
from .quorum import evaluate

__all__ = [
    "AuthMode", "ContractRef", "MatchEvent", "MatchKey", "Rule", "RuleMatch",
    "EngineError", "ValidationError", "AuthorizationError", "SubmissionError", "ReconciliationError",
    "admit", "evaluate",
]
