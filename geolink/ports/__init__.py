"""
Port interfaces for the GeoLink rule engine.

This module defines the port interfaces (Protocols) that define
the contracts between the engine and its external collaborators.
"""

from .balance import BalancePort
from .credentials import CredentialPort
from .execution import ExecutionPort
from .history import ExecutionHistoryPort
from .ingest import MatchIngestPort
from .lifecycle import LifecycleStorePort
from .rules import RulePort

__all__ = [
    "BalancePort", "CredentialPort", "ExecutionPort", "ExecutionHistoryPort",
    "MatchIngestPort", "LifecycleStorePort", "RulePort",
]
