"""
Orchestrators for the GeoLink rule engine.

This module contains the orchestrators that coordinate
the flow between ports and adapters.
"""
from .auth_resolver import AuthResolver
from .batch import BatchOrchestrator, SelectionSet
from .engine import RuleEngine
from .executor import ExecutionStep, RuleExecutor
from .reconciler import ReceiptReconciler

__all__ = [
    "AuthResolver", "BatchOrchestrator", "SelectionSet", "RuleEngine",
    "ExecutionStep", "RuleExecutor", "ReceiptReconciler",
]
