"""
Storage adapters for the GeoLink rule engine.

This module contains aiosqlite adapters for the lifecycle store,
the receipt outbox and the execution history.
"""

from .sqlite_history import SQLiteExecutionHistory
from .sqlite_lifecycle import SQLiteLifecycleStore
from .sqlite_outbox import ReceiptItem, SQLiteOutbox

__all__ = ["SQLiteExecutionHistory", "SQLiteLifecycleStore", "ReceiptItem", "SQLiteOutbox"]
