"""
GeoLink rule execution engine.

Drives location-triggered smart-contract rules through authorization,
submission and completion bookkeeping.
"""

__version__ = "0.1.0"
