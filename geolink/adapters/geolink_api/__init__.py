"""
GeoLink platform API adapter.
"""

from .client import GeoLinkClient

__all__ = ["GeoLinkClient"]
