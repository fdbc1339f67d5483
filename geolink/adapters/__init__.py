"""
Adapters for the GeoLink rule engine.

Concrete implementations of the ports: aiosqlite storage and the
aiohttp client for the GeoLink platform API.
"""
