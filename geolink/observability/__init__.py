"""
Observability for the GeoLink rule engine: logging, metrics and the HTTP surface.
"""
