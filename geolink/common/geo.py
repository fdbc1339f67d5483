"""
Geographic helpers for the GeoLink rule engine.

Geofence matching itself happens upstream; the engine only validates the
coordinates it is handed.
"""


def validate_coordinates(lat: float, lon: float) -> bool:
    """
    좌표가 유효한지 확인합니다.

    Args:
        lat: 위도
        lon: 경도

    Returns:
        좌표가 유효하면 True
    """
    return -90 <= lat <= 90 and -180 <= lon <= 180
