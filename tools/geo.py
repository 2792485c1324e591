# tools/geo.py
import math

EARTH_RADIUS_M = 6371000.0

def is_valid_coordinate(lat, lon) -> bool:
    """True when lat/lon are finite numbers inside [-90, 90] / [-180, 180]."""
    try:
        lat = float(lat)
        lon = float(lon)
    except (TypeError, ValueError):
        return False
    if math.isnan(lat) or math.isnan(lon):
        return False
    return -90.0 <= lat <= 90.0 and -180.0 <= lon <= 180.0

def distance_meters(lat1, lon1, lat2, lon2) -> float:
    """
    Great-circle distance in meters (haversine, mean Earth radius).

    Out-of-range coordinates yield NaN instead of a misleading number;
    callers treat NaN as "cannot evaluate".
    """
    if not (is_valid_coordinate(lat1, lon1) and is_valid_coordinate(lat2, lon2)):
        return math.nan
    phi1 = math.radians(lat1)
    phi2 = math.radians(lat2)
    dphi = math.radians(lat2 - lat1)
    dlambda = math.radians(lon2 - lon1)
    a = math.sin(dphi/2.0)**2 + math.cos(phi1)*math.cos(phi2)*(math.sin(dlambda/2.0)**2)
    # rounding can push a a hair past 1.0 for antipodal points
    a = min(1.0, a)
    return 2 * EARTH_RADIUS_M * math.asin(math.sqrt(a))

def estimate_eta_seconds(distance_m: float, speed_kmph: float | None = None) -> int | None:
    """Rough arrival estimate used in alert texts; None when not computable."""
    if distance_m is None or math.isnan(distance_m):
        return None
    speed_kmph = speed_kmph if speed_kmph and speed_kmph > 0 else 20.0
    speed_m_s = max(speed_kmph * 1000.0 / 3600.0, 0.1)
    return int(distance_m / speed_m_s)
