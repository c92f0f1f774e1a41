"""Trip analysis: route reconstruction, movement statistics, stop detection.

Analysis runs on demand over the ledger samples in a session's time window:
1. Fetch the route (samples ordered by timestamp)
2. Classify each sample as stationary (no speed, or below 0.5 m/s) or moving
3. Compute the stationary/moving split and average/max speed in km/h
4. Segment consecutive stationary samples into stops lasting >= 60 s

Nothing here writes to the database.
"""

import datetime
import logging
import math

from sqlalchemy.orm import Session

import ledger
from models import Config, TrackingSession
from tracking import session_to_dict

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------

STATIONARY_SPEED_MS = 0.5     # below this (or unknown) a sample counts as stationary
MIN_STOP_DURATION_S = 60      # shorter stationary runs are not stops

MS_TO_KMH = 3.6
EARTH_RADIUS_KM = 6371.0


def get_thresholds(db: Session) -> dict:
    """Read analyzer thresholds from the Config table, falling back to module defaults."""
    defaults = {
        "stationary_speed_ms": STATIONARY_SPEED_MS,
        "min_stop_duration_s": MIN_STOP_DURATION_S,
    }
    rows = db.query(Config).filter(Config.key.in_(defaults.keys())).all()
    for row in rows:
        try:
            defaults[row.key] = float(row.value)
        except ValueError:
            logger.warning("Ignoring non-numeric config %s=%r", row.key, row.value)
    return defaults


# ---------------------------------------------------------------------------
# Geo math
# ---------------------------------------------------------------------------

def haversine_km(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Great-circle distance in kilometres between two WGS-84 points."""
    rlat1, rlat2 = math.radians(lat1), math.radians(lat2)
    dlat = math.radians(lat2 - lat1)
    dlon = math.radians(lon2 - lon1)
    a = math.sin(dlat / 2) ** 2 + math.cos(rlat1) * math.cos(rlat2) * math.sin(dlon / 2) ** 2
    return EARTH_RADIUS_KM * 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))


def haversine_m(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Distance in metres between two WGS-84 points."""
    return haversine_km(lat1, lon1, lat2, lon2) * 1000.0


def round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


# ---------------------------------------------------------------------------
# Movement statistics
# ---------------------------------------------------------------------------

def is_stationary(point: dict, thresholds: dict | None = None) -> bool:
    limit = (thresholds or {}).get("stationary_speed_ms", STATIONARY_SPEED_MS)
    speed = point.get("speed")
    return speed is None or speed < limit


def movement_stats(points: list[dict], thresholds: dict | None = None) -> dict:
    """Stationary/moving split and speed figures (km/h) for a route."""
    total = len(points)
    if total == 0:
        return {
            "total_points": 0,
            "stationary_percent": 0.0,
            "moving_percent": 0.0,
            "avg_speed": 0.0,
            "max_speed": 0.0,
        }

    moving_speeds = [p["speed"] for p in points if not is_stationary(p, thresholds)]
    stationary_count = total - len(moving_speeds)
    stationary_percent = stationary_count / total * 100
    known_speeds = [p["speed"] for p in points if p.get("speed") is not None]

    avg_speed = sum(moving_speeds) / len(moving_speeds) if moving_speeds else 0.0
    max_speed = max(known_speeds) if known_speeds else 0.0

    return {
        "total_points": total,
        "stationary_percent": round(stationary_percent, 1),
        "moving_percent": round(100 - stationary_percent, 1),
        "avg_speed": round(avg_speed * MS_TO_KMH, 1),
        "max_speed": round(max_speed * MS_TO_KMH, 1),
    }


# ---------------------------------------------------------------------------
# Stop detection
# ---------------------------------------------------------------------------

def detect_stops(points: list[dict], thresholds: dict | None = None) -> list[dict]:
    """Segment a time-sorted route into stops.

    Algorithm:
    - Walk through points chronologically.
    - A stationary point after a moving one (or at the start) opens a candidate.
    - Further stationary points extend it; the last one sets its end time.
    - A moving point, or the end of the route, closes the candidate. It is
      kept if it lasted at least min_stop_duration_s, otherwise dropped.
    """
    min_duration = (thresholds or {}).get("min_stop_duration_s", MIN_STOP_DURATION_S)

    stops = []
    candidate: list[dict] = []

    for pt in points:
        if is_stationary(pt, thresholds):
            candidate.append(pt)
        elif candidate:
            _maybe_emit_stop(candidate, stops, min_duration)
            candidate = []

    # A trailing stationary run is judged the same way
    if candidate:
        _maybe_emit_stop(candidate, stops, min_duration)

    return stops


def _maybe_emit_stop(cluster: list[dict], stops: list[dict], min_duration: float = MIN_STOP_DURATION_S):
    start = cluster[0]["timestamp"]
    end = cluster[-1]["timestamp"]
    duration_ms = (end - start).total_seconds() * 1000
    if duration_ms < min_duration * 1000:
        return
    stops.append({
        "latitude": sum(p["latitude"] for p in cluster) / len(cluster),
        "longitude": sum(p["longitude"] for p in cluster) / len(cluster),
        "start_time": start,
        "end_time": end,
        "duration_minutes": round_half_up(duration_ms / 60000),
        "point_count": len(cluster),
    })


# ---------------------------------------------------------------------------
# Session analysis
# ---------------------------------------------------------------------------

def load_route(db: Session, session: TrackingSession, now: datetime.datetime | None = None) -> list[dict]:
    """Ledger samples inside the session window, oldest first, as plain dicts."""
    start, end = ledger.session_window(session, now)
    rows = ledger.query_range(db, session.employee_id, start, end)
    return [
        {
            "latitude": loc.latitude,
            "longitude": loc.longitude,
            "speed": loc.speed,
            "heading": loc.heading,
            "accuracy": loc.accuracy,
            "timestamp": loc.timestamp,
        }
        for loc in rows
    ]


def _route_point(pt: dict) -> dict:
    return {
        "lat": pt["latitude"],
        "lng": pt["longitude"],
        "timestamp": pt["timestamp"].isoformat(),
        "speed_kmh": round(pt["speed"] * MS_TO_KMH, 1) if pt["speed"] is not None else None,
    }


def _stop_to_dict(stop: dict) -> dict:
    return {
        **stop,
        "start_time": stop["start_time"].isoformat(),
        "end_time": stop["end_time"].isoformat(),
    }


def analyze_session(
    db: Session,
    session: TrackingSession,
    now: datetime.datetime | None = None,
    thresholds: dict | None = None,
) -> dict:
    """Route, movement stats and stops for one session."""
    if thresholds is None:
        thresholds = get_thresholds(db)

    points = load_route(db, session, now)
    stops = detect_stops(points, thresholds)
    logger.debug(
        "Analyzed session %s: %d points, %d stops", session.session_id, len(points), len(stops),
    )
    return {
        "session": session_to_dict(session),
        "stats": movement_stats(points, thresholds),
        "route": [_route_point(p) for p in points],
        "stops": [_stop_to_dict(s) for s in stops],
    }


def summarize_session(
    db: Session,
    session: TrackingSession,
    now: datetime.datetime | None = None,
    thresholds: dict | None = None,
) -> dict:
    """Session summary with start/end locations, used by history listings."""
    if thresholds is None:
        thresholds = get_thresholds(db)

    points = load_route(db, session, now)
    first = _route_point(points[0]) if points else None
    last = _route_point(points[-1]) if points else None
    return {
        **session_to_dict(session),
        "start_location": first,
        "end_location": last,
        **movement_stats(points, thresholds),
        "stop_count": len(detect_stops(points, thresholds)),
    }
