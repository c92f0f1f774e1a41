"""Fleet read model for the admin live map and overview."""

import datetime
import logging

from sqlalchemy.orm import Session

import ledger
from database import utcnow
from models import Config, SESSION_ACTIVE, TrackingSession

logger = logging.getLogger(__name__)

ONLINE_WINDOW_S = 300     # last sample within 5 minutes => online
LIVE_WINDOW_HOURS = 24    # technicians without a sample in this window are left off the map


def get_fleet_thresholds(db: Session) -> dict:
    defaults = {
        "online_window_s": ONLINE_WINDOW_S,
        "live_window_hours": LIVE_WINDOW_HOURS,
    }
    for row in db.query(Config).filter(Config.key.in_(defaults.keys())).all():
        try:
            defaults[row.key] = float(row.value)
        except ValueError:
            logger.warning("Ignoring non-numeric config %s=%r", row.key, row.value)
    return defaults


def liveness(last_seen: datetime.datetime, now: datetime.datetime, online_window_s: float = ONLINE_WINDOW_S) -> str:
    return "online" if (now - last_seen).total_seconds() < online_window_s else "offline"


def live_map(db: Session, now: datetime.datetime | None = None) -> list[dict]:
    """Latest position of every technician seen within the live window."""
    now = now or utcnow()
    thresholds = get_fleet_thresholds(db)
    since = now - datetime.timedelta(hours=thresholds["live_window_hours"])

    technicians = []
    for loc, employee in ledger.query_latest_per_owner(db, since):
        technicians.append({
            "id": employee.email,
            "employee_id": employee.employee_id,
            "name": employee.full_name,
            "email": employee.email,
            "position": [loc.latitude, loc.longitude],
            "heading": loc.heading if loc.heading is not None else 0,
            "speed": round(loc.speed * 3.6) if loc.speed is not None else 0,
            "battery": loc.battery_level,
            "last_seen": loc.timestamp.isoformat(),
            "status": liveness(loc.timestamp, now, thresholds["online_window_s"]),
        })
    return technicians


def fleet_overview(db: Session, now: datetime.datetime | None = None) -> dict:
    technicians = live_map(db, now)
    online = sum(1 for t in technicians if t["status"] == "online")
    active_sessions = db.query(TrackingSession).filter(TrackingSession.status == SESSION_ACTIVE).count()
    return {
        "technicians": len(technicians),
        "online": online,
        "offline": len(technicians) - online,
        "active_sessions": active_sessions,
    }
