"""Location ledger: append-only storage of raw GPS samples.

Samples are scoped to an owner and looked up by time range. There is no
foreign key from a sample to a tracking session; a session's samples are the
owner's samples whose timestamp falls inside the session window.
"""

import datetime
import logging

from sqlalchemy import func
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import utcnow
from errors import StorageError
from models import Employee, LocationLog, TrackingSession

logger = logging.getLogger(__name__)


def append_batch(
    db: Session,
    employee_id: str,
    samples: list[dict],
    batch_id: str,
    now: datetime.datetime | None = None,
) -> list[LocationLog]:
    """Stage one row per validated sample on the caller's transaction.

    The caller owns the commit so the insert is atomic with whatever else it
    changes (the session counters).
    """
    received_at = now or utcnow()
    rows = [
        LocationLog(
            employee_id=employee_id,
            latitude=s["latitude"],
            longitude=s["longitude"],
            accuracy=s.get("accuracy"),
            altitude=s.get("altitude"),
            speed=s.get("speed"),
            heading=s.get("heading"),
            timestamp=s.get("timestamp") or received_at,
            battery_level=s.get("battery_level"),
            network_status=s.get("network_status") or "unknown",
            batch_id=batch_id,
            received_at=received_at,
        )
        for s in samples
    ]
    db.add_all(rows)
    return rows


def session_window(session: TrackingSession, now: datetime.datetime | None = None):
    """Return the ``(start, end)`` time window a session covers."""
    return session.start_time, session.end_time or now or utcnow()


def query_range(
    db: Session,
    employee_id: str,
    start: datetime.datetime,
    end: datetime.datetime | None = None,
    descending: bool = False,
    limit: int | None = None,
) -> list[LocationLog]:
    """Samples with ``start <= timestamp <= end``, ordered by timestamp."""
    if end is None:
        end = utcnow()
    order = LocationLog.timestamp.desc() if descending else LocationLog.timestamp.asc()
    try:
        q = (
            db.query(LocationLog)
            .filter(
                LocationLog.employee_id == employee_id,
                LocationLog.timestamp >= start,
                LocationLog.timestamp <= end,
            )
            .order_by(order, LocationLog.id.desc() if descending else LocationLog.id.asc())
        )
        if limit is not None:
            q = q.limit(limit)
        return q.all()
    except SQLAlchemyError as e:
        logger.exception("Ledger range query failed for owner=%s", employee_id)
        raise StorageError("Failed to read location history") from e


def query_recent(db: Session, employee_id: str, limit: int = 50) -> list[LocationLog]:
    """Most recent samples of one owner, newest first."""
    try:
        return (
            db.query(LocationLog)
            .filter(LocationLog.employee_id == employee_id)
            .order_by(LocationLog.timestamp.desc(), LocationLog.id.desc())
            .limit(limit)
            .all()
        )
    except SQLAlchemyError as e:
        logger.exception("Ledger history query failed for owner=%s", employee_id)
        raise StorageError("Failed to fetch history") from e


def query_latest_per_owner(db: Session, since: datetime.datetime) -> list[tuple[LocationLog, Employee]]:
    """One most-recent sample per owner among samples newer than ``since``."""
    latest = (
        db.query(
            LocationLog.employee_id.label("employee_id"),
            func.max(LocationLog.timestamp).label("last_ts"),
        )
        .filter(LocationLog.timestamp > since)
        .group_by(LocationLog.employee_id)
        .subquery()
    )
    try:
        rows = (
            db.query(LocationLog, Employee)
            .join(
                latest,
                (LocationLog.employee_id == latest.c.employee_id)
                & (LocationLog.timestamp == latest.c.last_ts),
            )
            .join(Employee, Employee.employee_id == LocationLog.employee_id)
            .order_by(LocationLog.employee_id, LocationLog.id.desc())
            .all()
        )
    except SQLAlchemyError as e:
        logger.exception("Ledger latest-per-owner query failed")
        raise StorageError("Failed to fetch fleet data") from e

    # Several rows can share the newest timestamp; keep one per owner.
    seen = set()
    result = []
    for loc, employee in rows:
        if loc.employee_id in seen:
            continue
        seen.add(loc.employee_id)
        result.append((loc, employee))
    return result
