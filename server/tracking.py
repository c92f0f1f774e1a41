"""Session manager: tracking session lifecycle and batch ingestion.

A principal has at most one active session. Starting closes the previous
one in the same transaction; ingestion appends to the ledger and bumps the
active session's counter in the same transaction; stopping an owner with no
active session is a no-op rather than an error.
"""

import datetime
import logging
import uuid
from typing import Annotated, Optional

from pydantic import AliasChoices, BaseModel, BeforeValidator, Field, TypeAdapter, field_validator
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

import ledger
from database import utcnow
from errors import NotFoundError, StorageError, ValidationError
from models import SESSION_ACTIVE, SESSION_COMPLETED, Employee, TrackingSession

logger = logging.getLogger(__name__)

# Retries cover a start that races the one-active-session index without an
# owner row to lock.
MAX_START_ATTEMPTS = 3

MAX_LIST_LIMIT = 200


# ---------------------------------------------------------------------------
# Sample validation
# ---------------------------------------------------------------------------

def _plain_number(value):
    if isinstance(value, bool):
        raise ValueError("expected a number, not a boolean")
    if isinstance(value, int):
        try:
            return float(value)
        except OverflowError:
            raise ValueError("number out of range")
    return value


Number = Annotated[float, BeforeValidator(_plain_number), Field(allow_inf_nan=False)]


def parse_timestamp(value) -> datetime.datetime | None:
    """Parse a client timestamp into a naive UTC datetime.

    Accepts ISO-8601 strings (a trailing ``Z`` included), datetimes, and
    epoch milliseconds as reported by device geolocation APIs.
    """
    if value is None:
        return None
    if isinstance(value, datetime.datetime):
        dt = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        try:
            dt = datetime.datetime.fromtimestamp(value / 1000.0, tz=datetime.timezone.utc)
        except (OverflowError, OSError, ValueError):
            raise ValueError(f"timestamp out of range: {value!r}")
    elif isinstance(value, str):
        dt = datetime.datetime.fromisoformat(value.strip().replace("Z", "+00:00"))
    else:
        raise ValueError(f"unsupported timestamp: {value!r}")

    if dt.tzinfo is not None:
        dt = dt.astimezone(datetime.timezone.utc).replace(tzinfo=None)
    return dt


class LocationSample(BaseModel):
    latitude: Annotated[Number, Field(ge=-90, le=90)]
    longitude: Annotated[Number, Field(ge=-180, le=180)]
    accuracy: Optional[Number] = None
    altitude: Optional[Number] = None
    speed: Optional[Number] = None
    heading: Optional[Number] = None
    battery_level: Optional[Annotated[Number, Field(ge=0, le=100)]] = Field(
        None, validation_alias=AliasChoices("batteryLevel", "battery_level"),
    )
    network_status: Optional[str] = Field(
        None, validation_alias=AliasChoices("networkStatus", "network_status"),
    )
    timestamp: Optional[datetime.datetime] = None

    @field_validator("timestamp", mode="before")
    @classmethod
    def _parse_timestamp(cls, value):
        return parse_timestamp(value)


_sample_list = TypeAdapter(list[LocationSample])
_distance = TypeAdapter(Optional[Annotated[Number, Field(ge=0)]])


def _describe(exc: PydanticValidationError) -> str:
    err = exc.errors()[0]
    loc = list(err["loc"])
    where = f"Location {loc[0]}" if loc and isinstance(loc[0], int) else "Location"
    field = ".".join(str(p) for p in loc[1:])
    return f"{where}: {field} {err['msg']}" if field else f"{where}: {err['msg']}"


def validate_samples(samples, now: datetime.datetime) -> list[dict]:
    """Validate a whole batch, returning normalised sample dicts.

    Any invalid element rejects the batch; nothing is partially accepted.
    """
    if not isinstance(samples, list) or not samples:
        raise ValidationError("No locations provided")
    try:
        parsed = _sample_list.validate_python(samples)
    except PydanticValidationError as e:
        raise ValidationError(_describe(e))

    clean = []
    for sample in parsed:
        row = sample.model_dump()
        if row["battery_level"] is not None:
            row["battery_level"] = int(round(row["battery_level"]))
        row["timestamp"] = row["timestamp"] or now
        row["network_status"] = (row["network_status"] or "unknown")[:20]
        clean.append(row)
    return clean


# ---------------------------------------------------------------------------
# Session lifecycle
# ---------------------------------------------------------------------------

def get_active_session(db: Session, employee_id: str) -> TrackingSession | None:
    return (
        db.query(TrackingSession)
        .filter(TrackingSession.employee_id == employee_id, TrackingSession.status == SESSION_ACTIVE)
        .order_by(TrackingSession.start_time.desc())
        .first()
    )


def start_session(db: Session, employee_id: str, now: datetime.datetime | None = None) -> TrackingSession:
    """Close any active session of ``employee_id`` and open a new one, atomically."""
    for attempt in range(1, MAX_START_ATTEMPTS + 1):
        started_at = now or utcnow()
        try:
            # Concurrent starts for one owner queue on the owner row (no-op on SQLite).
            db.query(Employee).filter(Employee.employee_id == employee_id).with_for_update().first()
            closed = (
                db.query(TrackingSession)
                .filter(TrackingSession.employee_id == employee_id, TrackingSession.status == SESSION_ACTIVE)
                .update(
                    {
                        TrackingSession.end_time: started_at,
                        TrackingSession.status: SESSION_COMPLETED,
                        TrackingSession.updated_at: started_at,
                    },
                    synchronize_session=False,
                )
            )
            session = TrackingSession(
                employee_id=employee_id,
                start_time=started_at,
                status=SESSION_ACTIVE,
                total_distance=0.0,
                total_locations=0,
            )
            db.add(session)
            db.commit()
        except IntegrityError:
            db.rollback()
            logger.warning("Concurrent start for employee=%s (attempt %d), retrying", employee_id, attempt)
            continue
        except SQLAlchemyError as e:
            db.rollback()
            logger.exception("Start tracking failed for employee=%s", employee_id)
            raise StorageError("Failed to start tracking") from e

        db.refresh(session)
        if closed:
            logger.info("Closed %d stale active session(s) for employee=%s", closed, employee_id)
        logger.info("Tracking session %s started for employee=%s", session.session_id, employee_id)
        return session

    raise StorageError("Failed to start tracking")


def ingest_batch(db: Session, employee_id: str, samples, now: datetime.datetime | None = None) -> dict:
    """Validate and store a batch of samples, counting them on the active session."""
    now = now or utcnow()
    clean = validate_samples(samples, now)
    batch_id = uuid.uuid4().hex[:12]

    try:
        ledger.append_batch(db, employee_id, clean, batch_id, now)
        active_filter = (
            TrackingSession.employee_id == employee_id,
            TrackingSession.status == SESSION_ACTIVE,
        )
        db.query(TrackingSession).filter(*active_filter).update(
            {
                TrackingSession.total_locations: TrackingSession.total_locations + len(clean),
                TrackingSession.updated_at: now,
            },
            synchronize_session=False,
        )
        session_id = db.query(TrackingSession.session_id).filter(*active_filter).scalar()
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Location update failed for employee=%s batch=%s", employee_id, batch_id)
        raise StorageError("Failed to update locations") from e

    logger.info(
        "Synced %d locations for employee=%s batch=%s session=%s",
        len(clean), employee_id, batch_id, session_id,
    )
    return {"count": len(clean), "batch_id": batch_id, "session_id": session_id}


def _parse_distance(distance) -> float:
    try:
        distance = _distance.validate_python(distance)
    except PydanticValidationError:
        raise ValidationError("Distance must be a non-negative number of kilometres")
    return distance if distance is not None else 0.0


def stop_session(
    db: Session,
    employee_id: str,
    distance_km=None,
    now: datetime.datetime | None = None,
) -> TrackingSession | None:
    """Complete the active session with the client-reported distance.

    Returns None when there is nothing to stop.
    """
    session = get_active_session(db, employee_id)
    if session is None:
        logger.info("Stop requested for employee=%s with no active session", employee_id)
        return None
    distance = _parse_distance(distance_km)

    ended_at = now or utcnow()
    try:
        session.end_time = ended_at
        session.status = SESSION_COMPLETED
        session.total_distance = distance
        session.updated_at = ended_at
        db.commit()
    except SQLAlchemyError as e:
        db.rollback()
        logger.exception("Stop tracking failed for employee=%s", employee_id)
        raise StorageError("Failed to stop tracking") from e

    db.refresh(session)
    logger.info(
        "Tracking session %s stopped for employee=%s: %.3f km, %d locations",
        session.session_id, employee_id, session.total_distance, session.total_locations,
    )
    return session


# ---------------------------------------------------------------------------
# Session lookup
# ---------------------------------------------------------------------------

def get_session(db: Session, session_id: str) -> TrackingSession:
    session = db.query(TrackingSession).filter(TrackingSession.session_id == session_id).first()
    if session is None:
        raise NotFoundError("Session not found")
    return session


def get_owned_session(db: Session, employee_id: str, session_id: str) -> TrackingSession:
    """Fetch a session of ``employee_id``; other owners' sessions look missing."""
    session = (
        db.query(TrackingSession)
        .filter(TrackingSession.session_id == session_id, TrackingSession.employee_id == employee_id)
        .first()
    )
    if session is None:
        raise NotFoundError("Session not found")
    return session


def list_sessions(
    db: Session,
    employee_id: str | None = None,
    status: str | None = None,
    limit: int = 20,
) -> list[TrackingSession]:
    if status is not None and status not in (SESSION_ACTIVE, SESSION_COMPLETED):
        raise ValidationError(f"Unknown session status: {status}")
    limit = max(1, min(int(limit), MAX_LIST_LIMIT))

    q = db.query(TrackingSession)
    if employee_id is not None:
        q = q.filter(TrackingSession.employee_id == employee_id)
    if status is not None:
        q = q.filter(TrackingSession.status == status)
    return q.order_by(TrackingSession.start_time.desc()).limit(limit).all()


def session_to_dict(session: TrackingSession) -> dict:
    return {
        "session_id": session.session_id,
        "employee_id": session.employee_id,
        "start_time": session.start_time.isoformat(),
        "end_time": session.end_time.isoformat() if session.end_time else None,
        "status": session.status,
        "total_distance": session.total_distance,
        "total_locations": session.total_locations,
    }
