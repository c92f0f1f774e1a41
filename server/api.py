"""REST API endpoints for the tracking client and the admin fleet view."""

import logging
from typing import Any, Optional

from fastapi import APIRouter, Depends, Header
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

import fleet
import ledger
import processing
import tracking
from database import get_db
from errors import AuthorizationError
from identity import ADMIN_ROLE, resolve_principal, sync_employee
from models import Employee
from tracking import LocationSample

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api")


# ---------------------------------------------------------------------------
# Pydantic schemas
# ---------------------------------------------------------------------------

class LocationBatch(BaseModel):
    locations: list[LocationSample] = Field(min_length=1)


class BatchResponse(BaseModel):
    success: bool = True
    count: int
    batch_id: str


class StopRequest(BaseModel):
    # Checked by the session manager after the active-session lookup.
    distance: Optional[Any] = None


# ---------------------------------------------------------------------------
# Auth dependency
# ---------------------------------------------------------------------------

def get_current_employee(
    authorization: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Employee:
    if not authorization or not authorization.startswith("Bearer "):
        raise AuthorizationError("Access token required")
    principal = resolve_principal(authorization[7:].strip())
    if not principal["is_active"]:
        logger.warning("Rejected disabled account: %s", principal["email"])
        raise AuthorizationError.forbidden("Account is disabled")
    return sync_employee(db, principal)


def get_admin_employee(employee: Employee = Depends(get_current_employee)) -> Employee:
    if employee.role != ADMIN_ROLE:
        raise AuthorizationError.forbidden("Admin access required")
    return employee


# ---------------------------------------------------------------------------
# Tracking session endpoints
# ---------------------------------------------------------------------------

@router.post("/tracking/start")
def start_tracking(employee: Employee = Depends(get_current_employee), db: Session = Depends(get_db)):
    session = tracking.start_session(db, employee.employee_id)
    return {"success": True, "session": tracking.session_to_dict(session)}


@router.post("/tracking/locations", response_model=BatchResponse)
@router.post("/tracking/update", response_model=BatchResponse, include_in_schema=False)
def upload_locations(
    batch: LocationBatch,
    employee: Employee = Depends(get_current_employee),
    db: Session = Depends(get_db),
):
    result = tracking.ingest_batch(db, employee.employee_id, batch.locations)
    return BatchResponse(count=result["count"], batch_id=result["batch_id"])


@router.post("/tracking/stop")
def stop_tracking(
    req: Optional[StopRequest] = None,
    employee: Employee = Depends(get_current_employee),
    db: Session = Depends(get_db),
):
    distance = req.distance if req is not None else None
    session = tracking.stop_session(db, employee.employee_id, distance)
    if session is None:
        return {"success": True, "session": None, "message": "no active session"}
    return {"success": True, "session": tracking.session_to_dict(session)}


@router.get("/tracking/session")
def get_tracking_session(employee: Employee = Depends(get_current_employee), db: Session = Depends(get_db)):
    session = tracking.get_active_session(db, employee.employee_id)
    return {
        "active": session is not None,
        "session": tracking.session_to_dict(session) if session else None,
    }


@router.get("/tracking/sessions")
def list_tracking_sessions(
    limit: int = 20,
    employee: Employee = Depends(get_current_employee),
    db: Session = Depends(get_db),
):
    sessions = tracking.list_sessions(db, employee.employee_id, limit=limit)
    thresholds = processing.get_thresholds(db)
    return [processing.summarize_session(db, s, thresholds=thresholds) for s in sessions]


@router.get("/tracking/sessions/{session_id}")
def get_tracking_session_details(
    session_id: str,
    employee: Employee = Depends(get_current_employee),
    db: Session = Depends(get_db),
):
    session = tracking.get_owned_session(db, employee.employee_id, session_id)
    return processing.analyze_session(db, session)


@router.get("/tracking/history")
def get_history(
    limit: int = 50,
    employee: Employee = Depends(get_current_employee),
    db: Session = Depends(get_db),
):
    limit = max(1, min(limit, 500))
    return [
        {
            "id": loc.id,
            "latitude": loc.latitude,
            "longitude": loc.longitude,
            "accuracy": loc.accuracy,
            "speed": loc.speed,
            "heading": loc.heading,
            "timestamp": loc.timestamp.isoformat(),
            "battery_level": loc.battery_level,
            "network_status": loc.network_status,
            "batch_id": loc.batch_id,
        }
        for loc in ledger.query_recent(db, employee.employee_id, limit)
    ]


# ---------------------------------------------------------------------------
# Admin fleet endpoints
# ---------------------------------------------------------------------------

@router.get("/admin/live-map")
def admin_live_map(admin: Employee = Depends(get_admin_employee), db: Session = Depends(get_db)):
    return fleet.live_map(db)


@router.get("/admin/overview")
def admin_overview(admin: Employee = Depends(get_admin_employee), db: Session = Depends(get_db)):
    return fleet.fleet_overview(db)


@router.get("/admin/sessions")
def admin_list_sessions(
    employee_id: Optional[str] = None,
    status: Optional[str] = None,
    limit: int = 50,
    admin: Employee = Depends(get_admin_employee),
    db: Session = Depends(get_db),
):
    sessions = tracking.list_sessions(db, employee_id, status=status, limit=limit)
    thresholds = processing.get_thresholds(db)
    return [processing.summarize_session(db, s, thresholds=thresholds) for s in sessions]


@router.get("/admin/sessions/{session_id}")
def admin_get_session(
    session_id: str,
    admin: Employee = Depends(get_admin_employee),
    db: Session = Depends(get_db),
):
    session = tracking.get_session(db, session_id)
    logger.info("Admin %s viewed session %s", admin.email, session_id)
    return processing.analyze_session(db, session)
