"""Principal resolution against the external Service Hub identity system.

The tracker never validates credentials itself. A bearer token is handed to
the Service Hub (``GET /auth/me``); the user it returns is normalised into a
principal payload and mirrored into the local ``employees`` table so that
sessions and location logs have an owner row to reference.
"""

import logging
import os

import requests
from sqlalchemy.orm import Session

from database import utcnow
from errors import AuthorizationError, IdentityUnavailableError
from models import Employee

logger = logging.getLogger(__name__)

SERVICE_HUB_URL = os.environ.get("SERVICE_HUB_URL", "http://localhost:5000").rstrip("/")
SERVICE_HUB_TIMEOUT_S = float(os.environ.get("SERVICE_HUB_TIMEOUT_S", "10"))

ADMIN_ROLE = "admin"


def fetch_service_hub_user(token: str) -> dict | None:
    """Ask the Service Hub who owns ``token``.

    Returns the user document, or None when the hub rejects the token.
    Raises IdentityUnavailableError when the hub cannot answer.
    """
    try:
        resp = requests.get(
            f"{SERVICE_HUB_URL}/auth/me",
            headers={"Authorization": f"Bearer {token}"},
            timeout=SERVICE_HUB_TIMEOUT_S,
        )
    except requests.RequestException as e:
        logger.error("Service Hub unreachable: %s", e)
        raise IdentityUnavailableError("Service Hub is unreachable. Please try again later.")

    if resp.status_code in (401, 403, 404):
        return None
    if resp.status_code != 200:
        logger.error("Service Hub returned status %d for /auth/me", resp.status_code)
        raise IdentityUnavailableError("Token validation failed")

    data = resp.json()
    return data.get("user", data) if isinstance(data, dict) else None


def normalize_principal(user: dict) -> dict:
    """Turn a Service Hub user document into ``{sub, email, role, ...}``."""
    sub = user.get("employee_id") or user.get("employeeId") or user.get("id")
    email = user.get("email")
    if not sub or not email:
        raise AuthorizationError("Service Hub returned an incomplete principal")
    return {
        "sub": str(sub),
        "email": email,
        "role": user.get("role") or "technician",
        "first_name": user.get("first_name") or user.get("firstName"),
        "last_name": user.get("last_name") or user.get("lastName"),
        "is_active": user.get("is_active", user.get("isActive", True)) is not False,
    }


def resolve_principal(credential: str) -> dict:
    """Resolve a bearer credential to a verified principal payload."""
    if not credential:
        raise AuthorizationError("Access token required")
    user = fetch_service_hub_user(credential)
    if user is None:
        raise AuthorizationError("Invalid or expired token")
    return normalize_principal(user)


def sync_employee(db: Session, principal: dict) -> Employee:
    """Create or refresh the local mirror row for ``principal``."""
    employee = db.query(Employee).filter(Employee.employee_id == principal["sub"]).first()
    if employee is None:
        employee = Employee(employee_id=principal["sub"], email=principal["email"])
        db.add(employee)
        logger.info("Mirrored new principal %s (%s)", principal["email"], principal["sub"])
    employee.email = principal["email"]
    employee.role = principal["role"]
    employee.first_name = principal["first_name"]
    employee.last_name = principal["last_name"]
    employee.is_active = principal["is_active"]
    employee.last_seen_at = utcnow()
    db.commit()
    db.refresh(employee)
    return employee
