"""Shared pytest fixtures: in-memory DB, mirrored employees, recorded sessions."""

import sys
import os

# Add server root to path so imports work
sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker

from database import Base
from models import Employee, LocationLog, TrackingSession, Config  # noqa: F401

SESSION_START = datetime.datetime(2024, 1, 15, 7, 59, 0)


@pytest.fixture
def engine():
    """Create a fresh in-memory SQLite database for each test."""
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    return engine


@pytest.fixture
def db(engine):
    """Provide a DB session, closed after each test."""
    Session = sessionmaker(bind=engine)
    session = Session()
    yield session
    session.close()


def _employee(db, employee_id, email, role="technician"):
    employee = Employee(
        employee_id=employee_id,
        email=email,
        first_name="Test",
        last_name=employee_id.title(),
        role=role,
    )
    db.add(employee)
    db.commit()
    db.refresh(employee)
    return employee


@pytest.fixture
def test_employee(db):
    return _employee(db, "tech-a", "tech.a@example.com")


@pytest.fixture
def other_employee(db):
    return _employee(db, "tech-b", "tech.b@example.com")


@pytest.fixture
def recorded_session(db, test_employee):
    """A completed session covering the full GPS trace fixture."""
    import tracking
    from tests.gps_test_fixtures import GPS_TRACE, to_payload

    tracking.start_session(db, test_employee.employee_id, now=SESSION_START)
    tracking.ingest_batch(db, test_employee.employee_id, to_payload(GPS_TRACE))
    end = GPS_TRACE[-1]["timestamp"] + datetime.timedelta(minutes=1)
    return tracking.stop_session(db, test_employee.employee_id, 1.75, now=end)
