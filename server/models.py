"""SQLAlchemy models for employees, tracking sessions, location logs, and config."""

import uuid

from sqlalchemy import Column, Integer, Float, String, DateTime, ForeignKey, Boolean, Index, text
from sqlalchemy.orm import relationship

from database import Base, utcnow

SESSION_ACTIVE = "active"
SESSION_COMPLETED = "completed"


def _uuid() -> str:
    return str(uuid.uuid4())


class Employee(Base):
    """Local mirror of a Service Hub principal.

    Rows are created or refreshed whenever a bearer credential is resolved,
    so sessions and location logs always have an owner to reference.
    """

    __tablename__ = "employees"

    employee_id = Column(String(64), primary_key=True)
    email = Column(String(255), unique=True, nullable=False, index=True)
    first_name = Column(String(100), nullable=True)
    last_name = Column(String(100), nullable=True)
    role = Column(String(50), default="technician", nullable=False)
    is_active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    last_seen_at = Column(DateTime, nullable=True)

    sessions = relationship("TrackingSession", back_populates="owner", cascade="all, delete-orphan")
    locations = relationship("LocationLog", back_populates="owner", cascade="all, delete-orphan")

    @property
    def full_name(self) -> str:
        return " ".join(p for p in (self.first_name, self.last_name) if p) or self.email


class TrackingSession(Base):
    """One continuous tracking period. Samples belong to it by time window."""

    __tablename__ = "tracking_sessions"
    __table_args__ = (
        # At most one active session per owner, enforced by storage.
        Index(
            "uq_tracking_sessions_active_owner",
            "employee_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )

    session_id = Column(String(36), primary_key=True, default=_uuid)
    employee_id = Column(String(64), ForeignKey("employees.employee_id", ondelete="CASCADE"), nullable=False, index=True)
    start_time = Column(DateTime, nullable=False)
    end_time = Column(DateTime, nullable=True)
    status = Column(String(20), default=SESSION_ACTIVE, nullable=False)
    total_distance = Column(Float, default=0.0, nullable=False)
    total_locations = Column(Integer, default=0, nullable=False)
    created_at = Column(DateTime, default=utcnow)
    updated_at = Column(DateTime, default=utcnow, onupdate=utcnow)

    owner = relationship("Employee", back_populates="sessions")

    @property
    def is_active(self) -> bool:
        return self.status == SESSION_ACTIVE


class LocationLog(Base):
    __tablename__ = "location_logs"
    __table_args__ = (
        Index("ix_location_logs_owner_timestamp", "employee_id", "timestamp"),
    )

    id = Column(Integer, primary_key=True, index=True)
    employee_id = Column(String(64), ForeignKey("employees.employee_id", ondelete="CASCADE"), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy = Column(Float, nullable=True)
    altitude = Column(Float, nullable=True)
    speed = Column(Float, nullable=True)
    heading = Column(Float, nullable=True)
    timestamp = Column(DateTime, nullable=False)
    battery_level = Column(Integer, nullable=True)
    network_status = Column(String(20), default="unknown")
    batch_id = Column(String(32), nullable=True, index=True)
    received_at = Column(DateTime, default=utcnow)

    owner = relationship("Employee", back_populates="locations")


class Config(Base):
    """Runtime-tunable thresholds, seeded from database.DEFAULT_THRESHOLDS."""

    __tablename__ = "config"

    key = Column(String(64), primary_key=True)
    value = Column(String(255), nullable=False)
