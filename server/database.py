"""Database setup and session management using SQLAlchemy."""

import datetime
import logging
import os

logger = logging.getLogger(__name__)

from sqlalchemy import create_engine, inspect, text
from sqlalchemy.orm import declarative_base, sessionmaker

DATABASE_URL = os.environ.get("DATABASE_URL", "sqlite:///tracker.db")

_connect_args = {"check_same_thread": False} if DATABASE_URL.startswith("sqlite") else {}
engine = create_engine(DATABASE_URL, connect_args=_connect_args, pool_pre_ping=True)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()


def utcnow() -> datetime.datetime:
    """Current time as a naive UTC datetime (the storage convention)."""
    return datetime.datetime.now(datetime.timezone.utc).replace(tzinfo=None)


def get_db():
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db():
    """Create all tables, run migrations, and seed default thresholds."""
    from models import Employee, TrackingSession, LocationLog, Config  # noqa: F401

    logger.info("Initializing database at %s", engine.url.render_as_string(hide_password=True))
    Base.metadata.create_all(bind=engine)
    _migrate()
    _seed_config()


# Columns added after the first schema; older databases get them on startup.
_ADDED_COLUMNS = {
    "location_logs": {
        "batch_id": "VARCHAR(32)",
        "network_status": "VARCHAR(20) DEFAULT 'unknown'",
        "received_at": "TIMESTAMP",
    },
    "tracking_sessions": {
        "total_locations": "INTEGER DEFAULT 0",
        "updated_at": "TIMESTAMP",
    },
}


def _migrate():
    """Add any missing columns to existing tables."""
    insp = inspect(engine)
    tables = insp.get_table_names()
    for table, wanted in _ADDED_COLUMNS.items():
        if table not in tables:
            continue
        columns = {c["name"] for c in insp.get_columns(table)}
        for name, ddl in wanted.items():
            if name not in columns:
                logger.info("Migrating: adding %s column to %s table", name, table)
                with engine.begin() as conn:
                    conn.execute(text(f"ALTER TABLE {table} ADD COLUMN {name} {ddl}"))


# Default analyzer/fleet thresholds (must match processing.py and fleet.py constants)
DEFAULT_THRESHOLDS = {
    "stationary_speed_ms": "0.5",
    "min_stop_duration_s": "60",
    "online_window_s": "300",
    "live_window_hours": "24",
}


def _seed_config():
    """Insert default thresholds if not present."""
    from models import Config

    db = SessionLocal()
    try:
        for key, value in DEFAULT_THRESHOLDS.items():
            if not db.query(Config).filter(Config.key == key).first():
                db.add(Config(key=key, value=value))
        db.commit()
    finally:
        db.close()
