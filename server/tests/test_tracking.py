"""Tests for the session manager and the location ledger."""

import datetime
import threading
from unittest.mock import patch

import pytest
from sqlalchemy import create_engine
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.orm import sessionmaker

import ledger
import tracking
from database import Base
from errors import NotFoundError, StorageError, ValidationError
from models import Employee, LocationLog, TrackingSession
from tests.gps_test_fixtures import HOME_SEGMENT, to_payload

T0 = datetime.datetime(2024, 5, 6, 9, 0, 0)


def _at(seconds):
    return T0 + datetime.timedelta(seconds=seconds)


def _sample(seconds=0, **extra):
    return {"latitude": 37.78, "longitude": -122.41, "timestamp": _at(seconds).isoformat(), **extra}


def _active_count(db, employee_id):
    return (
        db.query(TrackingSession)
        .filter(TrackingSession.employee_id == employee_id, TrackingSession.status == "active")
        .count()
    )


# =====================================================================
# Session lifecycle
# =====================================================================

class TestStartSession:
    def test_creates_active_session(self, db, test_employee):
        session = tracking.start_session(db, test_employee.employee_id, now=T0)
        assert session.status == "active"
        assert session.start_time == T0
        assert session.end_time is None
        assert session.total_distance == 0
        assert session.total_locations == 0

    def test_closes_previous_active_session(self, db, test_employee):
        first = tracking.start_session(db, test_employee.employee_id, now=T0)
        second = tracking.start_session(db, test_employee.employee_id, now=_at(600))

        db.refresh(first)
        assert first.status == "completed"
        assert first.end_time == _at(600)
        assert second.status == "active"
        assert second.session_id != first.session_id
        assert _active_count(db, test_employee.employee_id) == 1

    def test_does_not_touch_other_owners(self, db, test_employee, other_employee):
        other = tracking.start_session(db, other_employee.employee_id, now=T0)
        tracking.start_session(db, test_employee.employee_id, now=_at(10))
        db.refresh(other)
        assert other.status == "active"

    def test_start_without_owner_row(self, db):
        session = tracking.start_session(db, "not-mirrored-yet", now=T0)
        assert session.status == "active"

    def test_storage_rejects_second_active_session(self, db, test_employee):
        db.add(TrackingSession(employee_id=test_employee.employee_id, start_time=T0, status="active"))
        db.commit()
        db.add(TrackingSession(employee_id=test_employee.employee_id, start_time=_at(1), status="active"))
        with pytest.raises(IntegrityError):
            db.commit()
        db.rollback()

    def test_concurrent_starts_leave_one_active(self, tmp_path):
        engine = create_engine(
            f"sqlite:///{tmp_path / 'race.db'}",
            connect_args={"check_same_thread": False, "timeout": 30},
        )
        Base.metadata.create_all(bind=engine)
        Session = sessionmaker(bind=engine)
        setup = Session()
        setup.add(Employee(employee_id="racer", email="racer@example.com"))
        setup.commit()
        setup.close()

        workers = 8
        barrier = threading.Barrier(workers)
        errors = []

        def start():
            db = Session()
            try:
                barrier.wait()
                tracking.start_session(db, "racer")
            except Exception as e:  # collected and asserted below
                errors.append(e)
            finally:
                db.close()

        threads = [threading.Thread(target=start) for _ in range(workers)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        check = Session()
        try:
            assert errors == []
            assert check.query(TrackingSession).count() == workers
            assert _active_count(check, "racer") == 1
        finally:
            check.close()
            engine.dispose()


class TestStopSession:
    def test_stop_completes_with_reported_distance(self, db, test_employee):
        tracking.start_session(db, test_employee.employee_id, now=T0)
        session = tracking.stop_session(db, test_employee.employee_id, 1.2, now=_at(300))
        assert session.status == "completed"
        assert session.end_time == _at(300)
        assert session.total_distance == 1.2

    def test_second_stop_is_a_noop(self, db, test_employee):
        tracking.start_session(db, test_employee.employee_id, now=T0)
        assert tracking.stop_session(db, test_employee.employee_id, 0.5) is not None
        assert tracking.stop_session(db, test_employee.employee_id, 0.9) is None

        session = db.query(TrackingSession).one()
        assert session.total_distance == 0.5

    def test_stop_without_any_session(self, db, test_employee):
        assert tracking.stop_session(db, test_employee.employee_id, 3.0) is None

    def test_distance_overwrites_not_accumulates(self, db, test_employee):
        tracking.start_session(db, test_employee.employee_id, now=T0)
        tracking.ingest_batch(db, test_employee.employee_id, [_sample(10)])
        session = tracking.stop_session(db, test_employee.employee_id, 2.5)
        assert session.total_distance == 2.5

    def test_missing_distance_is_zero(self, db, test_employee):
        tracking.start_session(db, test_employee.employee_id, now=T0)
        assert tracking.stop_session(db, test_employee.employee_id, None).total_distance == 0.0

    @pytest.mark.parametrize("distance", [-1, "far", True, float("nan")])
    def test_invalid_distance_rejected(self, db, test_employee, distance):
        tracking.start_session(db, test_employee.employee_id, now=T0)
        with pytest.raises(ValidationError):
            tracking.stop_session(db, test_employee.employee_id, distance)
        assert _active_count(db, test_employee.employee_id) == 1

    def test_invalid_distance_without_session_is_noop(self, db, test_employee):
        assert tracking.stop_session(db, test_employee.employee_id, -1) is None


class TestGetActiveSession:
    def test_none_when_idle(self, db, test_employee):
        assert tracking.get_active_session(db, test_employee.employee_id) is None

    def test_returns_active(self, db, test_employee):
        started = tracking.start_session(db, test_employee.employee_id, now=T0)
        assert tracking.get_active_session(db, test_employee.employee_id).session_id == started.session_id

    def test_none_after_stop(self, db, test_employee):
        tracking.start_session(db, test_employee.employee_id, now=T0)
        tracking.stop_session(db, test_employee.employee_id, 0)
        assert tracking.get_active_session(db, test_employee.employee_id) is None


# =====================================================================
# Batch ingestion
# =====================================================================

class TestIngestBatch:
    def test_stores_batch_and_counts_on_session(self, db, test_employee):
        session = tracking.start_session(db, test_employee.employee_id, now=T0)
        result = tracking.ingest_batch(db, test_employee.employee_id, to_payload(HOME_SEGMENT))

        assert result["count"] == len(HOME_SEGMENT)
        assert result["session_id"] == session.session_id
        assert len(result["batch_id"]) == 12
        db.refresh(session)
        assert session.total_locations == len(HOME_SEGMENT)
        rows = db.query(LocationLog).all()
        assert len(rows) == len(HOME_SEGMENT)
        assert {r.batch_id for r in rows} == {result["batch_id"]}

    def test_missing_longitude_rejects_whole_batch(self, db, test_employee):
        session = tracking.start_session(db, test_employee.employee_id, now=T0)
        batch = [_sample(0), _sample(30), {"latitude": 37.78, "timestamp": _at(60).isoformat()}]
        with pytest.raises(ValidationError) as exc:
            tracking.ingest_batch(db, test_employee.employee_id, batch)
        assert "Location 2" in exc.value.message
        assert db.query(LocationLog).count() == 0
        db.refresh(session)
        assert session.total_locations == 0

    @pytest.mark.parametrize("samples", [None, [], "not-a-list", {"latitude": 1, "longitude": 2}])
    def test_empty_or_malformed_batch(self, db, test_employee, samples):
        with pytest.raises(ValidationError):
            tracking.ingest_batch(db, test_employee.employee_id, samples)

    @pytest.mark.parametrize("bad", [
        {"latitude": "north", "longitude": -122.41},
        {"latitude": 10 ** 400, "longitude": -122.41},
        {"latitude": 37.78, "longitude": float("inf")},
        {"latitude": 37.78, "longitude": -122.41, "speed": float("nan")},
        {"latitude": True, "longitude": -122.41},
        {"latitude": 37.78, "longitude": None},
        {"latitude": 91.0, "longitude": -122.41},
        {"latitude": 37.78, "longitude": -122.41, "speed": "fast"},
        {"latitude": 37.78, "longitude": -122.41, "batteryLevel": 140},
        {"latitude": 37.78, "longitude": -122.41, "timestamp": "yesterday"},
        "37.78,-122.41",
    ])
    def test_invalid_sample_rejected(self, db, test_employee, bad):
        with pytest.raises(ValidationError):
            tracking.ingest_batch(db, test_employee.employee_id, [_sample(0), bad])
        assert db.query(LocationLog).count() == 0

    def test_without_active_session_still_stored(self, db, test_employee):
        result = tracking.ingest_batch(db, test_employee.employee_id, [_sample(0), _sample(30)])
        assert result["session_id"] is None
        assert db.query(LocationLog).count() == 2

    def test_duplicates_are_stored_again(self, db, test_employee):
        batch = [_sample(0), _sample(30)]
        first = tracking.ingest_batch(db, test_employee.employee_id, batch)
        second = tracking.ingest_batch(db, test_employee.employee_id, batch)
        assert db.query(LocationLog).count() == 4
        assert first["batch_id"] != second["batch_id"]

    def test_totals_match_sum_of_batches_across_owners(self, db, test_employee, other_employee):
        mine = tracking.start_session(db, test_employee.employee_id, now=T0)
        theirs = tracking.start_session(db, other_employee.employee_id, now=T0)
        sizes = [3, 1, 5, 2]
        for i, size in enumerate(sizes):
            tracking.ingest_batch(db, test_employee.employee_id, [_sample(i * 10 + j) for j in range(size)])
            tracking.ingest_batch(db, other_employee.employee_id, [_sample(i * 10)])
        db.refresh(mine)
        db.refresh(theirs)
        assert mine.total_locations == sum(sizes)
        assert theirs.total_locations == len(sizes)

    def test_oversized_integer_coordinate(self, db, test_employee):
        with pytest.raises(ValidationError) as exc:
            tracking.ingest_batch(db, test_employee.employee_id, [{"latitude": 10 ** 400, "longitude": 1.0}])
        assert "Location 0" in exc.value.message

    def test_battery_rounded_and_snake_case_accepted(self, db, test_employee):
        tracking.ingest_batch(db, test_employee.employee_id, [
            _sample(0, battery_level=83.6, network_status="wifi"),
        ])
        row = db.query(LocationLog).one()
        assert row.battery_level == 84
        assert row.network_status == "wifi"

    def test_metadata_fields(self, db, test_employee):
        tracking.ingest_batch(db, test_employee.employee_id, [
            _sample(0, accuracy=12.5, speed=1.1, heading=270, batteryLevel=84, networkStatus="online"),
        ])
        row = db.query(LocationLog).one()
        assert row.accuracy == 12.5
        assert row.speed == 1.1
        assert row.heading == 270
        assert row.battery_level == 84
        assert row.network_status == "online"

    def test_network_status_defaults_to_unknown(self, db, test_employee):
        tracking.ingest_batch(db, test_employee.employee_id, [_sample(0)])
        assert db.query(LocationLog).one().network_status == "unknown"

    def test_missing_timestamp_assigned_at_ingest(self, db, test_employee):
        tracking.ingest_batch(db, test_employee.employee_id, [{"latitude": 1.0, "longitude": 2.0}], now=_at(42))
        assert db.query(LocationLog).one().timestamp == _at(42)

    def test_storage_failure_rolls_back(self, db, test_employee):
        session = tracking.start_session(db, test_employee.employee_id, now=T0)
        boom = OperationalError("INSERT", {}, Exception("disk I/O error"))
        with patch("tracking.ledger.append_batch", side_effect=boom):
            with pytest.raises(StorageError):
                tracking.ingest_batch(db, test_employee.employee_id, [_sample(0)])
        db.refresh(session)
        assert session.total_locations == 0
        assert db.query(LocationLog).count() == 0


class TestParseTimestamp:
    def test_epoch_milliseconds(self):
        assert tracking.parse_timestamp(1704067200000) == datetime.datetime(2024, 1, 1, 0, 0, 0)

    def test_iso_with_zulu(self):
        assert tracking.parse_timestamp("2024-01-01T12:00:00Z") == datetime.datetime(2024, 1, 1, 12, 0, 0)

    def test_iso_with_offset_converted_to_utc(self):
        assert tracking.parse_timestamp("2024-01-01T14:00:00+02:00") == datetime.datetime(2024, 1, 1, 12, 0, 0)

    def test_naive_iso_kept(self):
        assert tracking.parse_timestamp("2024-01-01T12:00:00") == datetime.datetime(2024, 1, 1, 12, 0, 0)

    def test_none(self):
        assert tracking.parse_timestamp(None) is None


# =====================================================================
# Session lookup
# =====================================================================

class TestSessionLookup:
    def test_owned_session(self, db, test_employee):
        session = tracking.start_session(db, test_employee.employee_id, now=T0)
        assert tracking.get_owned_session(db, test_employee.employee_id, session.session_id) is session

    def test_other_owner_gets_not_found(self, db, test_employee, other_employee):
        session = tracking.start_session(db, test_employee.employee_id, now=T0)
        with pytest.raises(NotFoundError):
            tracking.get_owned_session(db, other_employee.employee_id, session.session_id)

    def test_unknown_session(self, db, test_employee):
        with pytest.raises(NotFoundError):
            tracking.get_owned_session(db, test_employee.employee_id, "missing")

    def test_list_newest_first(self, db, test_employee):
        for i in range(3):
            tracking.start_session(db, test_employee.employee_id, now=_at(i * 100))
        sessions = tracking.list_sessions(db, test_employee.employee_id)
        assert [s.start_time for s in sessions] == [_at(200), _at(100), _at(0)]
        assert [s.status for s in sessions] == ["active", "completed", "completed"]

    def test_list_filters(self, db, test_employee, other_employee):
        tracking.start_session(db, test_employee.employee_id, now=T0)
        tracking.start_session(db, test_employee.employee_id, now=_at(60))
        tracking.start_session(db, other_employee.employee_id, now=T0)
        assert len(tracking.list_sessions(db, status="active")) == 2
        assert len(tracking.list_sessions(db, test_employee.employee_id, status="completed")) == 1
        assert len(tracking.list_sessions(db, limit=1)) == 1

    def test_list_unknown_status(self, db):
        with pytest.raises(ValidationError):
            tracking.list_sessions(db, status="paused")


# =====================================================================
# Ledger queries
# =====================================================================

class TestLedger:
    def test_query_range_is_inclusive(self, db, test_employee):
        tracking.ingest_batch(db, test_employee.employee_id, [_sample(s) for s in (0, 30, 60, 90)])
        rows = ledger.query_range(db, test_employee.employee_id, _at(30), _at(60))
        assert [r.timestamp for r in rows] == [_at(30), _at(60)]

    def test_query_range_descending_with_limit(self, db, test_employee):
        # Submitted out of order
        tracking.ingest_batch(db, test_employee.employee_id, [_sample(s) for s in (60, 0, 90, 30)])
        rows = ledger.query_range(db, test_employee.employee_id, _at(0), _at(90), descending=True, limit=2)
        assert [r.timestamp for r in rows] == [_at(90), _at(60)]

    def test_query_range_scoped_to_owner(self, db, test_employee, other_employee):
        tracking.ingest_batch(db, other_employee.employee_id, [_sample(0)])
        assert ledger.query_range(db, test_employee.employee_id, _at(-10), _at(10)) == []

    def test_session_window_open_session(self, db, test_employee):
        session = tracking.start_session(db, test_employee.employee_id, now=T0)
        assert ledger.session_window(session, now=_at(5)) == (T0, _at(5))

    def test_query_recent(self, db, test_employee):
        tracking.ingest_batch(db, test_employee.employee_id, [_sample(s) for s in (0, 30, 60)])
        rows = ledger.query_recent(db, test_employee.employee_id, limit=2)
        assert [r.timestamp for r in rows] == [_at(60), _at(30)]

    def test_latest_per_owner(self, db, test_employee, other_employee):
        tracking.ingest_batch(db, test_employee.employee_id, [_sample(0), _sample(120, speed=2.0)])
        tracking.ingest_batch(db, other_employee.employee_id, [_sample(60)])
        tracking.ingest_batch(db, other_employee.employee_id, [_sample(-7200)])

        latest = {loc.employee_id: loc for loc, _ in ledger.query_latest_per_owner(db, _at(-3600))}
        assert latest[test_employee.employee_id].timestamp == _at(120)
        assert latest[other_employee.employee_id].timestamp == _at(60)

    def test_latest_per_owner_respects_window(self, db, test_employee):
        tracking.ingest_batch(db, test_employee.employee_id, [_sample(0)])
        assert ledger.query_latest_per_owner(db, _at(10)) == []

    def test_owner_delete_cascades(self, db, test_employee):
        tracking.start_session(db, test_employee.employee_id, now=T0)
        tracking.ingest_batch(db, test_employee.employee_id, [_sample(0)])
        db.delete(test_employee)
        db.commit()
        assert db.query(LocationLog).count() == 0
        assert db.query(TrackingSession).count() == 0


# =====================================================================
# End to end
# =====================================================================

def test_start_ingest_stop_analyze(db, test_employee):
    import processing

    session = tracking.start_session(db, test_employee.employee_id, now=T0)
    samples = [
        _sample(0, speed=1.5),
        _sample(30, speed=0.0),
        _sample(60, speed=0.0),
        _sample(90, speed=0.0),
        _sample(120, speed=0.0),
    ]
    tracking.ingest_batch(db, test_employee.employee_id, samples)
    tracking.stop_session(db, test_employee.employee_id, 1.2, now=_at(180))

    details = processing.analyze_session(db, tracking.get_owned_session(db, test_employee.employee_id, session.session_id))
    assert len(details["route"]) == 5
    assert len(details["stops"]) == 1
    assert details["stops"][0]["duration_minutes"] == 2
    assert details["session"]["total_distance"] == 1.2
    assert details["session"]["total_locations"] == 5
