#!/usr/bin/env python3
"""Seed the database with GPS test fixture data for local API testing.

Usage:
    python seed_test_data.py

This mirrors a demo technician, records the 50-point San Francisco commute
trace as one completed tracking session, and prints the trip analysis.
"""

import datetime

import processing
import tracking
from database import init_db, SessionLocal
from identity import sync_employee
from models import Employee
from tests.gps_test_fixtures import GPS_TRACE

DEMO_PRINCIPAL = {
    "sub": "demo-technician",
    "email": "demo@example.com",
    "role": "technician",
    "first_name": "Demo",
    "last_name": "Technician",
    "is_active": True,
}


def seed():
    init_db()
    db = SessionLocal()

    if db.query(Employee).filter(Employee.employee_id == DEMO_PRINCIPAL["sub"]).first():
        print("Demo technician already exists. Skipping seed.")
        db.close()
        return

    employee = sync_employee(db, DEMO_PRINCIPAL)
    print(f"Created technician: {employee.email} (id={employee.employee_id})")

    started = GPS_TRACE[0]["timestamp"] - datetime.timedelta(seconds=10)
    session = tracking.start_session(db, employee.employee_id, now=started)

    samples = [
        {
            "latitude": pt["latitude"],
            "longitude": pt["longitude"],
            "accuracy": pt.get("accuracy"),
            "altitude": pt.get("altitude"),
            "speed": pt.get("speed"),
            "timestamp": pt["timestamp"].isoformat(),
        }
        for pt in GPS_TRACE
    ]
    tracking.ingest_batch(db, employee.employee_id, samples)
    print(f"Inserted {len(samples)} location points")

    ended = GPS_TRACE[-1]["timestamp"] + datetime.timedelta(seconds=10)
    tracking.stop_session(db, employee.employee_id, 1.75, now=ended)

    details = processing.analyze_session(db, session)
    print(f"Session {session.session_id}: {len(details['route'])} points, {len(details['stops'])} stops")
    for stop in details["stops"]:
        print(f"  - ({stop['latitude']:.5f}, {stop['longitude']:.5f}): {stop['duration_minutes']}m")

    db.close()
    print("\nDone! Resolve a Service Hub token for demo@example.com to view it.")


if __name__ == "__main__":
    seed()
