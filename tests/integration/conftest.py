"""Integration test fixtures.

Applies the target schema migration against an ephemeral PostgreSQL database
provided by pytest-postgresql and seeds the reference tables.
"""

from __future__ import annotations

from pathlib import Path

import psycopg
import pytest
from pytest_postgresql import factories

from club_migrate.tabular import encode_rows

# ---------------------------------------------------------------------------
# Paths
# ---------------------------------------------------------------------------

PROJECT_ROOT = Path(__file__).parent.parent.parent
MIGRATIONS = [
    PROJECT_ROOT / "migrations" / "0001_target_schema.sql",
]

STATUS_CODES = ["ACTIVE", "LAPSED", "PENDING_NEW", "PENDING_RENEWAL", "SUSPENDED", "PROSPECT"]
TIER_CODES = ["NEWCOMER", "FIRST_YEAR", "SECOND_YEAR", "ALUMNI", "GENERAL"]

# ---------------------------------------------------------------------------
# pytest-postgresql process fixture
# ---------------------------------------------------------------------------

postgresql_proc = factories.postgresql_proc()
postgresql = factories.postgresql("postgresql_proc")


# ---------------------------------------------------------------------------
# Schema fixture: applies migrations and seeds reference rows per test
# ---------------------------------------------------------------------------

@pytest.fixture(scope="function")
def db_conn(postgresql):
    """Return (connection, dsn) with the schema applied and reference data seeded."""
    dsn = (
        f"host={postgresql.info.host} "
        f"port={postgresql.info.port} "
        f"dbname={postgresql.info.dbname} "
        f"user={postgresql.info.user} "
        f"password={postgresql.info.password or ''}"
    )
    conn = psycopg.connect(dsn, autocommit=True)
    try:
        for migration in MIGRATIONS:
            conn.execute(migration.read_text(encoding="utf-8"))
        for code in STATUS_CODES:
            conn.execute(
                "INSERT INTO membership_status (code, label) VALUES (%s, %s)",
                (code, code.replace("_", " ").title()),
            )
        for order, code in enumerate(TIER_CODES):
            conn.execute(
                "INSERT INTO membership_tier (code, name, sort_order) VALUES (%s, %s, %s)",
                (code, code.replace("_", " ").title(), order),
            )
        yield conn, dsn
    finally:
        conn.close()


# ---------------------------------------------------------------------------
# Export files shaped for config/migration.yml
# ---------------------------------------------------------------------------

MEMBER_HEADERS = [
    "Contact ID", "First name", "Last name", "Email", "Phone",
    "Member since", "Membership status", "Membership level",
]
EVENT_HEADERS = [
    "Event ID", "Event title", "Description", "Tags", "Location",
    "Start date", "End date", "Registration limit", "Visible",
]
REGISTRATION_HEADERS = [
    "Registration ID", "Contact ID", "Event ID", "Registration status",
    "Registration date", "Cancellation date",
]


@pytest.fixture
def export_dir(tmp_path):
    data_dir = tmp_path / "exports"
    data_dir.mkdir()
    members = [
        {"Contact ID": "101", "First name": "Ann", "Last name": "Lee", "Email": "Ann@Example.com",
         "Member since": "03/14/2019", "Membership status": "Active", "Membership level": "Newcomer"},
        {"Contact ID": "102", "First name": "Bob", "Last name": "Ray", "Email": "bob@example.com",
         "Phone": "555-0100", "Membership status": "Lapsed", "Membership level": "Alumni"},
        {"Contact ID": "103", "First name": "Cy", "Last name": "Ng", "Email": "ann@example.com",
         "Membership status": "Active"},
        {"Contact ID": "104", "First name": "", "Last name": "Kim", "Email": "kim@example.com",
         "Membership status": "Active"},
    ]
    events = [
        {"Event ID": "E1", "Event title": "Harbour Cruise", "Description": "Sunset sail,\nbring a jacket",
         "Tags": "Social", "Location": "Pier 4", "Start date": "2024-06-01T18:00:00Z",
         "End date": "2024-06-01T21:00:00Z", "Registration limit": "40", "Visible": "yes"},
        {"Event ID": "E2", "Event title": "Annual Dinner", "Tags": "Luncheon",
         "Start date": "06/15/2024 19:00", "Visible": "no"},
    ]
    registrations = [
        {"Registration ID": "R1", "Contact ID": "101", "Event ID": "E1",
         "Registration status": "Confirmed", "Registration date": "2024-05-01"},
        {"Registration ID": "R2", "Contact ID": "102", "Event ID": "E1",
         "Registration status": "No show", "Registration date": "2024-05-02"},
        {"Registration ID": "R3", "Contact ID": "102", "Event ID": "E2",
         "Registration status": "Cancelled", "Registration date": "2024-05-02",
         "Cancellation date": "2024-05-10"},
        {"Registration ID": "R4", "Contact ID": "104", "Event ID": "E2",
         "Registration status": "Confirmed"},
    ]
    for name, headers, rows in (
        ("members.csv", MEMBER_HEADERS, members),
        ("events.csv", EVENT_HEADERS, events),
        ("registrations.csv", REGISTRATION_HEADERS, registrations),
    ):
        (data_dir / name).write_text(encode_rows(headers, rows), encoding="utf-8")
    return data_dir
