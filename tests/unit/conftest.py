"""Unit test fixtures: an in-memory TargetStore and a small migration config."""

from __future__ import annotations

import textwrap
from datetime import datetime

import pytest

from club_migrate.config import parse_config
from club_migrate.pipeline import RunOptions
from club_migrate.storage import StorageUnavailableError
from club_migrate.tabular import FIRST_DATA_ROW, SourceRow, encode_rows

CONFIG_YAML = textwrap.dedent("""\
    source: legacy-club-export
    target: club-platform
    version: "1.0"
    entities:
      members:
        external_id_column: Contact ID
        on_conflict: update
        fields:
          first_name: {column: First name}
          last_name: {column: Last name}
          email: {column: Email}
          phone: {column: Phone}
          membership_status_code: {column: Membership status, transform: membership_status}
          membership_level: {column: Membership level}
      events:
        external_id_column: Event ID
        fields:
          title: {column: Event title}
          category: {column: Tags, transform: event_category}
          start_time: {column: Start date, kind: optional_datetime}
          capacity: {column: Registration limit, kind: integer}
      registrations:
        external_id_column: Registration ID
        on_conflict: skip
        fields:
          member_external_id: {column: Contact ID}
          event_external_id: {column: Event ID}
          status: {column: Registration status, transform: registration_status}
          registered_at: {column: Registration date, kind: optional_datetime}
    lookups:
      membership_status:
        Active: ACTIVE
        Lapsed: LAPSED
        _default: PROSPECT
      event_category:
        Social: Social
        _default: General
      registration_status:
        Confirmed: CONFIRMED
        Cancelled: CANCELLED
        _default: CONFIRMED
    preview:
      error_rate_fail: 0.25
    feature_flags:
      membership_tiers_enabled: false
    policies:
      membership.tiers.sourceMapping:
        Newcomer: NEWCOMER
        Alumni: ALUMNI
      membership.tiers.defaultCode: GENERAL
""")


class FakeTargetStore:
    """In-memory TargetStore.

    `fail_emails` makes create/update_member raise for those emails;
    `unavailable` makes every call raise StorageUnavailableError.
    """

    def __init__(self) -> None:
        self.status_codes = {"ACTIVE": "status-active", "LAPSED": "status-lapsed", "PROSPECT": "status-prospect"}
        self.tiers = {"NEWCOMER": "tier-newcomer", "ALUMNI": "tier-alumni", "GENERAL": "tier-general"}
        self.members: dict[str, dict] = {}
        self.events: dict[str, dict] = {}
        self.registrations: dict[str, dict] = {}
        self.fail_emails: set[str] = set()
        self.unavailable = False
        self.writes: list[tuple[str, str]] = []
        self.closed = False
        self._seq = 0

    def _check(self) -> None:
        if self.unavailable:
            raise StorageUnavailableError("connection refused")

    def _new_id(self, kind: str) -> str:
        self._seq += 1
        return f"{kind}-{self._seq}"

    # -- seeding helpers ----------------------------------------------------

    def add_member(self, email: str, **values) -> str:
        member_id = self._new_id("member")
        self.members[member_id] = {"email": email, **values}
        return member_id

    def add_event(self, title: str, start_time: datetime) -> str:
        event_id = self._new_id("event")
        self.events[event_id] = {"title": title, "start_time": start_time}
        return event_id

    def close(self) -> None:
        self.closed = True

    # -- TargetStore --------------------------------------------------------

    def list_status_codes(self):
        self._check()
        return dict(self.status_codes)

    def list_tiers(self):
        self._check()
        return dict(self.tiers)

    def list_members(self):
        self._check()
        return [(mid, m["email"]) for mid, m in self.members.items()]

    def list_events(self):
        self._check()
        return [(eid, e["title"], e["start_time"]) for eid, e in self.events.items()]

    def find_registration(self, event_id, member_id):
        self._check()
        for reg_id, reg in self.registrations.items():
            if reg["event_id"] == event_id and reg["member_id"] == member_id:
                return reg_id
        return None

    def create_member(self, record, status_id):
        self._check()
        if record.email in self.fail_emails:
            raise RuntimeError(f"duplicate key value violates unique constraint for {record.email}")
        member_id = self.add_member(
            record.email, first_name=record.first_name, status_id=status_id, tier_id=record.tier_id,
        )
        self.writes.append(("create_member", member_id))
        return member_id

    def update_member(self, member_id, record, status_id):
        self._check()
        if record.email in self.fail_emails:
            raise RuntimeError("update rejected")
        member = self.members[member_id]
        member.update(first_name=record.first_name, status_id=status_id)
        if record.tier_id is not None:
            member["tier_id"] = record.tier_id
        self.writes.append(("update_member", member_id))

    def create_event(self, record):
        self._check()
        event_id = self.add_event(record.title, record.start_time)
        self.writes.append(("create_event", event_id))
        return event_id

    def create_registration(self, record):
        self._check()
        reg_id = self._new_id("registration")
        self.registrations[reg_id] = {
            "event_id": record.event_id, "member_id": record.member_id, "status": record.status,
        }
        self.writes.append(("create_registration", reg_id))
        return reg_id

    def update_registration(self, registration_id, record):
        self._check()
        self.registrations[registration_id]["status"] = record.status
        self.writes.append(("update_registration", registration_id))


class StaticFlags:
    def __init__(self, **flags: bool) -> None:
        self.flags = flags

    def is_enabled(self, name: str) -> bool:
        return bool(self.flags.get(name, False))


class StaticPolicies:
    def __init__(self, values: dict | None = None) -> None:
        self.values = values or {}

    def get_policy(self, path, org_id=None):
        return self.values.get(path)


@pytest.fixture
def config():
    return parse_config(CONFIG_YAML)


@pytest.fixture
def config_yaml():
    return CONFIG_YAML


@pytest.fixture
def store():
    return FakeTargetStore()


@pytest.fixture
def flags_factory():
    return StaticFlags


@pytest.fixture
def policies_factory():
    return StaticPolicies


@pytest.fixture
def make_rows():
    """Build SourceRows from dicts, numbered like decoded file rows."""

    def _make(*dicts: dict) -> list[SourceRow]:
        return [
            SourceRow(row_number=FIRST_DATA_ROW + i, values=dict(d))
            for i, d in enumerate(dicts)
        ]

    return _make


MEMBER_HEADERS = ["Contact ID", "First name", "Last name", "Email", "Phone", "Membership status", "Membership level"]
EVENT_HEADERS = ["Event ID", "Event title", "Tags", "Start date", "Registration limit"]
REGISTRATION_HEADERS = ["Registration ID", "Contact ID", "Event ID", "Registration status", "Registration date"]

MEMBER_ROWS = [
    {"Contact ID": "101", "First name": "Ann", "Last name": "Lee", "Email": "ann@x.com",
     "Membership status": "Active", "Membership level": "Newcomer"},
    {"Contact ID": "102", "First name": "Bob", "Last name": "Ray", "Email": "bob@x.com",
     "Phone": "555-0100", "Membership status": "Lapsed"},
    {"Contact ID": "103", "First name": "", "Last name": "Kim", "Email": "kim@x.com",
     "Membership status": "Active"},
]
EVENT_ROWS = [
    {"Event ID": "E1", "Event title": "Harbour Cruise, Evening", "Tags": "Social",
     "Start date": "2024-06-01T18:00:00Z", "Registration limit": "40"},
    {"Event ID": "E2", "Event title": "Annual Dinner", "Start date": "06/15/2024 19:00"},
]
REGISTRATION_ROWS = [
    {"Registration ID": "R1", "Contact ID": "101", "Event ID": "E1",
     "Registration status": "Confirmed", "Registration date": "2024-05-01"},
    {"Registration ID": "R2", "Contact ID": "102", "Event ID": "E2",
     "Registration status": "Cancelled", "Registration date": "2024-05-02"},
    {"Registration ID": "R3", "Contact ID": "103", "Event ID": "E1",
     "Registration status": "Confirmed"},
]


@pytest.fixture
def export_dir(tmp_path):
    """Three export files: 3 members (1 invalid), 2 events, 3 registrations (1 orphaned)."""
    data_dir = tmp_path / "exports"
    data_dir.mkdir()
    for name, headers, rows in (
        ("members.csv", MEMBER_HEADERS, MEMBER_ROWS),
        ("events.csv", EVENT_HEADERS, EVENT_ROWS),
        ("registrations.csv", REGISTRATION_HEADERS, REGISTRATION_ROWS),
    ):
        (data_dir / name).write_text(encode_rows(headers, rows), encoding="utf-8")
    return data_dir


@pytest.fixture
def run_options(export_dir, tmp_path):
    def _options(**overrides) -> RunOptions:
        values = {
            "data_dir": export_dir,
            "members_file": "members.csv",
            "events_file": "events.csv",
            "registrations_file": "registrations.csv",
            "output_dir": tmp_path / "artifacts",
        }
        values.update(overrides)
        return RunOptions(**values)

    return _options
