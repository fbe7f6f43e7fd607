"""club_migrate.storage

Target-platform storage port and its implementations.

  TargetStore         -- Protocol the reconciliation engine talks to
  PostgresTargetStore -- psycopg v3 against migrations/0001_target_schema.sql
  DryRunTargetStore   -- wraps any store; reads pass through, writes are faked

Every PostgresTargetStore call runs inside its own conn.transaction() block,
so a failing row rolls back alone.  Connection-level failures surface as
StorageUnavailableError, which aborts the run; any other database error is a
single-record fault for the caller to record.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Protocol

import psycopg

from club_migrate.field_mapping import EventImport, MemberImport, RegistrationImport

log = logging.getLogger(__name__)

DRY_RUN_ID_PREFIX = "dry-"


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class StorageUnavailableError(RuntimeError):
    """Raised when the target store cannot be reached at all."""


# ---------------------------------------------------------------------------
# Port
# ---------------------------------------------------------------------------

class TargetStore(Protocol):
    def list_status_codes(self) -> dict[str, str]:
        """Return status code -> status id."""
        ...

    def list_tiers(self) -> dict[str, str]:
        """Return tier code -> tier id."""
        ...

    def list_members(self) -> list[tuple[str, str]]:
        """Return (member id, email) pairs."""
        ...

    def list_events(self) -> list[tuple[str, str, datetime]]:
        """Return (event id, title, start time) triples."""
        ...

    def find_registration(self, event_id: str, member_id: str) -> str | None:
        ...

    def create_member(self, record: MemberImport, status_id: str) -> str:
        ...

    def update_member(self, member_id: str, record: MemberImport, status_id: str) -> None:
        ...

    def create_event(self, record: EventImport) -> str:
        ...

    def create_registration(self, record: RegistrationImport) -> str:
        ...

    def update_registration(self, registration_id: str, record: RegistrationImport) -> None:
        ...


# ---------------------------------------------------------------------------
# PostgreSQL
# ---------------------------------------------------------------------------

class PostgresTargetStore:
    """TargetStore backed by a psycopg connection."""

    def __init__(self, conn: psycopg.Connection) -> None:
        self._conn = conn

    @classmethod
    def connect(cls, dsn: str) -> "PostgresTargetStore":
        try:
            conn = psycopg.connect(dsn)
        except psycopg.OperationalError as exc:
            raise StorageUnavailableError(f"Cannot connect to target database: {exc}") from exc
        return cls(conn)

    def close(self) -> None:
        self._conn.close()

    def _execute(self, sql: str, params: tuple[Any, ...] = ()) -> list[tuple[Any, ...]]:
        try:
            with self._conn.transaction():
                cur = self._conn.execute(sql, params)
                return cur.fetchall() if cur.description else []
        except psycopg.OperationalError as exc:
            raise StorageUnavailableError(str(exc)) from exc

    # -- reads --------------------------------------------------------------

    def list_status_codes(self) -> dict[str, str]:
        rows = self._execute("SELECT code, id FROM membership_status")
        return {code: str(sid) for code, sid in rows}

    def list_tiers(self) -> dict[str, str]:
        rows = self._execute("SELECT code, id FROM membership_tier")
        return {code: str(tid) for code, tid in rows}

    def list_members(self) -> list[tuple[str, str]]:
        rows = self._execute("SELECT id, email FROM member ORDER BY created_at, id")
        return [(str(mid), email) for mid, email in rows]

    def list_events(self) -> list[tuple[str, str, datetime]]:
        rows = self._execute("SELECT id, title, start_time FROM event ORDER BY created_at, id")
        return [(str(eid), title, start) for eid, title, start in rows]

    def find_registration(self, event_id: str, member_id: str) -> str | None:
        rows = self._execute(
            "SELECT id FROM event_registration WHERE event_id = %s AND member_id = %s",
            (event_id, member_id),
        )
        return str(rows[0][0]) if rows else None

    # -- writes -------------------------------------------------------------

    def create_member(self, record: MemberImport, status_id: str) -> str:
        rows = self._execute(
            """
            INSERT INTO member
              (first_name, last_name, email, phone, joined_at,
               membership_status_id, membership_tier_id)
            VALUES (%s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                record.first_name, record.last_name, record.email, record.phone,
                record.joined_at, status_id, record.tier_id,
            ),
        )
        return str(rows[0][0])

    def update_member(self, member_id: str, record: MemberImport, status_id: str) -> None:
        # Tier is only ever set here, never cleared.
        self._execute(
            """
            UPDATE member
            SET first_name = %s,
                last_name = %s,
                phone = %s,
                joined_at = %s,
                membership_status_id = %s,
                membership_tier_id = COALESCE(%s, membership_tier_id),
                updated_at = now()
            WHERE id = %s
            """,
            (
                record.first_name, record.last_name, record.phone, record.joined_at,
                status_id, record.tier_id, member_id,
            ),
        )

    def create_event(self, record: EventImport) -> str:
        rows = self._execute(
            """
            INSERT INTO event
              (title, description, category, location, start_time, end_time,
               capacity, is_published)
            VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
            RETURNING id
            """,
            (
                record.title, record.description, record.category, record.location,
                record.start_time, record.end_time, record.capacity,
                True if record.is_published is None else record.is_published,
            ),
        )
        return str(rows[0][0])

    def create_registration(self, record: RegistrationImport) -> str:
        rows = self._execute(
            """
            INSERT INTO event_registration
              (event_id, member_id, status, registered_at, cancelled_at)
            VALUES (%s, %s, %s, COALESCE(%s, now()), %s)
            RETURNING id
            """,
            (
                record.event_id, record.member_id, record.status,
                record.registered_at, record.cancelled_at,
            ),
        )
        return str(rows[0][0])

    def update_registration(self, registration_id: str, record: RegistrationImport) -> None:
        self._execute(
            """
            UPDATE event_registration
            SET status = %s,
                registered_at = COALESCE(%s, registered_at),
                cancelled_at = %s,
                updated_at = now()
            WHERE id = %s
            """,
            (record.status, record.registered_at, record.cancelled_at, registration_id),
        )


# ---------------------------------------------------------------------------
# Dry run
# ---------------------------------------------------------------------------

@dataclass
class DryRunTargetStore:
    """Read-through wrapper that never writes.

    Each would-be create returns a deterministic placeholder id
    (dry-member-000001, ...).  Registrations it pretended to create are
    remembered so a repeated (event, member) pair is detected within the run.
    """

    inner: TargetStore
    _counters: dict[str, int] = field(default_factory=dict)
    _registrations: dict[tuple[str, str], str] = field(default_factory=dict)

    def _next_id(self, kind: str) -> str:
        n = self._counters.get(kind, 0) + 1
        self._counters[kind] = n
        return f"{DRY_RUN_ID_PREFIX}{kind}-{n:06d}"

    def list_status_codes(self) -> dict[str, str]:
        return self.inner.list_status_codes()

    def list_tiers(self) -> dict[str, str]:
        return self.inner.list_tiers()

    def list_members(self) -> list[tuple[str, str]]:
        return self.inner.list_members()

    def list_events(self) -> list[tuple[str, str, datetime]]:
        return self.inner.list_events()

    def find_registration(self, event_id: str, member_id: str) -> str | None:
        known = self._registrations.get((event_id, member_id))
        if known is not None:
            return known
        if is_placeholder_id(event_id) or is_placeholder_id(member_id):
            return None
        return self.inner.find_registration(event_id, member_id)

    def create_member(self, record: MemberImport, status_id: str) -> str:
        return self._next_id("member")

    def update_member(self, member_id: str, record: MemberImport, status_id: str) -> None:
        log.debug("dry-run: skip update of member %s", member_id)

    def create_event(self, record: EventImport) -> str:
        return self._next_id("event")

    def create_registration(self, record: RegistrationImport) -> str:
        reg_id = self._next_id("registration")
        self._registrations[(record.event_id or "", record.member_id or "")] = reg_id
        return reg_id

    def update_registration(self, registration_id: str, record: RegistrationImport) -> None:
        log.debug("dry-run: skip update of registration %s", registration_id)


def is_placeholder_id(value: str | None) -> bool:
    return bool(value) and str(value).startswith(DRY_RUN_ID_PREFIX)
