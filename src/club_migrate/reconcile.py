"""club_migrate.reconcile

Create / update / skip decisions for mapped import records.

Records are processed in source order, entity kind by entity kind, and the
driver must call them strictly members -> events -> registrations:
registrations resolve their member and event references through the
external-id maps the earlier phases fill in.

Identity keys:
  member  -- lower-cased, trimmed email
  event   -- lower-cased, trimmed title + "|" + start time truncated to the hour

Per-record contract:
  - a record that arrives with errors is skipped without touching the store
  - any exception from the store for one record is recorded on that record,
    which becomes a skip; processing moves on to the next row
  - StorageUnavailableError is systemic and propagates
  - each record is counted exactly once, by its final outcome

Dry run is not handled here.  Pass a DryRunTargetStore.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable, Iterable

from club_migrate.config import MigrationConfig
from club_migrate.field_mapping import (
    EventImport,
    ImportRecord,
    MemberImport,
    RegistrationImport,
)
from club_migrate.normalize import event_identity_key, normalize_email
from club_migrate.report import RunReport
from club_migrate.storage import StorageUnavailableError, TargetStore
from club_migrate.tiers import TierMapper, disabled_tier_mapper, resolve_tier_id

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Identity index + external-id map
# ---------------------------------------------------------------------------

class IdentityIndex:
    """Natural key -> target id for members and events, owned by one run."""

    def __init__(self) -> None:
        self.members: dict[str, str] = {}
        self.events: dict[str, str] = {}

    def find_member(self, email: str | None) -> str | None:
        key = normalize_email(email)
        return self.members.get(key) if key else None

    def add_member(self, email: str | None, target_id: str) -> None:
        key = normalize_email(email)
        if key:
            self.members.setdefault(key, target_id)

    def find_event(self, title: str | None, start_time: datetime) -> str | None:
        return self.events.get(event_identity_key(title, start_time))

    def add_event(self, title: str | None, start_time: datetime, target_id: str) -> None:
        self.events.setdefault(event_identity_key(title, start_time), target_id)


class ExternalIdMap:
    """External id -> target id for one entity kind.  First write wins."""

    def __init__(self) -> None:
        self._ids: dict[str, str] = {}

    def record(self, external_id: str, target_id: str) -> bool:
        """Return False when external_id was already mapped (kept as is)."""
        if external_id in self._ids:
            return False
        self._ids[external_id] = target_id
        return True

    def get(self, external_id: str | None) -> str | None:
        if not external_id:
            return None
        return self._ids.get(external_id)

    def __contains__(self, external_id: object) -> bool:
        return external_id in self._ids

    def __len__(self) -> int:
        return len(self._ids)


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

class ReconciliationEngine:
    def __init__(
        self,
        store: TargetStore,
        config: MigrationConfig,
        report: RunReport,
        tier_mapper: TierMapper | None = None,
    ) -> None:
        self.store = store
        self.config = config
        self.report = report
        self.tier_mapper = tier_mapper or disabled_tier_mapper()
        self.status_ids: dict[str, str] = {}
        self.identity = IdentityIndex()
        self.member_ids = ExternalIdMap()
        self.event_ids = ExternalIdMap()

    def load_lookups(self) -> None:
        """Preload status codes and the member/event identity indexes."""
        self.status_ids = dict(self.store.list_status_codes())
        for member_id, email in self.store.list_members():
            self.identity.add_member(email, member_id)
        for event_id, title, start_time in self.store.list_events():
            self.identity.add_event(title, start_time, event_id)
        log.info(
            "lookups loaded: %d statuses, %d members, %d events",
            len(self.status_ids), len(self.identity.members), len(self.identity.events),
        )

    # -- phases -------------------------------------------------------------

    def reconcile_members(self, records: Iterable[MemberImport]) -> None:
        for record in records:
            self._process("members", record, self._reconcile_member)

    def reconcile_events(self, records: Iterable[EventImport]) -> None:
        for record in records:
            self._process("events", record, self._reconcile_event)

    def reconcile_registrations(self, records: Iterable[RegistrationImport]) -> None:
        for record in records:
            self._link_registration(record)
            self._process("registrations", record, self._reconcile_registration)

    def _process(
        self,
        kind: str,
        record: ImportRecord,
        handler: Callable[[Any], None],
    ) -> None:
        if record.errors:
            record.mark("skip")
        else:
            try:
                handler(record)
            except StorageUnavailableError:
                raise
            except Exception as exc:
                log.warning("%s row %d failed: %s", kind, record.source_row, exc)
                record.fail(str(exc))
        self.report.record_outcome(kind, record)

    # -- members ------------------------------------------------------------

    def _reconcile_member(self, record: MemberImport) -> None:
        status_id = self.status_ids.get(record.membership_status_code)
        if status_id is None:
            record.fail(f"Unknown status: {record.membership_status_code}")
            return

        self._assign_tier(record)

        existing = self.identity.find_member(record.email)
        if existing is not None:
            if self.config.on_conflict("members") == "update":
                self.store.update_member(existing, record, status_id)
                record.mark("update", existing)
            else:
                record.mark("skip", existing)
        else:
            new_id = self.store.create_member(record, status_id)
            self.identity.add_member(record.email, new_id)
            record.mark("create", new_id)

        self._associate("members", self.member_ids, record)

    def _assign_tier(self, record: MemberImport) -> None:
        if not self.tier_mapper.enabled or not record.membership_level:
            return
        resolution = resolve_tier_id(record.membership_level, self.tier_mapper)
        if resolution.tier_id:
            record.tier_id = resolution.tier_id
        elif resolution.error:
            message = f"member row {record.source_row}: {resolution.error}"
            log.warning(message)
            self.report.warnings.append(message)

    # -- events -------------------------------------------------------------

    def _reconcile_event(self, record: EventImport) -> None:
        existing = self.identity.find_event(record.title, record.start_time)
        if existing is not None:
            record.mark("skip", existing)
        else:
            new_id = self.store.create_event(record)
            self.identity.add_event(record.title, record.start_time, new_id)
            record.mark("create", new_id)

        self._associate("events", self.event_ids, record)

    # -- registrations ------------------------------------------------------

    def _link_registration(self, record: RegistrationImport) -> None:
        record.member_id = self.member_ids.get(record.member_external_id)
        record.event_id = self.event_ids.get(record.event_external_id)
        if not record.member_id:
            record.add_error(f"Member not found: {record.member_external_id}")
        if not record.event_id:
            record.add_error(f"Event not found: {record.event_external_id}")

    def _reconcile_registration(self, record: RegistrationImport) -> None:
        existing = self.store.find_registration(record.event_id, record.member_id)
        if existing is not None:
            if self.config.on_conflict("registrations") == "update":
                self.store.update_registration(existing, record)
                record.mark("update", existing)
            else:
                record.mark("skip", existing)
        else:
            record.mark("create", self.store.create_registration(record))

    # -- external ids -------------------------------------------------------

    def _associate(self, kind: str, id_map: ExternalIdMap, record: ImportRecord) -> None:
        if not record.external_id or not record.target_id:
            return
        if not id_map.record(record.external_id, record.target_id):
            log.info(
                "%s external id %s seen again at row %d; keeping first mapping",
                kind, record.external_id, record.source_row,
            )
        self.report.add_association(
            kind, record.external_id, record.target_id, record.identifier()
        )
