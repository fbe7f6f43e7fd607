"""club_migrate.field_mapping

Declarative field mapping from decoded source rows to typed import records.

A FieldSpec is one of three variants:
  LiteralField    -- a fixed value from the config, coerced by kind
  ColumnField     -- copy of one source column, coerced by kind
  TransformField  -- source column looked up in a named table, then coerced

Every variant carries a `kind` (text | datetime | optional_datetime |
integer | boolean) which is dispatched once through _KIND_COERCERS.  No
field name is special-cased inside the mapping loop; the only entity-specific
logic is the required-field check that runs after all fields are resolved.

Usage:
    from club_migrate.field_mapping import map_member_record
    record = map_member_record(row, config.entities["members"].mapping, config.lookups)
    if record.errors:
        ...
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Callable, ClassVar, Mapping

from club_migrate.normalize import (
    parse_bool,
    parse_datetime,
    parse_positive_int,
    trim,
    utc_now,
)
from club_migrate.tabular import SourceRow

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

ENTITY_KINDS = ("members", "events", "registrations")

DEFAULT_KEY = "_default"

VALID_ACTIONS = ("create", "update", "skip")

# Used when a transform table has neither the raw value nor a _default entry.
HARD_DEFAULTS: dict[str, dict[str, Any]] = {
    "members": {"membership_status_code": "PROSPECT"},
    "events": {"category": "General"},
    "registrations": {"status": "CONFIRMED"},
}


def _coerce_text(raw: Any) -> Any:
    return "" if raw is None else str(raw).strip()


def _coerce_datetime(raw: Any) -> datetime:
    return parse_datetime(_as_str(raw)) or utc_now()


def _coerce_optional_datetime(raw: Any) -> datetime | None:
    return parse_datetime(_as_str(raw))


def _coerce_integer(raw: Any) -> int | None:
    return parse_positive_int(_as_str(raw))


def _coerce_boolean(raw: Any) -> bool | None:
    return parse_bool(_as_str(raw))


def _as_str(raw: Any) -> str | None:
    return None if raw is None else str(raw)


_KIND_COERCERS: dict[str, Callable[[Any], Any]] = {
    "text": _coerce_text,
    "datetime": _coerce_datetime,
    "optional_datetime": _coerce_optional_datetime,
    "integer": _coerce_integer,
    "boolean": _coerce_boolean,
}

VALID_KINDS = frozenset(_KIND_COERCERS)


# ---------------------------------------------------------------------------
# FieldSpec variants
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class LiteralField:
    value: Any
    kind: str = "text"

    def raw(self, row: SourceRow) -> str:
        return "" if self.value is None else str(self.value)

    def resolve(
        self,
        row: SourceRow,
        lookups: Mapping[str, Mapping[str, Any]],
        hard_default: Any = None,
    ) -> Any:
        # YAML may already have typed the value (bool, int, date); its text
        # form parses back to the same value.
        if self.value is None:
            return None
        return _KIND_COERCERS[self.kind](_as_str(self.value))


@dataclass(frozen=True)
class ColumnField:
    column: str
    kind: str = "text"

    def raw(self, row: SourceRow) -> str:
        return row.get(self.column, "")

    def resolve(
        self,
        row: SourceRow,
        lookups: Mapping[str, Mapping[str, Any]],
        hard_default: Any = None,
    ) -> Any:
        return _KIND_COERCERS[self.kind](self.raw(row))


@dataclass(frozen=True)
class TransformField:
    column: str
    table: str
    kind: str = "text"

    def raw(self, row: SourceRow) -> str:
        return row.get(self.column, "")

    def resolve(
        self,
        row: SourceRow,
        lookups: Mapping[str, Mapping[str, Any]],
        hard_default: Any = None,
    ) -> Any:
        table = lookups.get(self.table) or {}
        raw = self.raw(row)
        if raw in table:
            value = table[raw]
        elif DEFAULT_KEY in table:
            value = table[DEFAULT_KEY]
        else:
            value = hard_default
        return _KIND_COERCERS[self.kind](value)


FieldSpec = LiteralField | ColumnField | TransformField


@dataclass(frozen=True)
class EntityMapping:
    """Field specifications for one entity kind, loaded once per run."""

    external_id_column: str
    fields: Mapping[str, FieldSpec]


# ---------------------------------------------------------------------------
# Import records
# ---------------------------------------------------------------------------

@dataclass
class ImportRecord:
    """Base for one source row's import outcome.

    `action` and `target_id` are written only by the reconciliation engine.
    """

    entity: ClassVar[str] = ""

    source_row: int = 0
    external_id: str | None = None
    errors: list[str] = field(default_factory=list)
    action: str | None = None
    target_id: str | None = None

    @property
    def has_errors(self) -> bool:
        return bool(self.errors)

    def add_error(self, message: str) -> None:
        self.errors.append(message)

    def mark(self, action: str, target_id: str | None = None) -> None:
        """Set the reconciliation action.  A record is classified once."""
        if action not in VALID_ACTIONS:
            raise ValueError(f"Invalid action {action!r}")
        if self.action is not None:
            raise RuntimeError(
                f"row {self.source_row}: action already set to {self.action!r}"
            )
        self.action = action
        if target_id is not None:
            self.target_id = target_id

    def fail(self, message: str) -> None:
        """Record a reconciliation fault; the record ends as a skip."""
        self.add_error(message)
        self.action = "skip"

    def identifier(self) -> str:
        return ""

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {}
        for f in fields(self):
            value = getattr(self, f.name)
            if isinstance(value, datetime):
                value = value.isoformat()
            elif isinstance(value, list):
                value = list(value)
            out[f.name] = value
        return out


@dataclass
class MemberImport(ImportRecord):
    entity: ClassVar[str] = "member"

    first_name: str = ""
    last_name: str = ""
    email: str = ""
    phone: str | None = None
    joined_at: datetime | None = None
    membership_status_code: str = ""
    membership_level: str | None = None
    tier_id: str | None = None

    def identifier(self) -> str:
        return self.email


@dataclass
class EventImport(ImportRecord):
    entity: ClassVar[str] = "event"

    title: str = ""
    description: str | None = None
    category: str | None = None
    location: str | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None
    capacity: int | None = None
    is_published: bool = True

    def identifier(self) -> str:
        return self.title


@dataclass
class RegistrationImport(ImportRecord):
    entity: ClassVar[str] = "registration"

    member_external_id: str = ""
    event_external_id: str = ""
    member_id: str | None = None
    event_id: str | None = None
    status: str = ""
    registered_at: datetime | None = None
    cancelled_at: datetime | None = None

    def identifier(self) -> str:
        return f"{self.event_external_id}/{self.member_external_id}"


RECORD_TYPES: dict[str, type[ImportRecord]] = {
    "members": MemberImport,
    "events": EventImport,
    "registrations": RegistrationImport,
}

_BASE_FIELDS = frozenset(f.name for f in fields(ImportRecord))

# Target fields a mapping may populate, per entity kind.
MAPPABLE_FIELDS: dict[str, frozenset[str]] = {
    kind: frozenset(f.name for f in fields(cls)) - _BASE_FIELDS
    - {"tier_id", "member_id", "event_id"}
    for kind, cls in RECORD_TYPES.items()
}

_OPTIONAL_TEXT_FIELDS = frozenset({
    "phone", "membership_level", "description", "category", "location",
})


# ---------------------------------------------------------------------------
# Mapping
# ---------------------------------------------------------------------------

def map_record(
    entity: str,
    row: SourceRow,
    mapping: EntityMapping,
    lookups: Mapping[str, Mapping[str, Any]],
) -> ImportRecord:
    """Apply one entity mapping to one row, returning a populated record.

    Failures accumulate on record.errors; they never stop the remaining
    fields from being resolved.
    """
    record = RECORD_TYPES[entity](source_row=row.row_number)
    record.external_id = trim(row.get(mapping.external_id_column))

    hard_defaults = HARD_DEFAULTS.get(entity, {})
    for target, spec in mapping.fields.items():
        try:
            value = spec.resolve(row, lookups, hard_defaults.get(target))
        except (TypeError, ValueError) as exc:
            record.add_error(f"Invalid {_camel(target)}: {exc}")
            continue
        if target in _OPTIONAL_TEXT_FIELDS and value == "":
            value = None
        setattr(record, target, value)

    _REQUIRED_CHECKS[entity](record, row, mapping)
    return record


def map_member_record(
    row: SourceRow,
    mapping: EntityMapping,
    lookups: Mapping[str, Mapping[str, Any]],
) -> MemberImport:
    return map_record("members", row, mapping, lookups)  # type: ignore[return-value]


def map_event_record(
    row: SourceRow,
    mapping: EntityMapping,
    lookups: Mapping[str, Mapping[str, Any]],
) -> EventImport:
    return map_record("events", row, mapping, lookups)  # type: ignore[return-value]


def map_registration_record(
    row: SourceRow,
    mapping: EntityMapping,
    lookups: Mapping[str, Mapping[str, Any]],
) -> RegistrationImport:
    return map_record("registrations", row, mapping, lookups)  # type: ignore[return-value]


# ---------------------------------------------------------------------------
# Required-field checks
# ---------------------------------------------------------------------------

def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.title() for part in rest)


def _check_member(record: ImportRecord, row: SourceRow, mapping: EntityMapping) -> None:
    for name in ("first_name", "last_name", "email"):
        if not trim(getattr(record, name, "") or ""):
            record.add_error(f"Missing {_camel(name)}")


def _check_event(record: ImportRecord, row: SourceRow, mapping: EntityMapping) -> None:
    if not trim(getattr(record, "title", "") or ""):
        record.add_error("Missing title")
    if getattr(record, "start_time", None) is None:
        spec = mapping.fields.get("start_time")
        raw = spec.raw(row) if spec is not None else ""
        if raw:
            record.add_error(f"Invalid startTime: {raw}")
        else:
            record.add_error("Missing startTime")


def _check_registration(record: ImportRecord, row: SourceRow, mapping: EntityMapping) -> None:
    # Member/event linkage is resolved and checked during reconciliation.
    return None


_REQUIRED_CHECKS: dict[str, Callable[[ImportRecord, SourceRow, EntityMapping], None]] = {
    "members": _check_member,
    "events": _check_event,
    "registrations": _check_registration,
}
