"""club_migrate.config

YAML-based run configuration for a club migration.

Responsibilities:
  - Load and validate config/migration.yml (or any file with the same shape)
  - Build the per-entity FieldSpec mappings and lookup tables
  - Hash the YAML content for traceability in the run report

Usage:
    from pathlib import Path
    from club_migrate.config import load_config

    config = load_config(Path("config/migration.yml"))
    members = config.entities["members"]
    members.mapping.fields["email"]   # ColumnField(column="Email", kind="text")
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Mapping

import yaml

from club_migrate.field_mapping import (
    ENTITY_KINDS,
    MAPPABLE_FIELDS,
    VALID_KINDS,
    ColumnField,
    EntityMapping,
    FieldSpec,
    LiteralField,
    TransformField,
)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REQUIRED_YAML_KEYS = frozenset({"source", "target", "version", "entities"})

VALID_CONFLICT_POLICIES = ("skip", "update")

# Events never update; a matched identity is always skipped.
UPDATABLE_ENTITIES = frozenset({"members", "registrations"})

PREVIEW_KEYS = frozenset({"error_rate_warn", "error_rate_fail", "sample_size"})


# ---------------------------------------------------------------------------
# Exceptions
# ---------------------------------------------------------------------------

class ConfigValidationError(ValueError):
    """Raised when a migration config file fails schema validation."""


# ---------------------------------------------------------------------------
# Config dataclasses
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class EntityConfig:
    mapping: EntityMapping
    on_conflict: str = "skip"


@dataclass(frozen=True)
class PreviewConfig:
    """Thresholds for the read-only preview of an export bundle."""

    error_rate_warn: float = 0.05
    error_rate_fail: float = 0.10
    sample_size: int = 5


@dataclass(frozen=True)
class MigrationConfig:
    """Parsed, validated migration configuration."""

    source: str
    target: str
    version: str
    config_hash: str
    entities: Mapping[str, EntityConfig]
    lookups: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    feature_flags: Mapping[str, bool] = field(default_factory=dict)
    policies: Mapping[str, Any] = field(default_factory=dict)
    org_policies: Mapping[str, Mapping[str, Any]] = field(default_factory=dict)
    preview: PreviewConfig = field(default_factory=PreviewConfig)
    raw_yaml: str = field(repr=False, default="")

    def on_conflict(self, entity: str) -> str:
        entity_config = self.entities.get(entity)
        return entity_config.on_conflict if entity_config else "skip"

    def to_dict(self) -> dict[str, Any]:
        return {
            "source": self.source,
            "target": self.target,
            "version": self.version,
            "config_hash": self.config_hash,
        }


# ---------------------------------------------------------------------------
# Loader + validator
# ---------------------------------------------------------------------------

def load_config(yaml_path: Path) -> MigrationConfig:
    """Load, validate, and return a MigrationConfig from a YAML file.

    Raises:
        ConfigValidationError: If any required field is missing or invalid.
        FileNotFoundError: If the YAML file does not exist.
    """
    raw = Path(yaml_path).read_text(encoding="utf-8")
    return parse_config(raw)


def parse_config(raw: str) -> MigrationConfig:
    """Validate and build a MigrationConfig from raw YAML text."""
    try:
        data = yaml.safe_load(raw)
    except yaml.YAMLError as exc:
        raise ConfigValidationError(f"Config is not valid YAML: {exc}") from exc
    validate_config(data)
    config_hash = hashlib.sha256(raw.encode("utf-8")).hexdigest()

    lookups = {
        str(table): {str(k): v for k, v in (values or {}).items()}
        for table, values in (data.get("lookups") or {}).items()
    }
    entities = {
        kind: EntityConfig(
            mapping=EntityMapping(
                external_id_column=str(doc["external_id_column"]),
                fields={
                    str(name): build_field_spec(spec)
                    for name, spec in (doc.get("fields") or {}).items()
                },
            ),
            on_conflict=str(doc.get("on_conflict") or "skip"),
        )
        for kind, doc in data["entities"].items()
    }
    return MigrationConfig(
        source=str(data["source"]),
        target=str(data["target"]),
        version=str(data["version"]),
        config_hash=config_hash,
        entities=entities,
        lookups=lookups,
        feature_flags={
            str(k): bool(v) for k, v in (data.get("feature_flags") or {}).items()
        },
        policies=dict(data.get("policies") or {}),
        org_policies={
            str(org): dict(values or {})
            for org, values in (data.get("org_policies") or {}).items()
        },
        preview=PreviewConfig(**(data.get("preview") or {})),
        raw_yaml=raw,
    )


def build_field_spec(doc: Mapping[str, Any]) -> FieldSpec:
    """Turn one validated field document into its FieldSpec variant."""
    kind = str(doc.get("kind") or "text")
    if "literal" in doc:
        return LiteralField(value=doc["literal"], kind=kind)
    if "transform" in doc:
        return TransformField(
            column=str(doc["column"]), table=str(doc["transform"]), kind=kind
        )
    return ColumnField(column=str(doc["column"]), kind=kind)


def validate_config(data: Any) -> None:
    """Raise ConfigValidationError if data does not match the required schema.

    Checks:
      - Root is a mapping with source, target, version, entities
      - Entity kinds are members / events / registrations
      - Each entity has an external_id_column and a fields mapping
      - Each field targets a known attribute and is exactly one of
        literal / column / column+transform, with a known kind
      - Transform tables exist under lookups
      - on_conflict is skip|update, and only where updates exist
      - preview thresholds are rates in [0, 1] with warn <= fail
    """
    if not isinstance(data, dict):
        raise ConfigValidationError("YAML root must be a mapping.")

    missing_keys = REQUIRED_YAML_KEYS - data.keys()
    if missing_keys:
        raise ConfigValidationError(f"Missing required YAML keys: {sorted(missing_keys)}")

    lookups = data.get("lookups") or {}
    if not isinstance(lookups, dict):
        raise ConfigValidationError("'lookups' must be a mapping of table name to values.")
    for table, values in lookups.items():
        if values is not None and not isinstance(values, dict):
            raise ConfigValidationError(f"Lookup table '{table}' must be a mapping.")

    entities = data["entities"]
    if not isinstance(entities, dict) or not entities:
        raise ConfigValidationError("'entities' must be a non-empty mapping.")
    unknown = set(entities) - set(ENTITY_KINDS)
    if unknown:
        raise ConfigValidationError(
            f"Unknown entity kinds: {sorted(unknown)}. Valid: {list(ENTITY_KINDS)}"
        )

    for kind, doc in entities.items():
        _validate_entity(kind, doc, lookups)

    for section in ("feature_flags", "policies", "org_policies"):
        value = data.get(section)
        if value is not None and not isinstance(value, dict):
            raise ConfigValidationError(f"'{section}' must be a mapping.")

    _validate_preview(data.get("preview"))


def _validate_entity(kind: str, doc: Any, lookups: Mapping[str, Any]) -> None:
    if not isinstance(doc, dict):
        raise ConfigValidationError(f"Entity '{kind}' must be a mapping.")
    if not doc.get("external_id_column"):
        raise ConfigValidationError(f"Entity '{kind}' is missing 'external_id_column'.")

    fields_doc = doc.get("fields")
    if not isinstance(fields_doc, dict) or not fields_doc:
        raise ConfigValidationError(f"Entity '{kind}' must define a non-empty 'fields' mapping.")

    allowed = MAPPABLE_FIELDS[kind]
    for name, spec in fields_doc.items():
        where = f"{kind}.fields.{name}"
        if name not in allowed:
            raise ConfigValidationError(
                f"{where}: unknown target field. Valid: {sorted(allowed)}"
            )
        _validate_field(where, spec, lookups)

    on_conflict = doc.get("on_conflict")
    if on_conflict is not None:
        if on_conflict not in VALID_CONFLICT_POLICIES:
            raise ConfigValidationError(
                f"{kind}.on_conflict '{on_conflict}' is invalid. "
                f"Valid: {list(VALID_CONFLICT_POLICIES)}"
            )
        if on_conflict == "update" and kind not in UPDATABLE_ENTITIES:
            raise ConfigValidationError(f"{kind}.on_conflict 'update' is not supported.")


def _validate_field(where: str, spec: Any, lookups: Mapping[str, Any]) -> None:
    if not isinstance(spec, dict):
        raise ConfigValidationError(f"{where}: field spec must be a mapping.")

    kind = spec.get("kind", "text")
    if kind not in VALID_KINDS:
        raise ConfigValidationError(
            f"{where}: unknown kind '{kind}'. Valid: {sorted(VALID_KINDS)}"
        )

    has_literal = "literal" in spec
    has_column = "column" in spec
    if has_literal == has_column:
        raise ConfigValidationError(f"{where}: specify exactly one of 'literal' or 'column'.")
    if has_literal and "transform" in spec:
        raise ConfigValidationError(f"{where}: 'transform' requires 'column', not 'literal'.")
    if has_column and not spec["column"]:
        raise ConfigValidationError(f"{where}: 'column' must be a non-empty header name.")

    table = spec.get("transform")
    if table is not None and table not in lookups:
        raise ConfigValidationError(f"{where}: transform table '{table}' is not defined under lookups.")


def _validate_preview(doc: Any) -> None:
    if doc is None:
        return
    if not isinstance(doc, dict):
        raise ConfigValidationError("'preview' must be a mapping.")
    unknown = set(doc) - PREVIEW_KEYS
    if unknown:
        raise ConfigValidationError(
            f"Unknown preview keys: {sorted(unknown)}. Valid: {sorted(PREVIEW_KEYS)}"
        )
    defaults = PreviewConfig()
    rates = {}
    for key in ("error_rate_warn", "error_rate_fail"):
        value = doc.get(key, getattr(defaults, key))
        if isinstance(value, bool) or not isinstance(value, (int, float)) or not 0 <= value <= 1:
            raise ConfigValidationError(f"preview.{key} must be a number between 0 and 1.")
        rates[key] = value
    if rates["error_rate_warn"] > rates["error_rate_fail"]:
        raise ConfigValidationError("preview.error_rate_warn must not exceed preview.error_rate_fail.")
    sample_size = doc.get("sample_size", defaults.sample_size)
    if isinstance(sample_size, bool) or not isinstance(sample_size, int) or sample_size < 0:
        raise ConfigValidationError("preview.sample_size must be a non-negative integer.")
