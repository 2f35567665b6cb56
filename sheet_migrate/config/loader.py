from __future__ import annotations

import json
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from ..errors import ConfigError
from ..models.config_models import (
    ApplyColumn,
    ApplyConfig,
    ApplyTarget,
    CheckpointConfig,
    DatabaseConfig,
    ExistingDuplicateCheck,
    FieldDescriptor,
    IngestConfig,
    LookupColumn,
    OutputConfig,
    OutputThresholds,
    PipelineConfig,
    ReferenceCheck,
    SheetTemplate,
    ValidationConfig,
)

"""Pipeline config loader.

Responsibilities:
- Load YAML (default ``config/pipeline.yml``)
- Validate against the bundled JSON schema (``pipeline_schema.json``)
- Apply defaults and build the immutable ``PipelineConfig``

Database credentials from the environment are resolved later, at connect time
(see ``sheet_migrate.db.connection``).
"""

__all__ = [
    "ConfigError",
    "DEFAULT_CONFIG_PATH",
    "SCHEMA_PATH",
    "load_config",
    "build_config",
]

DEFAULT_CONFIG_PATH = Path("config/pipeline.yml")
SCHEMA_PATH = Path(__file__).with_name("pipeline_schema.json")


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against the JSON schema.

    Raises:
        ConfigError: schema file missing / not JSON, or data fails validation
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")
    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        where = "/".join(str(p) for p in e.absolute_path)
        suffix = f" (at {where})" if where else ""
        raise ConfigError(f"config validation failed: {e.message}{suffix}") from e


def _as_str_tuple(values: Any) -> tuple[str, ...]:
    return tuple(str(v) for v in (values or ()))


def _build_template(raw: dict[str, Any]) -> SheetTemplate:
    fields = tuple(
        FieldDescriptor(
            column=str(f["column"]).strip(),
            field=f["field"],
            required=bool(f.get("required", False)),
            format=f.get("format"),
            target_type=f.get("type", "text"),
            position=f.get("position"),
            allowed_values=_as_str_tuple(f["allowed_values"]) if f.get("allowed_values") else None,
        )
        for f in raw["fields"]
    )
    references = tuple(
        ReferenceCheck(
            fields=_as_str_tuple(r["fields"]),
            table=r["table"],
            columns=_as_str_tuple(r["columns"]),
            staged_sheet=r.get("staged_sheet"),
            staged_fields=_as_str_tuple(r["staged_fields"]) if r.get("staged_fields") else None,
        )
        for r in raw.get("references", [])
    )
    dup_raw = raw.get("existing_duplicates")
    existing = None
    if dup_raw:
        existing = ExistingDuplicateCheck(
            fields=_as_str_tuple(dup_raw["fields"]),
            table=dup_raw["table"],
            columns=_as_str_tuple(dup_raw["columns"]),
        )
    return SheetTemplate(
        sheet=raw["sheet"],
        fields=fields,
        header_row=int(raw.get("header_row", 1)),
        business_key=_as_str_tuple(raw.get("business_key")),
        references=references,
        existing_duplicates=existing,
    )


def _build_target(raw: dict[str, Any]) -> ApplyTarget:
    columns = tuple(
        ApplyColumn(column=name, field=spec["field"], target_type=spec.get("type", "text"))
        for name, spec in raw["columns"].items()
    )
    lookups = tuple(
        LookupColumn(
            column=name,
            field=spec["field"],
            table=spec["table"],
            match_column=spec["match_column"],
            value_column=spec["value_column"],
            match_type=spec.get("match_type", "text"),
        )
        for name, spec in (raw.get("lookups") or {}).items()
    )
    return ApplyTarget(
        table=raw["table"],
        sheet=raw["sheet"],
        key=_as_str_tuple(raw["key"]),
        columns=columns,
        lookups=lookups,
        depends_on=_as_str_tuple(raw.get("depends_on")),
    )


def build_config(data: dict[str, Any]) -> PipelineConfig:
    """Build ``PipelineConfig`` from an already-parsed mapping (schema checked)."""
    _validate_config_schema(data)

    db_raw = data.get("database") or {}
    database = DatabaseConfig(
        backend=db_raw.get("backend", "postgresql"),
        path=db_raw.get("path"),
        host=db_raw.get("host"),
        port=db_raw.get("port"),
        user=db_raw.get("user"),
        password=db_raw.get("password"),
        database=db_raw.get("database"),
        dsn=db_raw.get("dsn"),
    )
    if database.backend == "sqlite" and not database.path:
        raise ConfigError("database.path is required for the sqlite backend")

    apply_raw = dict(data.get("apply") or {})
    targets = tuple(_build_target(t) for t in apply_raw.pop("targets", []))
    out_raw = dict(data.get("output") or {})
    thresholds = OutputThresholds(
        **{k: out_raw.pop(k) for k in list(out_raw) if k.startswith(("in_memory_", "flat_text_"))}
    )

    return PipelineConfig(
        database=database,
        templates=tuple(_build_template(t) for t in data["templates"]),
        ingest=IngestConfig(**(data.get("ingest") or {})),
        validation=ValidationConfig(**(data.get("validation") or {})),
        apply=ApplyConfig(targets=targets, **apply_raw),
        output=OutputConfig(thresholds=thresholds, **out_raw),
        checkpoint=CheckpointConfig(**(data.get("checkpoint") or {})),
        null_sentinels=frozenset(s.strip().upper() for s in data.get("null_sentinels", [])),
    )


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> PipelineConfig:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError("config root must be a mapping")
    return build_config(data)
