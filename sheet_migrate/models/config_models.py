from __future__ import annotations

import os
import re
from dataclasses import dataclass, field

from ..errors import ConfigError

"""Immutable configuration values for the import pipeline.

Everything a job needs is captured once in ``PipelineConfig``; the loader in
``sheet_migrate.config.loader`` builds it from YAML and nothing mutates it
afterwards. Field bindings are explicit ``FieldDescriptor`` lists per sheet
template (no runtime introspection of record classes).
"""

__all__ = [
    "IDENTIFIER_RE",
    "TARGET_TYPES",
    "DatabaseConfig",
    "FieldDescriptor",
    "ReferenceCheck",
    "ExistingDuplicateCheck",
    "SheetTemplate",
    "ApplyColumn",
    "LookupColumn",
    "ApplyTarget",
    "IngestConfig",
    "ValidationConfig",
    "ApplyConfig",
    "OutputThresholds",
    "OutputConfig",
    "CheckpointConfig",
    "PipelineConfig",
]

# Names embedded into generated SQL must be plain identifiers.
IDENTIFIER_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")

TARGET_TYPES = ("text", "integer", "decimal", "date", "datetime", "boolean")

# Named value formats (POSIX-style patterns usable by both PostgreSQL `~` and Python `re`).
FORMAT_PATTERNS = {
    "integer": r"^[-+]?[0-9]+$",
    "decimal": r"^[-+]?([0-9]+([.][0-9]*)?|[.][0-9]+)([eE][-+]?[0-9]+)?$",
    "date": r"^[0-9]{4}-[0-9]{2}-[0-9]{2}$",
    "datetime": r"^[0-9]{4}-[0-9]{2}-[0-9]{2}([ T][0-9]{2}:[0-9]{2}(:[0-9]{2})?)?$",
    "boolean": r"^(TRUE|FALSE|True|False|true|false|YES|NO|Yes|No|yes|no|Y|N|y|n|T|F|1|0)$",
    "email": r"^[^@ ]+@[^@ ]+[.][^@ ]+$",
}
REGEX_PREFIX = "regex:"


def _check_identifier(kind: str, name: str) -> None:
    if not IDENTIFIER_RE.match(name or ""):
        raise ConfigError(f"invalid {kind} name: {name!r}")


@dataclass(frozen=True)
class DatabaseConfig:
    """Database connection settings.

    Environment variables (DATABASE_URL / PGDSN / PG*) take precedence over
    these values for the postgresql backend.
    """
    backend: str = "postgresql"  # postgresql | sqlite
    path: str | None = None  # sqlite file
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None


@dataclass(frozen=True)
class FieldDescriptor:
    """Binding of one external column to one internal field."""
    column: str  # header text in the sheet
    field: str  # internal field name (key in staged field map)
    required: bool = False
    format: str | None = None  # named format or "regex:<pattern>"
    target_type: str = "text"
    position: int | None = None  # fixed 1-based column, overrides header lookup
    allowed_values: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        _check_identifier("field", self.field)
        if self.target_type not in TARGET_TYPES:
            raise ConfigError(f"field '{self.field}': unknown target_type {self.target_type!r}")
        if self.position is not None and self.position < 1:
            raise ConfigError(f"field '{self.field}': position must be >= 1")
        if self.format is not None:
            if self.format.startswith(REGEX_PREFIX):
                try:
                    re.compile(self.format[len(REGEX_PREFIX):])
                except re.error as e:
                    raise ConfigError(f"field '{self.field}': invalid regex: {e}") from e
            elif self.format not in FORMAT_PATTERNS:
                raise ConfigError(f"field '{self.field}': unknown format {self.format!r}")

    @property
    def pattern(self) -> str | None:
        """Regex the non-empty value must match (explicit format, else implied by target_type)."""
        if self.format is not None:
            if self.format.startswith(REGEX_PREFIX):
                return self.format[len(REGEX_PREFIX):]
            return FORMAT_PATTERNS[self.format]
        return FORMAT_PATTERNS.get(self.target_type)

    @property
    def calendar_kind(self) -> str | None:
        """``date`` / ``datetime`` when the value must also be a real calendar day."""
        kind = self.format if self.format is not None else self.target_type
        return kind if kind in ("date", "datetime") else None


@dataclass(frozen=True)
class ReferenceCheck:
    """Staged values of ``fields`` must exist in ``table.columns``.

    When ``staged_sheet`` is set, keys staged in that sheet of the same job
    (``staged_fields``) also satisfy the reference.
    """
    fields: tuple[str, ...]
    table: str
    columns: tuple[str, ...]
    staged_sheet: str | None = None
    staged_fields: tuple[str, ...] | None = None

    def __post_init__(self) -> None:
        if not self.fields or len(self.fields) != len(self.columns):
            raise ConfigError(f"reference to '{self.table}': fields/columns length mismatch")
        if self.staged_fields is not None and len(self.staged_fields) != len(self.fields):
            raise ConfigError(f"reference to '{self.table}': staged_fields length mismatch")
        _check_identifier("table", self.table)
        for name in (*self.fields, *self.columns, *(self.staged_fields or ())):
            _check_identifier("column", name)


@dataclass(frozen=True)
class ExistingDuplicateCheck:
    """Staged keys that already exist in ``table`` are flagged DUP_IN_DB."""
    fields: tuple[str, ...]
    table: str
    columns: tuple[str, ...]

    def __post_init__(self) -> None:
        if not self.fields or len(self.fields) != len(self.columns):
            raise ConfigError(f"existing duplicate check on '{self.table}': fields/columns length mismatch")
        _check_identifier("table", self.table)
        for name in (*self.fields, *self.columns):
            _check_identifier("column", name)


@dataclass(frozen=True)
class SheetTemplate:
    """Field bindings and validation rules for one sheet."""
    sheet: str
    fields: tuple[FieldDescriptor, ...]
    header_row: int = 1
    business_key: tuple[str, ...] = ()
    references: tuple[ReferenceCheck, ...] = ()
    existing_duplicates: ExistingDuplicateCheck | None = None

    def __post_init__(self) -> None:
        if not self.fields:
            raise ConfigError(f"sheet '{self.sheet}': no fields configured")
        if self.header_row < 1:
            raise ConfigError(f"sheet '{self.sheet}': header_row must be >= 1")
        names = [d.field for d in self.fields]
        if len(set(names)) != len(names):
            raise ConfigError(f"sheet '{self.sheet}': duplicate field names")
        known = set(names)
        checked = list(self.business_key)
        for ref in self.references:
            checked.extend(ref.fields)
        if self.existing_duplicates is not None:
            checked.extend(self.existing_duplicates.fields)
        unknown = sorted(set(checked) - known)
        if unknown:
            raise ConfigError(f"sheet '{self.sheet}': unknown fields referenced: {unknown}")
        # staged parents are validated first; a sheet cannot wait on itself
        if any(ref.staged_sheet == self.sheet for ref in self.references):
            raise ConfigError(f"sheet '{self.sheet}': staged_sheet cannot reference its own sheet")

    @property
    def field_names(self) -> tuple[str, ...]:
        return tuple(d.field for d in self.fields)

    def descriptor(self, name: str) -> FieldDescriptor:
        for d in self.fields:
            if d.field == name:
                return d
        raise KeyError(name)


@dataclass(frozen=True)
class ApplyColumn:
    column: str
    field: str
    target_type: str = "text"

    def __post_init__(self) -> None:
        _check_identifier("column", self.column)
        _check_identifier("field", self.field)
        if self.target_type not in TARGET_TYPES:
            raise ConfigError(f"column '{self.column}': unknown type {self.target_type!r}")


@dataclass(frozen=True)
class LookupColumn:
    """Target column filled from an already-applied table (FK resolution)."""
    column: str
    field: str
    table: str
    match_column: str
    value_column: str
    match_type: str = "text"

    def __post_init__(self) -> None:
        for name in (self.column, self.field, self.table, self.match_column, self.value_column):
            _check_identifier("lookup", name)
        if self.match_type not in TARGET_TYPES:
            raise ConfigError(f"lookup '{self.column}': unknown match_type {self.match_type!r}")


@dataclass(frozen=True)
class ApplyTarget:
    """Permanent table populated from the valid rows of one sheet."""
    table: str
    sheet: str
    key: tuple[str, ...]  # natural key columns (subset of columns)
    columns: tuple[ApplyColumn, ...]
    lookups: tuple[LookupColumn, ...] = ()
    depends_on: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        _check_identifier("table", self.table)
        names = {c.column for c in self.columns}
        if not self.key or not set(self.key) <= names:
            raise ConfigError(f"apply target '{self.table}': key must be a non-empty subset of columns")

    def column(self, name: str) -> ApplyColumn:
        for c in self.columns:
            if c.column == name:
                return c
        raise KeyError(name)


@dataclass(frozen=True)
class IngestConfig:
    batch_size: int = 1000
    progress_interval: int = 10_000
    max_errors: int = 1000
    max_rows: int = 1_000_000
    max_cells: int = 50_000_000
    sheet_workers: int = 1
    work_directory: str = "./work"


@dataclass(frozen=True)
class ValidationConfig:
    partition_threshold: int = 200_000
    partition_size: int = 100_000
    max_workers: int = field(default_factory=lambda: os.cpu_count() or 1)
    max_in_flight: int = 2
    step_timeout_seconds: float = 300.0
    promote_timeout_seconds: float = 900.0

    def __post_init__(self) -> None:
        if self.partition_size < 1 or self.max_workers < 1 or self.max_in_flight < 1:
            raise ConfigError("validation: partition_size, max_workers, max_in_flight must be >= 1")


@dataclass(frozen=True)
class ApplyConfig:
    targets: tuple[ApplyTarget, ...] = ()
    max_retries: int = 3
    backoff_seconds: float = 0.5
    level_timeout_seconds: float = 900.0


@dataclass(frozen=True)
class OutputThresholds:
    """Size limits for the export writer strategies.

    IN_MEMORY is used below both ``in_memory_*`` limits, FLAT_TEXT from either
    ``flat_text_min_*`` limit up, STREAMING in between.
    """
    in_memory_max_rows: int = 50_000
    in_memory_max_cells: int = 1_000_000
    flat_text_min_rows: int = 2_000_000
    flat_text_min_cells: int = 5_000_000

    def __post_init__(self) -> None:
        values = (
            self.in_memory_max_rows,
            self.in_memory_max_cells,
            self.flat_text_min_rows,
            self.flat_text_min_cells,
        )
        if any(v < 1 for v in values):
            raise ConfigError("output thresholds must be positive")
        if self.flat_text_min_rows < self.in_memory_max_rows:
            raise ConfigError("output thresholds not monotonic: flat_text_min_rows < in_memory_max_rows")
        if self.flat_text_min_cells < self.in_memory_max_cells:
            raise ConfigError("output thresholds not monotonic: flat_text_min_cells < in_memory_max_cells")


@dataclass(frozen=True)
class OutputConfig:
    thresholds: OutputThresholds = field(default_factory=OutputThresholds)
    window_size: int = 100
    delimiter: str = ","
    directory: str = "./exports"


@dataclass(frozen=True)
class CheckpointConfig:
    directory: str = "./checkpoints"
    max_age_hours: int = 168


@dataclass(frozen=True)
class PipelineConfig:
    """Root configuration object."""
    database: DatabaseConfig
    templates: tuple[SheetTemplate, ...]
    ingest: IngestConfig = field(default_factory=IngestConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    apply: ApplyConfig = field(default_factory=ApplyConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    checkpoint: CheckpointConfig = field(default_factory=CheckpointConfig)
    null_sentinels: frozenset[str] = frozenset()  # 大文字化済

    def __post_init__(self) -> None:
        sheets = [t.sheet for t in self.templates]
        if len(set(sheets)) != len(sheets):
            raise ConfigError("duplicate sheet templates")
        for target in self.apply.targets:
            if target.sheet not in sheets:
                raise ConfigError(f"apply target '{target.table}': unknown sheet '{target.sheet}'")
            template = self.template_for(target.sheet)
            for col in (*target.columns, *target.lookups):
                if col.field not in template.field_names:
                    raise ConfigError(
                        f"apply target '{target.table}': field '{col.field}' not in sheet '{target.sheet}'"
                    )

    def template_for(self, sheet: str) -> SheetTemplate:
        for t in self.templates:
            if t.sheet == sheet:
                return t
        raise KeyError(sheet)
