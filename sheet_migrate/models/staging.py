from __future__ import annotations

import json
from dataclasses import dataclass
from enum import Enum
from typing import Any

"""Staged row models.

Rows move through three job-scoped tables: ``staging_raw`` (written once by
ingest), ``staging_error`` (appended by validation) and ``staging_valid``
(written once by promote). All are keyed by (job_id, sheet_name, row_num).
"""

__all__ = [
    "ErrorType",
    "StagedRawRow",
    "StagedError",
    "encode_fields",
    "decode_fields",
]


class ErrorType(str, Enum):
    PARSE_ERROR = "PARSE_ERROR"
    REQUIRED_MISSING = "REQUIRED_MISSING"
    INVALID_FORMAT = "INVALID_FORMAT"
    INVALID_ENUM = "INVALID_ENUM"
    DUP_IN_FILE = "DUP_IN_FILE"
    DUP_IN_DB = "DUP_IN_DB"
    REF_NOT_FOUND = "REF_NOT_FOUND"


def encode_fields(fields: dict[str, str | None]) -> str:
    return json.dumps(fields, ensure_ascii=False, sort_keys=True)


def decode_fields(value: Any) -> dict[str, Any]:
    """Decode a stored field map (jsonb arrives as dict, sqlite TEXT as str)."""
    if value is None:
        return {}
    if isinstance(value, dict):
        return value
    return json.loads(value)


@dataclass(frozen=True)
class StagedRawRow:
    job_id: str
    sheet_name: str
    row_num: int  # physical sheet row (1-based)
    fields: dict[str, str | None]
    business_key: str | None = None
    parse_error: bool = False

    def as_params(self) -> tuple[Any, ...]:
        return (
            self.job_id,
            self.sheet_name,
            self.row_num,
            encode_fields(self.fields),
            self.business_key,
            self.parse_error,
        )


@dataclass(frozen=True)
class StagedError:
    job_id: str
    sheet_name: str
    row_num: int
    error_type: ErrorType
    error_field: str | None
    error_value: str | None
    message: str
    original_data: dict[str, Any]  # 修正・再投入用の行スナップショット

    def as_params(self) -> tuple[Any, ...]:
        return (
            self.job_id,
            self.sheet_name,
            self.row_num,
            self.error_type.value,
            self.error_field,
            self.error_value,
            self.message,
            encode_fields(self.original_data),
        )
