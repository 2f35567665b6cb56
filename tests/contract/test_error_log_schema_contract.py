from __future__ import annotations

import json
from pathlib import Path

import jsonschema
import pytest

from sheet_migrate.logging.error_log import ErrorLogBuffer

"""Error log JSON Lines contract: fixed keys, UPPER_SNAKE error types, -1 for unknown rows."""

ERROR_LOG_SCHEMA = {
    "$schema": "https://json-schema.org/draft/2020-12/schema",
    "type": "object",
    "required": ["timestamp", "job_id", "file", "sheet", "row", "error_type", "message"],
    "additionalProperties": False,
    "properties": {
        "timestamp": {"type": "string", "pattern": r"^\d{4}-\d{2}-\d{2}T\d{2}:\d{2}:\d{2}(\.\d+)?Z$"},
        "job_id": {"type": "string", "minLength": 1},
        "file": {"type": "string"},
        "sheet": {"type": "string"},
        "row": {"type": "integer", "minimum": -1},
        "error_type": {"type": "string", "pattern": "^[A-Z][A-Z0-9_]*$"},
        "message": {"type": "string"},
    },
}


def test_flushed_records_match_schema(tmp_path: Path):
    buf = ErrorLogBuffer(tmp_path)
    buf.record("job1", "book.xlsx", "WORKBOOK_TOO_LARGE", "too many rows")
    buf.record("job1", "book.xlsx", "STRUCTURAL_ERROR", "missing header", sheet="Orders", row=1)
    path = buf.flush()
    for line in path.read_text(encoding="utf-8").splitlines():
        jsonschema.validate(json.loads(line), ERROR_LOG_SCHEMA)


def test_schema_rejects_extra_key():
    record = {
        "timestamp": "2025-09-26T10:12:33Z",
        "job_id": "job1",
        "file": "book.xlsx",
        "sheet": "Orders",
        "row": 2,
        "error_type": "STEP_TIMEOUT",
        "message": "slow",
        "extra": "not allowed",
    }
    with pytest.raises(jsonschema.exceptions.ValidationError):
        jsonschema.validate(record, ERROR_LOG_SCHEMA)


def test_failed_job_writes_schema_valid_record(controller, make_workbook, temp_workdir: Path):
    path = make_workbook("broken.xlsx", {"Customers": [["Name", "Email"], ["A", "a@example.com"]]})
    job_id = controller.submit(path)
    logs = list((temp_workdir / "logs").glob("errors-*.log"))
    assert len(logs) == 1
    records = [json.loads(line) for line in logs[0].read_text(encoding="utf-8").splitlines()]
    assert records[-1]["job_id"] == job_id
    assert records[-1]["error_type"] == "STRUCTURAL_ERROR"
    assert records[-1]["file"] == "broken.xlsx"
    for rec in records:
        jsonschema.validate(rec, ERROR_LOG_SCHEMA)
