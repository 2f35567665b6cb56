from __future__ import annotations

import json
import re
import threading
from pathlib import Path

from sheet_migrate.logging.error_log import ErrorLogBuffer
from sheet_migrate.models.error_record import ErrorRecord


def test_flush_without_records_creates_nothing(tmp_path: Path):
    buf = ErrorLogBuffer(tmp_path / "logs")
    assert buf.flush() is None
    assert not (tmp_path / "logs").exists()


def test_file_name_pattern(tmp_path: Path):
    buf = ErrorLogBuffer(tmp_path)
    assert re.fullmatch(r"errors-\d{8}-\d{6}\.log", buf.file_path.name)
    # 一度決まったファイル名は変わらない
    assert buf.file_path == buf.file_path


def test_record_and_flush_appends_json_lines(tmp_path: Path):
    buf = ErrorLogBuffer(tmp_path)
    buf.record("job1", "book.xlsx", "STRUCTURAL_ERROR", "missing header", sheet="Orders", row=1)
    buf.record("job1", "book.xlsx", "STEP_TIMEOUT", "slow")
    assert len(buf) == 2
    path = buf.flush()
    assert path is not None
    assert len(buf) == 0
    buf.record("job2", "other.xlsx", "FATAL", "x")
    assert buf.flush() == path

    lines = [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]
    assert [r["error_type"] for r in lines] == ["STRUCTURAL_ERROR", "STEP_TIMEOUT", "FATAL"]
    assert lines[0]["sheet"] == "Orders"
    assert lines[0]["row"] == 1
    assert lines[1]["row"] == -1
    assert lines[1]["sheet"] == ""


def test_concurrent_appends(tmp_path: Path):
    buf = ErrorLogBuffer(tmp_path)

    def worker(n: int) -> None:
        for i in range(50):
            buf.record(f"job{n}", "f.xlsx", "FATAL", str(i))

    threads = [threading.Thread(target=worker, args=(n,)) for n in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    assert len(buf) == 200
    path = buf.flush()
    assert len(path.read_text(encoding="utf-8").splitlines()) == 200


def test_error_record_timestamp_is_utc_z():
    rec = ErrorRecord.create("job1", "f.xlsx", "", -1, "FATAL", "boom")
    assert rec.timestamp.endswith("Z")
    data = json.loads(rec.to_json_line())
    assert set(data) == {"timestamp", "job_id", "file", "sheet", "row", "error_type", "message"}
