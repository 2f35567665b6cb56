from __future__ import annotations

import pytest
from openpyxl import load_workbook

from sheet_migrate.errors import JobNotFoundError, PipelineError
from sheet_migrate.models.job import JobStatus, SubmissionMetadata
from sheet_migrate.output.selector import WriteStrategy
from sheet_migrate.staging.store import EXPORT_COLUMNS

CUSTOMERS_HEADER = ["Customer Code", "Name", "Email", "Tier"]


@pytest.fixture()
def finished_job(controller, make_workbook):
    path = make_workbook(
        "maint.xlsx",
        {
            "Customers": [
                CUSTOMERS_HEADER,
                ["C0001", "Alice", None, "GOLD"],
                ["C0002", None, None, "GOLD"],
                ["C0003", "Carol", None, "PLATINUM"],
            ]
        },
    )
    return controller.submit(path, SubmissionMetadata(submitted_by="ops", job_id="maint-job"))


def test_get_status(controller, finished_job):
    snapshot = controller.get_status(finished_job)
    assert snapshot.job_id == "maint-job"
    assert snapshot.file_name == "maint.xlsx"
    assert snapshot.created_by == "ops"
    assert snapshot.status is JobStatus.COMPLETED
    assert snapshot.total_rows == 3
    assert snapshot.started_at is not None
    assert snapshot.completed_at is not None
    assert snapshot.is_terminal


def test_async_submit_from_bytes(controller, make_workbook):
    path = make_workbook("bytes.xlsx", {"Customers": [CUSTOMERS_HEADER, ["C0009", "Ivy", None, "GOLD"]]})
    job_id = controller.submit(
        path.read_bytes(),
        SubmissionMetadata(synchronous=False, job_id="async-job", file_name="upload.xlsx"),
    )

    snapshot = controller.wait(job_id, timeout=60)
    assert snapshot.status is JobStatus.COMPLETED
    assert snapshot.file_name == "upload.xlsx"
    assert snapshot.inserted_rows == 1
    assert controller.spool_path(job_id).exists()


def test_unknown_job(controller):
    with pytest.raises(JobNotFoundError):
        controller.get_status("nope")


def test_duplicate_job_id(controller, finished_job, make_workbook):
    path = make_workbook("other.xlsx", {"Customers": [CUSTOMERS_HEADER]})
    with pytest.raises(PipelineError, match="job already exists"):
        controller.create_job(path, SubmissionMetadata(job_id=finished_job))


def test_list_errors(controller, finished_job):
    errors = controller.list_errors(finished_job)
    assert len(errors) == 2
    assert all(tuple(e) == EXPORT_COLUMNS for e in errors)
    assert [e["error_type"] for e in errors] == ["REQUIRED_MISSING", "INVALID_ENUM"]
    assert len(controller.list_errors(finished_job, limit=1)) == 1


def test_export_errors(controller, finished_job, temp_workdir):
    result = controller.export_errors(finished_job)
    assert result.strategy is WriteStrategy.IN_MEMORY
    assert result.rows_written == 2
    assert result.path == temp_workdir / "exports" / "maint-job-errors.xlsx"

    wb = load_workbook(result.path, read_only=True)
    try:
        rows = list(wb["errors"].iter_rows(values_only=True))
    finally:
        wb.close()
    assert rows[0] == EXPORT_COLUMNS
    assert [r[2] for r in rows[1:]] == ["REQUIRED_MISSING", "INVALID_ENUM"]


def test_export_errors_flat_text(controller, finished_job, temp_workdir):
    result = controller.export_errors(
        finished_job, temp_workdir / "out" / "errs.xlsx", force_streaming=True, prefer_flat_text=True
    )
    assert result.strategy is WriteStrategy.FLAT_TEXT
    assert result.path.name == "errs.csv"
    lines = result.path.read_text(encoding="utf-8").splitlines()
    assert lines[0] == ",".join(EXPORT_COLUMNS)
    assert len(lines) == 3


def test_cleanup(controller, finished_job, query):
    assert controller.checkpoints.load(finished_job) is not None
    assert controller.spool_path(finished_job).exists()

    counts = controller.cleanup(finished_job)

    assert counts == {"staging_valid": 1, "staging_error": 2, "staging_raw": 3}
    assert controller.checkpoints.load(finished_job) is None
    assert not controller.spool_path(finished_job).exists()
    assert controller.list_errors(finished_job) == []
    # 本番テーブルと job レコードは残る
    assert query("SELECT code FROM customers") == [("C0001",)]
    assert controller.get_status(finished_job).status is JobStatus.COMPLETED


def test_cleanup_checkpoints_keeps_recent(controller, finished_job):
    assert controller.cleanup_checkpoints() == 0
    assert controller.checkpoints.load(finished_job) is not None
