from __future__ import annotations

import logging

import pytest

from sheet_migrate.models.checkpoint import CheckpointStatus
from sheet_migrate.models.job import JobStatus, SubmissionMetadata
from sheet_migrate.models.processing_result import PhaseOutcome
from sheet_migrate.services.checkpoint import CheckpointStateError

"""End-to-end runs through the phase controller (sqlite store)."""

CUSTOMERS_HEADER = ["Customer Code", "Name", "Email", "Tier"]


class SimulatedCrash(BaseException):
    """Stands in for a process kill; not caught by the pipeline."""


def test_required_field_missing(controller, make_workbook, customers):
    rows = customers(10)
    rows[4][1] = None  # row 6
    path = make_workbook("scenario_a.xlsx", {"Customers": [CUSTOMERS_HEADER, *rows]})
    job_id = controller.create_job(path, SubmissionMetadata())
    result = controller.run(job_id)

    assert result.outcome is PhaseOutcome.VALIDATION_ERRORS
    assert result.report.valid_rows == 9
    assert result.report.error_rows == 1
    assert result.report.errors_by_type == {"REQUIRED_MISSING": 1}
    assert result.report.is_balanced
    [err] = controller.list_errors(job_id)
    assert (err["row_num"], err["error_type"], err["error_field"]) == (6, "REQUIRED_MISSING", "name")

    snapshot = controller.get_status(job_id)
    assert snapshot.status is JobStatus.COMPLETED
    assert snapshot.current_phase == "DONE"
    assert (snapshot.valid_rows, snapshot.error_rows, snapshot.inserted_rows) == (9, 1, 9)
    assert snapshot.progress_percent == 100.0


def test_duplicate_keys_in_file(controller, make_workbook, query):
    rows = [["C0001", f"Alice {i}", None, None] for i in range(3)]
    path = make_workbook("scenario_b.xlsx", {"Customers": [CUSTOMERS_HEADER, *rows]})
    job_id = controller.submit(path)

    errors = controller.list_errors(job_id)
    assert [e["error_type"] for e in errors] == ["DUP_IN_FILE", "DUP_IN_FILE"]
    snapshot = controller.get_status(job_id)
    assert (snapshot.valid_rows, snapshot.error_rows) == (1, 2)
    assert query("SELECT code, name FROM customers") == [("C0001", "Alice 0")]


def test_crash_and_resume(make_controller, make_workbook, customers, query):
    controller = make_controller(ingest={"batch_size": 1000, "progress_interval": 1000})
    path = make_workbook("scenario_c.xlsx", {"Customers": [CUSTOMERS_HEADER, *customers(10_000, start=0)]})
    job_id = controller.create_job(path, SubmissionMetadata(job_id="crash-job"))
    seen = []

    def crash_at_4000(event):
        seen.append(event.processed_rows)
        if event.processed_rows >= 4000:
            raise SimulatedCrash()

    with pytest.raises(SimulatedCrash):
        controller.run(job_id, progress_callback=crash_at_4000)

    assert seen == [1000, 2000, 3000, 4000]
    assert controller.get_status(job_id).status is JobStatus.INGESTING
    cp = controller.checkpoints.load(job_id)
    assert cp.status is CheckpointStatus.ACTIVE
    assert cp.processed_rows == 4000

    result = controller.resume(job_id)

    assert result.outcome is PhaseOutcome.SUCCESS
    assert result.ingest.resumed_from == 4000
    assert result.ingest.processed_rows == 10_000
    assert result.report.valid_rows == 10_000
    assert result.report.staged_rows == 10_000
    assert controller.get_status(job_id).status is JobStatus.COMPLETED
    assert query("SELECT COUNT(*) FROM customers") == [(10_000,)]


def test_cancel_then_resume(controller, make_workbook, customers):
    path = make_workbook("cancel.xlsx", {"Customers": [CUSTOMERS_HEADER, *customers(300)]})
    job_id = controller.create_job(path, SubmissionMetadata(job_id="cancel-me"))
    requested = []

    def cancel_first(event):
        requested.append(controller.cancel(job_id))

    result = controller.run(job_id, progress_callback=cancel_first)

    assert requested == [True]
    assert result.outcome is PhaseOutcome.CANCELLED
    snapshot = controller.get_status(job_id)
    assert snapshot.current_phase == "CANCELLED"
    assert snapshot.status is JobStatus.INGESTING
    assert snapshot.processed_rows == 100
    assert controller.cancel(job_id) is False

    resumed = controller.resume(job_id)
    assert resumed.outcome is PhaseOutcome.SUCCESS
    assert resumed.ingest.resumed_from == 100
    final = controller.get_status(job_id)
    assert final.status is JobStatus.COMPLETED
    assert final.processed_rows == 300
    assert final.inserted_rows == 300


def test_resume_without_checkpoint(controller, make_workbook, customers):
    path = make_workbook("fresh.xlsx", {"Customers": [CUSTOMERS_HEADER, *customers(2)]})
    job_id = controller.create_job(path, SubmissionMetadata())
    with pytest.raises(CheckpointStateError, match="no checkpoint"):
        controller.resume(job_id)


def test_resume_completed_job_rejected(controller, make_workbook, customers):
    path = make_workbook("done.xlsx", {"Customers": [CUSTOMERS_HEADER, *customers(2)]})
    job_id = controller.submit(path)
    with pytest.raises(CheckpointStateError, match="COMPLETED"):
        controller.resume(job_id)


def test_missing_configured_sheet_only_warns(controller, make_workbook, customers, caplog):
    path = make_workbook("only_customers.xlsx", {"Customers": [CUSTOMERS_HEADER, *customers(3)]})
    with caplog.at_level(logging.WARNING, logger="sheet_migrate"):
        job_id = controller.submit(path)

    assert controller.get_status(job_id).status is JobStatus.COMPLETED
    assert "configured sheets not in workbook: ['Orders']" in caplog.text
