from __future__ import annotations

import time

import pytest

from scripts.gen_perf_dataset import create_workbook
from sheet_migrate.models.job import JobStatus, SubmissionMetadata
from sheet_migrate.models.processing_result import PhaseOutcome

"""Throughput smoke runs on generated Customers/Orders workbooks (sqlite store).

The budget is deliberately loose so CI machines pass; the logged numbers are
what matter when tuning batch_size / partition settings.
"""

pytestmark = pytest.mark.perf

ORDERS = 5_000
CUSTOMERS = 500


def test_generated_workbook_end_to_end(make_controller, temp_workdir, capsys):
    path = temp_workdir / "data" / "perf.xlsx"
    create_workbook(path, orders=ORDERS, customers=CUSTOMERS, error_rate=0.0, seed=7)
    capsys.readouterr()
    controller = make_controller(ingest={"batch_size": 1000, "progress_interval": 1000})

    start = time.perf_counter()
    job_id = controller.create_job(path, SubmissionMetadata(submitted_by="perf"))
    result = controller.run(job_id)
    elapsed = time.perf_counter() - start

    assert result.outcome is PhaseOutcome.SUCCESS
    assert controller.get_status(job_id).status is JobStatus.COMPLETED
    report = result.report
    assert report.staged_rows == ORDERS + CUSTOMERS
    assert report.is_balanced
    assert report.valid_rows == ORDERS + CUSTOMERS

    throughput = report.staged_rows / elapsed
    print(f"perf: {report.staged_rows} rows in {elapsed:.2f}s ({throughput:.0f} rows/s) {report.errors_by_type}")
    assert throughput > 100, f"throughput too low: {throughput:.0f} rows/s"


def test_generated_workbook_with_errors_completes(make_controller, temp_workdir, capsys, query):
    path = temp_workdir / "data" / "perf_errors.xlsx"
    create_workbook(path, orders=2_000, customers=200, error_rate=0.05, seed=11)
    capsys.readouterr()
    controller = make_controller(ingest={"batch_size": 500, "progress_interval": 1000, "max_errors": 5_000})

    job_id = controller.create_job(path, SubmissionMetadata(submitted_by="perf"))
    result = controller.run(job_id)

    assert result.outcome is PhaseOutcome.VALIDATION_ERRORS
    snapshot = controller.get_status(job_id)
    assert snapshot.status is JobStatus.COMPLETED
    assert snapshot.error_message is None
    report = result.report
    assert report.staged_rows == 2_200
    assert report.is_complete
    assert report.is_balanced
    assert 0 < report.error_rows < report.staged_rows
    assert report.errors_by_type.get("REF_NOT_FOUND", 0) > 0
    [(orders_applied,)] = query("SELECT COUNT(*) FROM orders")
    assert orders_applied == next(t.expected_keys for t in report.targets if t.table == "orders")
