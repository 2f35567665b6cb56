from __future__ import annotations

from ..models.processing_result import PhaseResult

"""SUMMARY line rendering.

Format (single line, space separated ``key=value``)::

    SUMMARY job=<id> outcome=<OUTCOME> rows=<staged> valid=<n> errors=<n>
    parse_errors=<n> inserted=<n> elapsed_sec=<s> throughput_rps=<r>

Counts missing from a partial run (phases that did not execute) render as 0.
"""

__all__ = [
    "format_number",
    "render_summary_line",
]


def format_number(value: float) -> str:
    """Integers without a decimal point, small values without scientific notation."""
    if value == 0:
        return "0"
    if value == int(value):
        return str(int(value))
    if abs(value) < 0.01:
        return f"{value:.6f}".rstrip("0").rstrip(".")
    return f"{value:.2f}".rstrip("0").rstrip(".")


def render_summary_line(result: PhaseResult) -> str:
    staged = parse_errors = valid = errors = inserted = 0
    elapsed = 0.0
    if result.ingest is not None:
        staged = result.ingest.staged_rows
        parse_errors = result.ingest.parse_error_rows
        elapsed += result.ingest.elapsed_seconds
    if result.validation is not None:
        valid = result.validation.valid_rows
        errors = result.validation.error_rows
        parse_errors = result.validation.parse_error_rows
        elapsed += result.validation.elapsed_seconds
    if result.apply is not None:
        inserted = result.apply.inserted_rows
        elapsed += result.apply.elapsed_seconds
    if result.report is not None:
        staged = result.report.staged_rows
        valid = result.report.valid_rows
        errors = result.report.error_rows
        parse_errors = result.report.parse_error_rows
        elapsed += result.report.elapsed_seconds
    throughput = staged / elapsed if elapsed > 0 else 0.0
    return (
        f"SUMMARY job={result.job_id} "
        f"outcome={result.outcome.value} "
        f"rows={staged} "
        f"valid={valid} "
        f"errors={errors} "
        f"parse_errors={parse_errors} "
        f"inserted={inserted} "
        f"elapsed_sec={format_number(elapsed)} "
        f"throughput_rps={format_number(throughput)}"
    )
