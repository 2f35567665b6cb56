from __future__ import annotations

import re

from sheet_migrate.cli.__main__ import main as cli_main

"""SUMMARY output contract: exactly one machine-readable line per command run."""

SUMMARY_RE = re.compile(
    r"^SUMMARY job=(?P<job>\S+) outcome=(?P<outcome>SUCCESS|VALIDATION_ERRORS|FATAL|CANCELLED) "
    r"rows=(?P<rows>\d+) valid=(?P<valid>\d+) errors=(?P<errors>\d+) parse_errors=(?P<parse>\d+) "
    r"inserted=(?P<inserted>\d+) elapsed_sec=(?P<elapsed>\d+(\.\d+)?) throughput_rps=(?P<rps>\d+(\.\d+)?)$"
)

CUSTOMERS_HEADER = ["Customer Code", "Name", "Email", "Tier"]


def _summary_lines(out: str) -> list[re.Match]:
    return [m for m in (SUMMARY_RE.match(line) for line in out.splitlines()) if m]


def test_run_prints_one_summary(write_config, db_path, make_workbook, customers, capsys):
    write_config()
    rows = customers(6)
    rows[2][1] = None
    make_workbook("summary.xlsx", {"Customers": [CUSTOMERS_HEADER, *rows]})

    assert cli_main(["run", "data/summary.xlsx", "--job-id", "sum-job"]) == 2

    out = capsys.readouterr().out
    assert len([line for line in out.splitlines() if line.startswith("SUMMARY")]) == 1
    [m] = _summary_lines(out)
    assert m["job"] == "sum-job"
    assert m["outcome"] == "VALIDATION_ERRORS"
    assert (int(m["rows"]), int(m["valid"]), int(m["errors"]), int(m["parse"])) == (6, 5, 1, 0)
    assert int(m["inserted"]) == 5


def test_fatal_run_still_prints_summary(write_config, db_path, make_workbook, capsys):
    write_config()
    make_workbook("broken.xlsx", {"Customers": [["Name"], ["Alice"]]})

    assert cli_main(["run", "data/broken.xlsx"]) == 1

    out = capsys.readouterr().out
    [m] = _summary_lines(out)
    assert m["outcome"] == "FATAL"
    assert any(line.startswith("ERROR job ") and "STRUCTURAL_ERROR" in line for line in out.splitlines())
