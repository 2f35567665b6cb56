# Shared pytest fixtures: sqlite-backed pipeline, workbook builder, target tables
from __future__ import annotations

import copy
import sqlite3
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
import yaml
from openpyxl import Workbook

from sheet_migrate.config.loader import build_config
from sheet_migrate.logging.error_log import ErrorLogBuffer
from sheet_migrate.logging.init import reset_logging
from sheet_migrate.models.config_models import PipelineConfig
from sheet_migrate.services.orchestrator import PipelineController

CUSTOMERS_HEADER = ["Customer Code", "Name", "Email", "Tier"]
ORDERS_HEADER = ["Order No", "Customer Code", "Order Date", "Amount"]

TARGET_DDL = (
    "CREATE TABLE IF NOT EXISTS customers ("
    " id INTEGER PRIMARY KEY AUTOINCREMENT, code TEXT NOT NULL UNIQUE, name TEXT, email TEXT, tier TEXT)",
    "CREATE TABLE IF NOT EXISTS orders ("
    " id INTEGER PRIMARY KEY AUTOINCREMENT, order_no TEXT NOT NULL UNIQUE,"
    " customer_id INTEGER NOT NULL REFERENCES customers(id), order_date TEXT, amount REAL)",
)


def _base_data(root: Path) -> dict[str, Any]:
    return {
        "database": {"backend": "sqlite", "path": str(root / "pipeline.db")},
        "ingest": {
            "batch_size": 100,
            "progress_interval": 100,
            "max_errors": 1000,
            "work_directory": str(root / "work"),
        },
        "validation": {"max_workers": 1, "step_timeout_seconds": 30, "promote_timeout_seconds": 30},
        "apply": {
            "max_retries": 1,
            "backoff_seconds": 0,
            "targets": [
                {
                    "table": "customers",
                    "sheet": "Customers",
                    "key": ["code"],
                    "columns": {
                        "code": {"field": "customer_code"},
                        "name": {"field": "name"},
                        "email": {"field": "email"},
                        "tier": {"field": "tier"},
                    },
                },
                {
                    "table": "orders",
                    "sheet": "Orders",
                    "depends_on": ["customers"],
                    "key": ["order_no"],
                    "columns": {
                        "order_no": {"field": "order_no"},
                        "order_date": {"field": "order_date", "type": "date"},
                        "amount": {"field": "amount", "type": "decimal"},
                    },
                    "lookups": {
                        "customer_id": {
                            "field": "customer_code",
                            "table": "customers",
                            "match_column": "code",
                            "value_column": "id",
                        }
                    },
                },
            ],
        },
        "output": {"directory": str(root / "exports")},
        "checkpoint": {"directory": str(root / "checkpoints")},
        "null_sentinels": ["NULL", "N/A"],
        "templates": [
            {
                "sheet": "Customers",
                "business_key": ["customer_code"],
                "fields": [
                    {"column": "Customer Code", "field": "customer_code", "required": True, "format": "regex:^C[0-9]{4}$"},
                    {"column": "Name", "field": "name", "required": True},
                    {"column": "Email", "field": "email", "format": "email"},
                    {"column": "Tier", "field": "tier", "allowed_values": ["GOLD", "SILVER", "BRONZE"]},
                ],
                "existing_duplicates": {"fields": ["customer_code"], "table": "customers", "columns": ["code"]},
            },
            {
                "sheet": "Orders",
                "business_key": ["order_no"],
                "fields": [
                    {"column": "Order No", "field": "order_no", "required": True},
                    {"column": "Customer Code", "field": "customer_code", "required": True},
                    {"column": "Order Date", "field": "order_date", "required": True, "type": "date"},
                    {"column": "Amount", "field": "amount", "type": "decimal"},
                ],
                "references": [
                    {
                        "fields": ["customer_code"],
                        "table": "customers",
                        "columns": ["code"],
                        "staged_sheet": "Customers",
                        "staged_fields": ["customer_code"],
                    }
                ],
            },
        ],
    }


def _merge(data: dict[str, Any], overrides: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(data)
    for section, values in overrides.items():
        if isinstance(values, dict) and isinstance(merged.get(section), dict):
            merged[section].update(values)
        else:
            merged[section] = values
    return merged


@pytest.fixture(autouse=True)
def _clean_logging() -> Iterator[None]:
    reset_logging()
    yield
    reset_logging()


@pytest.fixture()
def temp_workdir(tmp_path: Path, monkeypatch) -> Path:
    (tmp_path / "config").mkdir()
    (tmp_path / "data").mkdir()
    (tmp_path / "logs").mkdir()
    monkeypatch.chdir(tmp_path)
    # 実環境の接続情報を拾わない
    for name in ("DATABASE_URL", "PGDSN"):
        monkeypatch.delenv(name, raising=False)
    return tmp_path


@pytest.fixture()
def config_data(temp_workdir: Path) -> dict[str, Any]:
    return _base_data(temp_workdir)


@pytest.fixture()
def make_config(config_data: dict[str, Any]) -> Callable[..., PipelineConfig]:
    """``make_config(ingest={"batch_size": 10})`` -> PipelineConfig (sections merged shallowly)."""

    def factory(**overrides: Any) -> PipelineConfig:
        return build_config(_merge(config_data, overrides))

    return factory


@pytest.fixture()
def write_config(temp_workdir: Path, config_data: dict[str, Any]) -> Callable[..., Path]:
    def factory(**overrides: Any) -> Path:
        path = temp_workdir / "config" / "pipeline.yml"
        path.write_text(yaml.safe_dump(_merge(config_data, overrides), sort_keys=False), encoding="utf-8")
        return path

    return factory


@pytest.fixture()
def db_path(temp_workdir: Path) -> Path:
    """sqlite file with the authoritative ``customers`` / ``orders`` tables."""
    path = temp_workdir / "pipeline.db"
    conn = sqlite3.connect(path)
    try:
        for ddl in TARGET_DDL:
            conn.execute(ddl)
        conn.commit()
    finally:
        conn.close()
    return path


@pytest.fixture()
def query(db_path: Path) -> Callable[..., list[tuple[Any, ...]]]:
    def run(sql: str, params: tuple[Any, ...] = ()) -> list[tuple[Any, ...]]:
        conn = sqlite3.connect(db_path)
        try:
            rows = conn.execute(sql, params).fetchall()
            conn.commit()
            return rows
        finally:
            conn.close()

    return run


@pytest.fixture()
def make_workbook(temp_workdir: Path) -> Callable[[str, dict[str, list[list[Any]]]], Path]:
    """``make_workbook("in.xlsx", {"Customers": [header, row, ...]})`` -> path under data/."""

    def factory(name: str, sheets: dict[str, list[list[Any]]]) -> Path:
        wb = Workbook()
        wb.remove(wb.active)
        for title, rows in sheets.items():
            ws = wb.create_sheet(title=title)
            for row in rows:
                ws.append(row)
        path = temp_workdir / "data" / name
        wb.save(path)
        return path

    return factory


@pytest.fixture()
def make_controller(
    make_config: Callable[..., PipelineConfig], db_path: Path, temp_workdir: Path
) -> Callable[..., PipelineController]:
    def factory(**overrides: Any) -> PipelineController:
        return PipelineController(make_config(**overrides), error_log=ErrorLogBuffer(temp_workdir / "logs"))

    return factory


@pytest.fixture()
def controller(make_controller: Callable[..., PipelineController]) -> PipelineController:
    return make_controller()


def customer_rows(count: int, start: int = 1) -> list[list[Any]]:
    return [
        [f"C{i:04d}", f"Customer {i}", f"user{i}@example.com", ("GOLD", "SILVER", "BRONZE")[i % 3]]
        for i in range(start, start + count)
    ]


@pytest.fixture()
def customers() -> Callable[..., list[list[Any]]]:
    """Valid customer rows (header not included)."""
    return customer_rows
