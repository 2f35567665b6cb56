from __future__ import annotations

from pathlib import Path

import pytest

from sheet_migrate.config.loader import load_config
from sheet_migrate.errors import ConfigError
from sheet_migrate.models.config_models import FORMAT_PATTERNS, FieldDescriptor


def test_load_config_builds_templates_and_targets(write_config):
    cfg = load_config(write_config())
    assert cfg.database.backend == "sqlite"
    assert [t.sheet for t in cfg.templates] == ["Customers", "Orders"]
    customers = cfg.template_for("Customers")
    assert customers.business_key == ("customer_code",)
    assert customers.existing_duplicates is not None
    assert customers.existing_duplicates.columns == ("code",)
    orders = cfg.template_for("Orders")
    assert orders.references[0].staged_sheet == "Customers"
    assert orders.descriptor("order_date").target_type == "date"

    targets = {t.table: t for t in cfg.apply.targets}
    assert targets["orders"].depends_on == ("customers",)
    assert targets["orders"].lookups[0].value_column == "id"
    assert targets["orders"].column("amount").target_type == "decimal"


def test_load_config_defaults(write_config):
    cfg = load_config(write_config())
    assert cfg.ingest.max_rows == 1_000_000
    assert cfg.validation.partition_threshold == 200_000
    assert cfg.validation.partition_size == 100_000
    assert cfg.apply.level_timeout_seconds == 900.0
    assert cfg.output.thresholds.in_memory_max_rows == 50_000
    assert cfg.output.window_size == 100
    assert cfg.checkpoint.max_age_hours == 168


def test_null_sentinels_are_upper_cased(write_config):
    cfg = load_config(write_config(null_sentinels=["null", " n/a "]))
    assert cfg.null_sentinels == frozenset({"NULL", "N/A"})


def test_missing_file(temp_workdir: Path):
    with pytest.raises(ConfigError, match="not found"):
        load_config(temp_workdir / "config" / "nope.yml")


def test_invalid_yaml(temp_workdir: Path):
    path = temp_workdir / "config" / "pipeline.yml"
    path.write_text("templates: [\n", encoding="utf-8")
    with pytest.raises(ConfigError, match="invalid yaml"):
        load_config(path)


def test_root_must_be_mapping(temp_workdir: Path):
    path = temp_workdir / "config" / "pipeline.yml"
    path.write_text("- a\n- b\n", encoding="utf-8")
    with pytest.raises(ConfigError):
        load_config(path)


def test_unknown_format_rejected(write_config, config_data):
    templates = config_data["templates"]
    templates[0]["fields"][2]["format"] = "phone"
    with pytest.raises(ConfigError, match="unknown format"):
        load_config(write_config(templates=templates))


def test_invalid_regex_rejected(write_config, config_data):
    templates = config_data["templates"]
    templates[0]["fields"][0]["format"] = "regex:^C[0-9"
    with pytest.raises(ConfigError, match="invalid regex"):
        load_config(write_config(templates=templates))


def test_unknown_business_key_field(write_config, config_data):
    templates = config_data["templates"]
    templates[0]["business_key"] = ["no_such_field"]
    with pytest.raises(ConfigError, match="unknown fields"):
        load_config(write_config(templates=templates))


def test_apply_target_field_must_exist(write_config, config_data):
    apply = config_data["apply"]
    apply["targets"][0]["columns"]["code"] = {"field": "missing"}
    with pytest.raises(ConfigError, match="not in sheet"):
        load_config(write_config(apply=apply))


def test_sqlite_requires_path(write_config):
    with pytest.raises(ConfigError, match="database.path"):
        load_config(write_config(database={"backend": "sqlite", "path": ""}))


def test_thresholds_must_be_monotonic(write_config):
    with pytest.raises(ConfigError, match="monotonic"):
        load_config(write_config(output={"in_memory_max_rows": 100, "flat_text_min_rows": 50}))


def test_field_pattern_explicit_and_implied():
    assert FieldDescriptor(column="A", field="a", format="regex:^x$").pattern == "^x$"
    assert FieldDescriptor(column="A", field="a", format="email").pattern == FORMAT_PATTERNS["email"]
    assert FieldDescriptor(column="A", field="a", target_type="date").pattern == FORMAT_PATTERNS["date"]
    assert FieldDescriptor(column="A", field="a").pattern is None


def test_field_name_must_be_identifier():
    with pytest.raises(ConfigError, match="invalid field name"):
        FieldDescriptor(column="A", field="a b")
