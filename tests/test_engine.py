"""Tests for the cleaning engine core functionality."""

import json
from pathlib import Path
from typing import Any, List

import pytest
import yaml

from tabular_cleaner import CleaningEngine, RuleConfig
from tabular_cleaner.dataset import Dataset
from tabular_cleaner.engine import CleaningEvent
from tabular_cleaner.operations import OPERATIONS
from tabular_cleaner.rules import CleaningOperation, CleaningRule, DataContract
from tabular_cleaner.storage import DuckDBStorage

PIPELINE = [
    {"operation": "trim", "field": "Name", "enabled": True},
    {"operation": "remove_nulls", "field": "Age", "enabled": True},
    {"operation": "convert_type", "field": "Age", "parameters": {"type": "number"}, "enabled": True},
]


@pytest.fixture
def patients() -> Dataset:
    """Create the uploaded dataset used across the engine tests."""
    return Dataset.create(
        ["Age", "Name"],
        [{"Age": "30", "Name": " Bob "}, {"Age": "", "Name": "Amy"}],
        source_name="patients.csv",
    )


@pytest.fixture
def engine() -> CleaningEngine:
    """Create an engine without tracing setup."""
    return CleaningEngine(enable_observability=False)


def test_engine_initialization() -> None:
    """Test CleaningEngine initialization."""
    engine = CleaningEngine()
    assert engine.config is None
    assert engine.storage is None
    assert engine.observer is None


def test_end_to_end_pipeline(engine: CleaningEngine, patients: Dataset) -> None:
    """Test trim, null removal and numeric conversion in order."""
    result = engine.run(patients, PIPELINE)

    assert result.dataset.rows == [{"Age": 30, "Name": "Bob"}]
    assert result.dataset.headers == ["Age", "Name"]
    assert result.dataset.metadata.row_count == 1
    assert result.ok
    assert [event.status for event in result.events] == ["applied"] * 3


def test_apply_rules_returns_dataset(engine: CleaningEngine, patients: Dataset) -> None:
    """Test the dataset-only convenience entry point."""
    cleaned = engine.apply_rules(patients, PIPELINE)
    assert cleaned.rows == [{"Age": 30, "Name": "Bob"}]


def test_rule_order_matters(engine: CleaningEngine) -> None:
    """Test that trimming before conversion differs from the reverse order."""
    dataset = Dataset.create(["n"], [{"n": " 5 "}])
    trim_rule = {"operation": "trim", "field": "n"}
    convert_rule = {"operation": "convert_type", "field": "n", "parameters": {"type": "number"}}

    trimmed_first = engine.run(dataset, [trim_rule, convert_rule])
    converted_first = engine.run(dataset, [convert_rule, trim_rule])

    assert trimmed_first.dataset.rows == [{"n": 5}]
    assert converted_first.dataset.rows == [{"n": "5"}]
    assert [d.kind for d in converted_first.diagnostics] == ["conversion"]


def test_input_is_never_mutated(engine: CleaningEngine, patients: Dataset) -> None:
    """Test that the caller's dataset and rules are left untouched."""
    before = patients.model_dump()
    rules = [CleaningRule(**rule) for rule in PIPELINE]
    rules_before = [rule.model_dump() for rule in rules]

    result = engine.run(patients, rules)

    assert result.dataset is not patients
    assert patients.model_dump() == before
    assert [rule.model_dump() for rule in rules] == rules_before


def test_no_effective_rules_still_returns_new_dataset(
    engine: CleaningEngine, patients: Dataset
) -> None:
    """Test that an empty pass returns an equal but distinct dataset."""
    result = engine.run(patients, [])

    assert result.dataset is not patients
    assert result.dataset.rows == patients.rows
    assert result.dataset.rows is not patients.rows
    assert result.dataset.metadata.loaded_at == patients.metadata.loaded_at

    result.dataset.rows[0]["Name"] = "Changed"
    assert patients.rows[0]["Name"] == " Bob "


@pytest.mark.parametrize("operation", [op.value for op in CleaningOperation])
def test_disabled_rule_is_noop(engine: CleaningEngine, patients: Dataset, operation: str) -> None:
    """Test that disabled rules never run, whatever their operation."""
    rules: List[Any] = [
        {"operation": operation, "field": "Name", "enabled": False},
        CleaningRule(operation=operation, field="Age", enabled=False),
    ]
    result = engine.run(patients, rules)

    assert result.dataset.rows == patients.rows
    assert result.dataset.headers == patients.headers
    assert result.events == []
    assert result.diagnostics == []


def test_unknown_operation_is_skipped(engine: CleaningEngine, patients: Dataset) -> None:
    """Test that unknown operations produce a diagnostic and do not stop the pass."""
    result = engine.run(
        patients,
        [
            {"id": "x", "operation": "explode", "field": "Name"},
            {"operation": "trim", "field": "Name"},
        ],
    )

    assert result.dataset.column_values("Name") == ["Bob", "Amy"]
    assert result.diagnostics[0].kind == "unknown_operation"
    assert result.diagnostics[0].rule_id == "x"
    assert [event.status for event in result.events] == ["skipped", "applied"]


def test_invalid_parameters_are_skipped(engine: CleaningEngine, patients: Dataset) -> None:
    """Test that rules failing parameter validation leave the dataset alone."""
    result = engine.run(
        patients,
        [{"id": "bad", "name": "Broken", "operation": "normalization", "field": "Age"}],
    )

    assert result.dataset.rows == patients.rows
    assert len(result.diagnostics) == 1
    assert result.diagnostics[0].kind == "validation"
    assert result.diagnostics[0].rule_name == "Broken"
    assert not result.ok


def test_broken_replace_pattern_is_a_validation_failure(
    engine: CleaningEngine, patients: Dataset
) -> None:
    """Test that an uncompilable regex is caught before the rule runs."""
    result = engine.run(
        patients,
        [
            {
                "id": "re",
                "operation": "replace",
                "field": "Name",
                "parameters": {"pattern": "/[/", "replacement": ""},
            }
        ],
    )

    assert result.dataset.rows == patients.rows
    assert [d.kind for d in result.diagnostics] == ["validation"]


def test_malformed_rule_mapping(engine: CleaningEngine, patients: Dataset) -> None:
    """Test that a mapping that is not a rule is reported, not raised."""
    result = engine.run(patients, [{"id": "m", "field": "Name"}, {"operation": "trim", "field": "Name"}])

    assert result.diagnostics[0].kind == "validation"
    assert result.diagnostics[0].rule_id == "m"
    assert result.dataset.column_values("Name") == ["Bob", "Amy"]


def test_failing_rule_rolls_back(
    engine: CleaningEngine, patients: Dataset, monkeypatch: pytest.MonkeyPatch
) -> None:
    """Test that a rule raising midway leaves no partial edits behind."""

    def boom(dataset: Dataset, field: str, params: Any, ctx: Any) -> Dataset:
        dataset.rows[0][field] = "half-done"
        dataset.rows.pop()
        raise RuntimeError("boom")

    monkeypatch.setitem(OPERATIONS, CleaningOperation.TRIM, boom)

    result = engine.run(
        patients,
        [
            {"id": "t", "operation": "trim", "field": "Name"},
            {"operation": "remove_nulls", "field": "Age"},
        ],
    )

    assert result.dataset.rows == [{"Age": "30", "Name": " Bob "}]
    assert result.diagnostics[0].kind == "execution"
    assert "boom" in result.diagnostics[0].message
    assert [event.status for event in result.events] == ["failed", "applied"]
    assert patients.rows[0]["Name"] == " Bob "


def test_observer_receives_events(patients: Dataset) -> None:
    """Test the injected observer callback."""
    seen: List[CleaningEvent] = []
    engine = CleaningEngine(observer=seen.append, enable_observability=False)

    result = engine.run(patients, PIPELINE)

    assert seen == result.events
    assert seen[1].operation == "remove_nulls"
    assert seen[1].message.endswith("2 -> 1 rows")


def test_observer_errors_do_not_break_the_pass(patients: Dataset) -> None:
    """Test that an observer raising does not abort cleaning."""

    def observer(event: CleaningEvent) -> None:
        raise RuntimeError("observer down")

    engine = CleaningEngine(observer=observer, enable_observability=False)
    assert engine.run(patients, PIPELINE).dataset.rows == [{"Age": 30, "Name": "Bob"}]


def test_log_cleaning_actions_event(patients: Dataset) -> None:
    """Test that logging rules emit a rendered action event."""
    seen: List[CleaningEvent] = []
    engine = CleaningEngine(observer=seen.append, enable_observability=False)

    result = engine.run(
        patients,
        [{"operation": "logCleaningActions", "parameters": {"message": "checkpoint", "logFormat": "json"}}],
    )

    logged = [event for event in seen if event.status == "logged"]
    assert len(logged) == 1
    payload = json.loads(logged[0].message)
    assert payload["action"] == "checkpoint"
    assert "timestamp" in payload
    assert result.dataset.rows == patients.rows


def test_operation_warnings_become_diagnostics(engine: CleaningEngine, patients: Dataset) -> None:
    """Test that recoverable issues are reported without skipping the rule."""
    result = engine.run(patients, [{"id": "r", "operation": "trim", "field": "Missing"}])

    assert result.diagnostics[0].kind == "structural"
    assert result.events[0].status == "applied"


def test_run_without_rules_or_config(engine: CleaningEngine, patients: Dataset) -> None:
    """Test that run() needs rules or a loaded configuration."""
    with pytest.raises(ValueError):
        engine.run(patients)


def test_run_uses_config_rules(patients: Dataset) -> None:
    """Test running the rules of a loaded configuration."""
    config = RuleConfig(name="intake", rules=[CleaningRule(**rule) for rule in PIPELINE])
    engine = CleaningEngine(config=config, enable_observability=False)

    assert engine.run(patients).dataset.rows == [{"Age": 30, "Name": "Bob"}]


def test_load_config_from_yaml(tmp_path: Path, patients: Dataset) -> None:
    """Test loading configuration from a YAML file."""
    path = tmp_path / "rules.yaml"
    path.write_text(yaml.safe_dump({"name": "yaml_rules", "rules": PIPELINE}))

    engine = CleaningEngine(config=path, enable_observability=False)

    assert engine.config is not None
    assert engine.config.name == "yaml_rules"
    assert [rule.operation for rule in engine.config.rules] == ["trim", "remove_nulls", "convert_type"]
    assert engine.run(patients).dataset.rows == [{"Age": 30, "Name": "Bob"}]


def test_save_config_round_trip(tmp_path: Path) -> None:
    """Test saving and reloading a configuration."""
    config = RuleConfig(
        name="saved",
        description="round trip",
        rules=[CleaningRule(**rule) for rule in PIPELINE],
        output_contract=DataContract(columns={"Age": {"dtype": "int"}}),
    )
    engine = CleaningEngine(config=config, enable_observability=False)
    path = tmp_path / "saved.yaml"
    engine.save_config(path)

    reloaded = CleaningEngine(config=path, enable_observability=False)
    assert reloaded.config == config


def test_output_contract_violation(patients: Dataset) -> None:
    """Test that contract violations are reported as diagnostics."""
    config = RuleConfig(
        name="typed",
        rules=[{"operation": "trim", "field": "Name"}],
        output_contract=DataContract(columns={"Age": {"dtype": "int", "nullable": False}}),
    )
    engine = CleaningEngine(config=config, enable_observability=False)

    result = engine.run(patients)

    assert result.dataset.column_values("Name") == ["Bob", "Amy"]
    assert result.diagnostics
    assert {d.kind for d in result.diagnostics} == {"contract"}
    assert result.diagnostics[0].operation == "contract"


def test_output_contract_satisfied(patients: Dataset) -> None:
    """Test a pass whose output meets the contract."""
    config = RuleConfig(
        name="typed",
        rules=[CleaningRule(**rule) for rule in PIPELINE],
        output_contract=DataContract(
            columns={
                "Age": {"dtype": "int", "nullable": False, "min": 0, "max": 120},
                "Name": {"dtype": "str"},
            }
        ),
    )
    engine = CleaningEngine(config=config, enable_observability=False)

    result = engine.run(patients)
    assert result.ok

    unconverted = engine.run(patients, [], validate_output=True)
    assert unconverted.diagnostics
    assert {d.kind for d in unconverted.diagnostics} == {"contract"}


def test_infer_contracts(patients: Dataset) -> None:
    """Test filling missing contracts from a sample."""
    config = RuleConfig(name="infer", rules=[])
    engine = CleaningEngine(config=config, enable_observability=False)

    engine.infer_contracts(patients)

    assert engine.config is not None
    assert engine.config.input_contract is not None
    assert engine.config.input_contract.columns["Age"]["dtype"] == "str"


def test_clean_from_storage(patients: Dataset) -> None:
    """Test cleaning a table stored in DuckDB."""
    with DuckDBStorage() as storage:
        storage.save_dataset(patients, "raw_patients")
        engine = CleaningEngine(storage=storage, enable_observability=False)

        result = engine.clean_from_storage("raw_patients", "clean_patients", rules=PIPELINE)

        assert result.dataset.rows == [{"Age": 30, "Name": "Bob"}]
        assert storage.load_dataset("clean_patients").rows == [{"Age": 30, "Name": "Bob"}]


def test_clean_from_storage_requires_storage(engine: CleaningEngine) -> None:
    """Test that storage must be configured."""
    with pytest.raises(ValueError):
        engine.clean_from_storage("anything", rules=PIPELINE)
