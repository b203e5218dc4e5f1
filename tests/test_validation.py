"""Tests for rule parameter validation."""

from typing import Any, Dict

import pytest

from tabular_cleaner.parameters import (
    ConvertTypeParameters,
    NormalizationParameters,
    PARAMETER_MODELS,
)
from tabular_cleaner.rules import CleaningOperation, CleaningRule
from tabular_cleaner.validation import ParameterValidator, RuleValidationError

# Operations with required parameters: (missing, fully specified)
REQUIRED_CASES = {
    "replace": ({"pattern": "a"}, {"pattern": "a", "replacement": "b"}),
    "convert_type": ({}, {"type": "number"}),
    "rename": ({}, {"newName": "renamed"}),
    "categorize": ({}, {"ranges": [{"min": 0, "max": 10, "label": "low"}]}),
    "handleMissingValues": ({}, {"method": "median"}),
    "normalization": ({"minValue": 0}, {"minValue": 0, "maxValue": 10}),
    "customRegexReplacement": ({"replacement": "#"}, {"pattern": r"\d", "replacement": "#"}),
    "filterOutUnwantedRecords": ({}, {"criteria": {"Age": {"min": 0, "max": 120}}}),
    "convertDateFormats": ({}, {"columns": ["Date"]}),
}

# Operations whose parameters are all optional: (malformed, empty is fine)
OPTIONAL_CASES = {
    "trim": None,
    "remove_nulls": {"columns": "Age"},
    "removeDuplicates": {"columns": [1, 2]},
    "standardizeDiagnosisCodes": {"validPattern": "("},
    "logCleaningActions": {"logFormat": "xml"},
}


@pytest.fixture
def validator() -> ParameterValidator:
    return ParameterValidator()


def _rule(operation: str, parameters: Dict[str, Any]) -> CleaningRule:
    return CleaningRule(id="r", name="rule", field="Age", operation=operation, parameters=parameters)


def test_every_operation_has_a_case() -> None:
    """Test that the cases below cover the whole catalog."""
    covered = set(REQUIRED_CASES) | set(OPTIONAL_CASES)
    assert covered == {op.value for op in CleaningOperation}
    assert set(PARAMETER_MODELS) == set(CleaningOperation)


@pytest.mark.parametrize("operation", sorted(REQUIRED_CASES))
def test_missing_required_parameters_invalid(validator: ParameterValidator, operation: str) -> None:
    """Test that rules missing required parameters fail validation."""
    missing, _ = REQUIRED_CASES[operation]
    assert validator.validate(_rule(operation, missing)) is False


@pytest.mark.parametrize("operation", sorted(REQUIRED_CASES))
def test_complete_parameters_valid(validator: ParameterValidator, operation: str) -> None:
    """Test that fully specified rules pass validation."""
    _, complete = REQUIRED_CASES[operation]
    assert validator.validate(_rule(operation, complete)) is True


@pytest.mark.parametrize("operation", sorted(OPTIONAL_CASES))
def test_optional_parameter_operations(validator: ParameterValidator, operation: str) -> None:
    """Test operations that need no parameters, and reject malformed ones."""
    assert validator.validate(_rule(operation, {})) is True

    malformed = OPTIONAL_CASES[operation]
    if malformed is not None:
        assert validator.validate(_rule(operation, malformed)) is False


def test_unknown_operation_invalid(validator: ParameterValidator) -> None:
    """Test that operations outside the catalog are invalid."""
    assert validator.validate(_rule("explode", {})) is False
    assert validator.explain(_rule("explode", {})) == ["unknown operation 'explode'"]


def test_parse_returns_typed_parameters(validator: ParameterValidator) -> None:
    """Test that parse() returns the operation's model."""
    params = validator.parse(_rule("convert_type", {"targetType": "NUMBER", "fallbackValue": 0}))

    assert isinstance(params, ConvertTypeParameters)
    assert params.target_type == "number"
    assert params.fallback_value == 0
    assert params.has_fallback is True


def test_fallback_not_given(validator: ParameterValidator) -> None:
    """Test that has_fallback distinguishes None from an absent fallback."""
    assert validator.parse(_rule("convert_type", {"type": "date"})).has_fallback is False
    assert validator.parse(
        _rule("convert_type", {"type": "date", "fallbackValue": None})
    ).has_fallback is True


def test_parse_raises_with_problems(validator: ParameterValidator) -> None:
    """Test RuleValidationError details."""
    rule = _rule("handleMissingValues", {"method": "average"})

    with pytest.raises(RuleValidationError) as excinfo:
        validator.parse(rule)

    assert excinfo.value.rule is rule
    assert excinfo.value.problems
    assert excinfo.value.problems[0].startswith("method")


def test_convert_type_rejects_unknown_type(validator: ParameterValidator) -> None:
    """Test target types outside number/boolean/string/date."""
    assert validator.validate(_rule("convert_type", {"type": "integer"})) is False


def test_rename_requires_non_empty_name(validator: ParameterValidator) -> None:
    """Test rename parameter forms."""
    assert validator.validate(_rule("rename", {"newName": ""})) is False
    assert validator.validate(_rule("rename", {"mapping": {"a": "b"}})) is True
    assert validator.validate(_rule("rename", {"mapping": {"a": ""}})) is False
    assert validator.validate(_rule("rename", {"mapping": {}})) is False


def test_categorize_ranges(validator: ParameterValidator) -> None:
    """Test categorize range checks."""
    assert validator.validate(
        _rule("categorize", {"categories": [{"min": 0, "max": 5.5, "label": "a"}]})
    ) is True
    assert validator.validate(
        _rule("categorize", {"ranges": [{"min": 10, "max": 0, "label": "bad"}]})
    ) is False
    assert validator.validate(
        _rule("categorize", {"ranges": [{"min": "0", "max": 10, "label": "text"}]})
    ) is False
    assert validator.validate(
        _rule("categorize", {"ranges": [{"min": True, "max": 10, "label": "bool"}]})
    ) is False
    assert validator.validate(_rule("categorize", {"ranges": []})) is False


def test_normalization_forms(validator: ParameterValidator) -> None:
    """Test explicit and automatic normalization ranges."""
    assert validator.validate(_rule("normalization", {"autoRange": True})) is True
    assert validator.validate(_rule("normalization", {"minValue": 5, "maxValue": 1})) is False
    assert validator.validate(_rule("normalization", {"minValue": "0", "maxValue": 1})) is False

    params = validator.parse(_rule("normalization", {"min": 0, "max": 1, "clipOutliers": True}))
    assert isinstance(params, NormalizationParameters)
    assert params.clip_outliers is True


def test_remove_nulls_column_list(validator: ParameterValidator) -> None:
    """Test the column-list form of remove_nulls."""
    assert validator.validate(_rule("remove_nulls", {"columns": ["a", "b"], "strictMode": True})) is True
    assert validator.validate(_rule("remove_nulls", {"columns": ["a", 3]})) is False


def test_regex_parameters_must_compile(validator: ParameterValidator) -> None:
    """Test that broken regular expressions are rejected."""
    assert validator.validate(_rule("customRegexReplacement", {"pattern": "[", "replacement": ""})) is False
    assert validator.validate(
        _rule("filterOutUnwantedRecords", {"criteria": {"Code": {"pattern": "("}}})
    ) is False


def test_replace_regex_pattern_must_compile(validator: ParameterValidator) -> None:
    """Test that replace patterns used as regexes are compiled during validation."""
    assert validator.validate(_rule("replace", {"pattern": "/[/", "replacement": ""})) is False
    assert validator.validate(_rule("replace", {"pattern": "(", "replacement": "", "regex": True})) is False
    assert validator.validate(_rule("replace", {"pattern": "(", "replacement": ""})) is True
    assert validator.validate(
        _rule("replace", {"pattern": "/[/", "replacement": "", "regex": False})
    ) is True


@pytest.mark.parametrize("fallback", [[0], {"value": 0}])
def test_convert_type_fallback_must_be_scalar(validator: ParameterValidator, fallback: Any) -> None:
    """Test that only cell values are accepted as fallbackValue."""
    assert validator.validate(_rule("convert_type", {"type": "number", "fallbackValue": fallback})) is False


def test_filter_criterion_needs_a_constraint(validator: ParameterValidator) -> None:
    """Test that empty criteria are rejected."""
    assert validator.validate(_rule("filterOutUnwantedRecords", {"criteria": {"Age": {}}})) is False
    assert validator.validate(
        _rule("filterOutUnwantedRecords", {"conditions": {"Status": {"values": ["active"]}}})
    ) is True


def test_date_format_must_be_strftime(validator: ParameterValidator) -> None:
    """Test the convertDateFormats output format check."""
    assert validator.validate(_rule("convertDateFormats", {"columns": ["Date"], "format": "YYYY"})) is False
    assert validator.validate(
        _rule("convertDateFormats", {"columns": ["Date"], "format": "%d/%m/%Y"})
    ) is True


def test_validation_has_no_side_effects(validator: ParameterValidator) -> None:
    """Test that validating leaves the rule untouched."""
    parameters = {"type": "number"}
    rule = _rule("convert_type", parameters)
    validator.validate(rule)

    assert rule.parameters == {"type": "number"}
    assert parameters == {"type": "number"}
