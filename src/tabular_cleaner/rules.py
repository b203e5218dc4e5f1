"""
Configuration models for cleaning rules using Pydantic.
Provides rule instances, rule templates and YAML-loadable configuration.
"""

import time
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, field_validator


class CleaningOperation(str, Enum):
    """Supported cleaning operations."""

    TRIM = "trim"
    REPLACE = "replace"
    REMOVE_NULLS = "remove_nulls"
    CONVERT_TYPE = "convert_type"
    RENAME = "rename"
    CATEGORIZE = "categorize"
    HANDLE_MISSING_VALUES = "handleMissingValues"
    NORMALIZATION = "normalization"
    CUSTOM_REGEX_REPLACEMENT = "customRegexReplacement"
    REMOVE_DUPLICATES = "removeDuplicates"
    FILTER_OUT_UNWANTED_RECORDS = "filterOutUnwantedRecords"
    CONVERT_DATE_FORMATS = "convertDateFormats"
    STANDARDIZE_DIAGNOSIS_CODES = "standardizeDiagnosisCodes"
    LOG_CLEANING_ACTIONS = "logCleaningActions"

    @classmethod
    def lookup(cls, name: Any) -> Optional["CleaningOperation"]:
        """Return the operation for a name, or None when it is not in the catalog."""
        if isinstance(name, cls):
            return name
        try:
            return cls(name)
        except ValueError:
            return None


# Template ids whose name differs from the operation they build.
TEMPLATE_OPERATION_ALIASES: Dict[str, CleaningOperation] = {
    "trimWhitespace": CleaningOperation.TRIM,
    "categorizeAgeGroups": CleaningOperation.CATEGORIZE,
}


class CleaningRule(BaseModel):
    """
    A single configured cleaning operation.

    The operation is stored as given; whether it is a supported operation and
    whether the parameters fit it is decided when the rule is executed.
    """

    id: str = Field("", description="Unique identifier of the rule instance")
    name: str = Field("", description="Human-readable name for the rule")
    field: str = Field("", description="Target column (ignored by dataset-wide operations)")
    operation: str = Field(..., description="The cleaning operation to perform")
    enabled: bool = Field(True, description="Whether this rule is active")
    parameters: Dict[str, Any] = Field(
        default_factory=dict, description="Operation-specific parameters"
    )

    @field_validator("operation", mode="before")
    @classmethod
    def operation_name(cls, v: Any) -> Any:
        """Store enum members by their plain name."""
        return v.value if isinstance(v, Enum) else v

    @property
    def kind(self) -> Optional[CleaningOperation]:
        return CleaningOperation.lookup(self.operation)

    @property
    def label(self) -> str:
        return self.name or self.id or self.operation


class ParameterSchema(BaseModel):
    """Describes one parameter a template asks the user for."""

    model_config = ConfigDict(extra="allow")

    type: str = Field(..., description="string, number, array, object or boolean")
    required: bool = False
    min: Optional[float] = None
    max: Optional[float] = None
    options: Optional[List[str]] = None
    default: Any = None


_SCHEMA_TYPES = {
    "string": (str,),
    "number": (int, float),
    "array": (list, tuple),
    "object": (dict,),
    "boolean": (bool,),
}


class RuleTemplate(BaseModel):
    """Template from the rule catalog used to build rule instances."""

    id: str
    name: str
    operation: str = ""
    enabled: bool = True
    parameters: Dict[str, ParameterSchema] = Field(default_factory=dict)
    description: Optional[str] = None

    def resolve_operation(self) -> Optional[CleaningOperation]:
        """Map the template to a catalog operation, by operation name first, then by id."""
        return (
            CleaningOperation.lookup(self.operation)
            or TEMPLATE_OPERATION_ALIASES.get(self.id)
            or CleaningOperation.lookup(self.id)
        )

    def check_parameters(self, values: Dict[str, Any]) -> List[str]:
        """Return the problems found when checking values against the template schema."""
        problems: List[str] = []
        for name, schema in self.parameters.items():
            if name not in values or values[name] is None:
                if schema.required:
                    problems.append(f"{name} is required")
                continue

            value = values[name]
            expected = _SCHEMA_TYPES.get(schema.type)
            wrong_bool = schema.type == "number" and isinstance(value, bool)
            if expected is not None and (not isinstance(value, expected) or wrong_bool):
                problems.append(f"{name} must be of type {schema.type}")
                continue

            if schema.type == "number":
                if schema.min is not None and value < schema.min:
                    problems.append(f"{name} must be >= {schema.min}")
                if schema.max is not None and value > schema.max:
                    problems.append(f"{name} must be <= {schema.max}")
            if schema.options and value not in schema.options:
                problems.append(f"{name} must be one of {schema.options}")
        return problems

    def build_rule(self, field: str, parameters: Dict[str, Any]) -> CleaningRule:
        """Create a rule instance targeting a field."""
        operation = self.resolve_operation()
        if operation is None:
            raise ValueError(f"Template {self.id} does not map to a cleaning operation")

        defaults = {
            name: schema.default
            for name, schema in self.parameters.items()
            if schema.default is not None
        }
        return CleaningRule(
            id=f"{self.id}_{int(time.time() * 1000)}",
            name=f"{self.name} on {field}" if field else self.name,
            field=field,
            operation=operation.value,
            enabled=True,
            parameters={**defaults, **parameters},
        )


class RuleCatalog(BaseModel):
    """The rule-template settings file."""

    model_config = ConfigDict(populate_by_name=True)

    templates: List[RuleTemplate] = Field(..., alias="cleaningRules")

    def get(self, template_id: str) -> Optional[RuleTemplate]:
        return next((t for t in self.templates if t.id == template_id), None)


def load_rule_catalog(path: Union[str, Path]) -> RuleCatalog:
    """Load a rule catalog from a JSON or YAML file."""
    with open(Path(path), "r") as f:
        data = yaml.safe_load(f)
    if not isinstance(data, dict) or not isinstance(data.get("cleaningRules"), list):
        raise ValueError("Invalid format - cleaningRules must be an array")
    return RuleCatalog(**data)


class DataContract(BaseModel):
    """Pandera-compatible data contract definition."""

    columns: Dict[str, Dict[str, Any]] = Field(
        default_factory=dict, description="Column schemas with constraints"
    )
    strict: bool = Field(False, description="Whether to reject columns not in the contract")
    coerce: bool = Field(False, description="Whether to coerce types")


class RuleConfig(BaseModel):
    """Complete configuration for the cleaning engine."""

    version: str = Field("1.0", description="Configuration schema version")
    name: str = Field(..., description="Name of this cleaning configuration")
    description: Optional[str] = Field(None, description="Description of the cleaning process")

    input_contract: Optional[DataContract] = Field(
        None, description="Expected input data schema"
    )
    output_contract: Optional[DataContract] = Field(
        None, description="Expected output data schema"
    )

    rules: List[CleaningRule] = Field(..., description="Cleaning rules, applied in list order")

    observability: Dict[str, Any] = Field(
        default_factory=lambda: {"enabled": True, "service_name": "tabular-cleaner"},
        description="OpenTelemetry configuration",
    )
