"""
Typed parameter models, one per cleaning operation.

Rules carry their parameters as a free-form mapping (that is what the rule
templates and YAML configs produce). Before a rule runs, the mapping is parsed
into the model registered for its operation in ``PARAMETER_MODELS``.
Parameter names follow the camelCase used by the template catalog; the
snake_case field names are accepted as well.
"""

import re
from typing import Any, Dict, List, Literal, Optional, Type, Union

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    StrictBool,
    StrictFloat,
    StrictInt,
    StrictStr,
    field_validator,
    model_validator,
)

from tabular_cleaner.dataset import Scalar
from tabular_cleaner.rules import CleaningOperation

Number = Union[StrictInt, StrictFloat]

ICD10_VALID_PATTERN = r"^[A-Z]\d{2}\.\d{1,2}$"
ICD10_FIX_PATTERN = r"([A-Z])(\d{2})(\d{1,2})"
ICD10_FIX_REPLACEMENT = "$1$2.$3"

SLASH_REGEX = re.compile(r"^/(.*)/([gimsuy]*)$", re.DOTALL)
REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL}


def _check_regex(value: Optional[str]) -> Optional[str]:
    if value is None:
        return value
    try:
        re.compile(value)
    except re.error as e:
        raise ValueError(f"invalid regular expression {value!r}: {e}") from e
    return value


class OperationParameters(BaseModel):
    """Base for all parameter models; unknown keys are ignored."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")


class TrimParameters(OperationParameters):
    pass


def compile_replace_pattern(pattern: str, regex: Optional[bool]) -> Optional["re.Pattern[str]"]:
    """
    Compile a replace pattern when it should be treated as a regex.

    ``/body/flags`` patterns are regexes unless ``regex`` is explicitly false;
    plain patterns only when ``regex`` is true. Returns None for literal
    patterns and raises ``re.error`` for invalid ones.
    """
    if regex is False:
        return None
    slashed = SLASH_REGEX.match(pattern)
    if slashed:
        flags = 0
        for letter in slashed.group(2):
            flags |= REGEX_FLAGS.get(letter, 0)
        return re.compile(slashed.group(1), flags)
    if regex:
        return re.compile(pattern)
    return None


class ReplaceParameters(OperationParameters):
    pattern: StrictStr
    replacement: StrictStr
    regex: Optional[StrictBool] = None

    @model_validator(mode="after")
    def check_pattern(self) -> "ReplaceParameters":
        try:
            compile_replace_pattern(self.pattern, self.regex)
        except re.error as e:
            raise ValueError(f"invalid regular expression {self.pattern!r}: {e}") from e
        return self


class RemoveNullsParameters(OperationParameters):
    """Without ``columns`` the rule's field is checked for None or empty string."""

    columns: Optional[List[StrictStr]] = None
    strict_mode: StrictBool = Field(False, alias="strictMode")


class ConvertTypeParameters(OperationParameters):
    target_type: Literal["number", "boolean", "string", "date"] = Field(
        ..., validation_alias=AliasChoices("type", "targetType", "target_type")
    )
    fallback_value: Scalar = Field(None, alias="fallbackValue")
    output_format: Optional[StrictStr] = Field(None, alias="outputFormat")

    @field_validator("target_type", mode="before")
    @classmethod
    def lower_type(cls, v: Any) -> Any:
        return v.lower() if isinstance(v, str) else v

    @property
    def has_fallback(self) -> bool:
        return "fallback_value" in self.model_fields_set


class RenameParameters(OperationParameters):
    new_name: Optional[StrictStr] = Field(None, alias="newName", min_length=1)
    mapping: Optional[Dict[StrictStr, StrictStr]] = None

    @model_validator(mode="after")
    def require_target(self) -> "RenameParameters":
        if self.new_name is None and not self.mapping:
            raise ValueError("either newName or a non-empty mapping is required")
        if self.mapping and any(not target for target in self.mapping.values()):
            raise ValueError("mapping targets must be non-empty")
        return self


class CategoryRange(BaseModel):
    min: Number
    max: Number
    label: StrictStr

    @model_validator(mode="after")
    def check_bounds(self) -> "CategoryRange":
        if self.min > self.max:
            raise ValueError(f"range {self.label!r} has min > max")
        return self


class CategorizeParameters(OperationParameters):
    ranges: List[CategoryRange] = Field(
        ..., validation_alias=AliasChoices("ranges", "categories"), min_length=1
    )
    derived_column: StrictBool = Field(False, alias="derivedColumn")
    default_category: StrictStr = Field("Unknown", alias="defaultCategory")
    invalid_category: StrictStr = Field("Invalid", alias="invalidCategory")


class HandleMissingValuesParameters(OperationParameters):
    method: Literal["mean", "median", "mode"]
    columns: Optional[List[StrictStr]] = None


class NormalizationParameters(OperationParameters):
    min_value: Optional[Number] = Field(
        None, validation_alias=AliasChoices("minValue", "min", "min_value")
    )
    max_value: Optional[Number] = Field(
        None, validation_alias=AliasChoices("maxValue", "max", "max_value")
    )
    auto_range: StrictBool = Field(False, alias="autoRange")
    clip_outliers: StrictBool = Field(False, alias="clipOutliers")

    @model_validator(mode="after")
    def require_range(self) -> "NormalizationParameters":
        if self.auto_range:
            return self
        if self.min_value is None or self.max_value is None:
            raise ValueError("minValue and maxValue are required unless autoRange is set")
        if self.min_value > self.max_value:
            raise ValueError("minValue must not exceed maxValue")
        return self


class CustomRegexReplacementParameters(OperationParameters):
    pattern: StrictStr = Field(..., min_length=1)
    replacement: StrictStr

    @field_validator("pattern")
    @classmethod
    def compile_pattern(cls, v: Optional[str]) -> Optional[str]:
        return _check_regex(v)


class RemoveDuplicatesParameters(OperationParameters):
    """Without ``columns`` every header takes part in the composite key."""

    columns: Optional[List[StrictStr]] = None


class FilterCriterion(BaseModel):
    min: Optional[Number] = None
    max: Optional[Number] = None
    values: Optional[List[Any]] = None
    pattern: Optional[StrictStr] = None

    @field_validator("pattern")
    @classmethod
    def compile_pattern(cls, v: Optional[str]) -> Optional[str]:
        return _check_regex(v)

    @model_validator(mode="after")
    def require_constraint(self) -> "FilterCriterion":
        if self.min is None and self.max is None and self.values is None and self.pattern is None:
            raise ValueError("a criterion needs min, max, values or pattern")
        if self.min is not None and self.max is not None and self.min > self.max:
            raise ValueError("criterion min must not exceed max")
        return self


class FilterParameters(OperationParameters):
    criteria: Dict[StrictStr, FilterCriterion] = Field(
        ..., validation_alias=AliasChoices("criteria", "conditions"), min_length=1
    )


class ConvertDateFormatsParameters(OperationParameters):
    columns: List[StrictStr] = Field(..., min_length=1)
    output_format: StrictStr = Field("%Y-%m-%d", alias="format")
    input_formats: Optional[List[StrictStr]] = Field(None, alias="inputFormats")

    @field_validator("output_format")
    @classmethod
    def strftime_format(cls, v: str) -> str:
        if "%" not in v:
            raise ValueError("format must be a strftime pattern such as %Y-%m-%d")
        return v


class StandardizeCodesParameters(OperationParameters):
    columns: Optional[List[StrictStr]] = None
    valid_pattern: StrictStr = Field(ICD10_VALID_PATTERN, alias="validPattern")
    fix_pattern: StrictStr = Field(ICD10_FIX_PATTERN, alias="fixPattern")
    fix_replacement: StrictStr = Field(ICD10_FIX_REPLACEMENT, alias="fixReplacement")
    uppercase: StrictBool = True

    @field_validator("valid_pattern", "fix_pattern")
    @classmethod
    def compile_patterns(cls, v: str) -> str:
        return _check_regex(v)


class LogCleaningActionsParameters(OperationParameters):
    message: Optional[StrictStr] = None
    log_format: Literal["text", "json"] = Field("text", alias="logFormat")


PARAMETER_MODELS: Dict[CleaningOperation, Type[OperationParameters]] = {
    CleaningOperation.TRIM: TrimParameters,
    CleaningOperation.REPLACE: ReplaceParameters,
    CleaningOperation.REMOVE_NULLS: RemoveNullsParameters,
    CleaningOperation.CONVERT_TYPE: ConvertTypeParameters,
    CleaningOperation.RENAME: RenameParameters,
    CleaningOperation.CATEGORIZE: CategorizeParameters,
    CleaningOperation.HANDLE_MISSING_VALUES: HandleMissingValuesParameters,
    CleaningOperation.NORMALIZATION: NormalizationParameters,
    CleaningOperation.CUSTOM_REGEX_REPLACEMENT: CustomRegexReplacementParameters,
    CleaningOperation.REMOVE_DUPLICATES: RemoveDuplicatesParameters,
    CleaningOperation.FILTER_OUT_UNWANTED_RECORDS: FilterParameters,
    CleaningOperation.CONVERT_DATE_FORMATS: ConvertDateFormatsParameters,
    CleaningOperation.STANDARDIZE_DIAGNOSIS_CODES: StandardizeCodesParameters,
    CleaningOperation.LOG_CLEANING_ACTIONS: LogCleaningActionsParameters,
}
