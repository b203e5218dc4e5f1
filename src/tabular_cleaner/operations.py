"""
Operations module - implements all cleaning operations over dataset rows.
Each operation is a pure function for testability and composability: it gets
a dataset, the rule's target field, typed parameters and an OperationContext,
and returns a new dataset without touching its input.
"""

import re
from datetime import datetime, time
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

import polars as pl
import structlog
from opentelemetry import trace

from tabular_cleaner.dataset import Dataset, Row, Scalar, format_scalar, is_null
from tabular_cleaner.parameters import (
    CategorizeParameters,
    ConvertDateFormatsParameters,
    ConvertTypeParameters,
    CustomRegexReplacementParameters,
    FilterCriterion,
    FilterParameters,
    HandleMissingValuesParameters,
    LogCleaningActionsParameters,
    NormalizationParameters,
    OperationParameters,
    RemoveDuplicatesParameters,
    RemoveNullsParameters,
    RenameParameters,
    ReplaceParameters,
    StandardizeCodesParameters,
    TrimParameters,
    compile_replace_pattern,
)
from tabular_cleaner.rules import CleaningOperation

tracer = trace.get_tracer(__name__)
logger = structlog.get_logger(__name__)

EPSILON = 1e-9
OUTLIER_LOW = -0.5
OUTLIER_HIGH = 1.5

TRUE_STRINGS = frozenset({"true", "yes", "1"})

DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y/%m/%d",
    "%m/%d/%Y",
    "%m-%d-%Y",
    "%d.%m.%Y",
    "%Y-%m-%d %H:%M:%S",
    "%m/%d/%Y %H:%M:%S",
    "%b %d, %Y",
    "%B %d, %Y",
    "%d %b %Y",
    "%d %B %Y",
)

_NUMBER = re.compile(r"[+-]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][+-]?\d+)?")
_INTEGER = re.compile(r"[+-]?\d+")
_TEMPLATE_TOKEN = re.compile(r"\$(\$|&|\d+)")

Number = Union[int, float]


class OperationContext:
    """Collects recoverable issues and logged actions raised while one rule runs."""

    def __init__(self, rule_id: str = "", operation: str = ""):
        self.rule_id = rule_id
        self.operation = operation
        self.issues: List[Tuple[str, str]] = []
        self.actions: List[Tuple[str, str]] = []
        self.log = logger.bind(rule_id=rule_id, operation=operation)

    def warn(self, kind: str, message: str, **fields: Any) -> None:
        self.issues.append((kind, message))
        self.log.warning("operation_issue", kind=kind, detail=message, **fields)

    def record_action(self, message: str, log_format: str = "text") -> None:
        self.actions.append((message, log_format))


def parse_number(value: Any) -> Optional[Number]:
    """
    Strictly parse a cell as a number.

    Numbers pass through, booleans and NaN do not count, and strings must be a
    numeric literal without surrounding whitespace ("30" -> 30, " 5 " -> None).
    """
    if isinstance(value, bool) or value is None:
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return None if is_null(value) else value
    if isinstance(value, str) and _NUMBER.fullmatch(value):
        if _INTEGER.fullmatch(value):
            return int(value)
        return float(value)
    return None


def parse_date(value: Any, formats: Optional[Sequence[str]] = None) -> Optional[datetime]:
    """Parse a string cell as a date, trying the given formats, ISO 8601, then common formats."""
    if not isinstance(value, str) or not value.strip():
        return None
    text = value.strip()

    for fmt in formats or ():
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(text)
    except ValueError:
        pass
    for fmt in DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


def format_date(value: datetime, output_format: Optional[str] = None) -> str:
    if output_format:
        return value.strftime(output_format)
    if value.tzinfo is None and value.time() == time(0, 0):
        return value.date().isoformat()
    return value.isoformat()


def expand_template(template: str) -> Callable[["re.Match[str]"], str]:
    """
    Build a re.sub callback for a replacement written with $-references.

    ``$1`` inserts group 1, ``$&`` the whole match and ``$$`` a dollar sign.
    References to groups the pattern does not have are kept as written.
    """

    def expand(match: "re.Match[str]") -> str:
        def token(ref: "re.Match[str]") -> str:
            name = ref.group(1)
            if name == "$":
                return "$"
            if name == "&":
                return match.group(0)
            index = int(name)
            if index > (match.re.groups or 0):
                return ref.group(0)
            return match.group(index) or ""

        return _TEMPLATE_TOKEN.sub(token, template)

    return expand


def is_blank(value: Any, strict: bool = False) -> bool:
    """None, NaN and empty strings are blank; whitespace-only strings too when strict."""
    if is_null(value):
        return True
    if isinstance(value, str):
        return (value.strip() if strict else value) == ""
    return False


def _has_column(dataset: Dataset, column: str, ctx: OperationContext) -> bool:
    if column in dataset.headers:
        return True
    ctx.warn("structural", f"Column {column!r} not found in dataset", column=column)
    return False


def _map_column(dataset: Dataset, column: str, fn: Callable[[Scalar], Scalar]) -> List[Row]:
    rows = []
    for row in dataset.rows:
        if column in row:
            row = {**row, column: fn(row[column])}
        rows.append(row)
    return rows


def trim(dataset: Dataset, field: str, params: TrimParameters, ctx: OperationContext) -> Dataset:
    """Strip surrounding whitespace from string cells in the field."""
    with tracer.start_as_current_span("operation.trim"):
        if not _has_column(dataset, field, ctx):
            return dataset
        return dataset.with_rows(
            _map_column(dataset, field, lambda v: v.strip() if isinstance(v, str) else v)
        )


def replace(
    dataset: Dataset, field: str, params: ReplaceParameters, ctx: OperationContext
) -> Dataset:
    """
    Replace every occurrence of a pattern in string cells of the field.

    Group references in the replacement are expanded in regex mode only; a
    literal pattern is swapped for the replacement text as written.
    """
    with tracer.start_as_current_span("operation.replace"):
        if not _has_column(dataset, field, ctx):
            return dataset

        regex = compile_replace_pattern(params.pattern, params.regex)
        if regex is None and not params.pattern:
            return dataset
        callback = expand_template(params.replacement)

        def substitute(value: Scalar) -> Scalar:
            if not isinstance(value, str):
                return value
            if regex is not None:
                return regex.sub(callback, value)
            return value.replace(params.pattern, params.replacement)

        return dataset.with_rows(_map_column(dataset, field, substitute))


def remove_nulls(
    dataset: Dataset, field: str, params: RemoveNullsParameters, ctx: OperationContext
) -> Dataset:
    """
    Drop rows holding null-like values.

    With ``columns`` a row is dropped when any listed column is blank,
    otherwise only the rule's field is checked. A row without a key for a
    checked column counts as null; listed columns absent from the headers
    are reported and ignored.
    """
    with tracer.start_as_current_span("operation.remove_nulls"):
        requested = params.columns if params.columns is not None else [field]
        columns = [column for column in requested if _has_column(dataset, column, ctx)]

        rows = [
            row
            for row in dataset.rows
            if not any(is_blank(row.get(column), params.strict_mode) for column in columns)
        ]
        return dataset.with_rows(rows)


def _convert_value(value: Scalar, params: ConvertTypeParameters) -> Tuple[Scalar, bool]:
    """Return the converted value and whether conversion succeeded."""
    target = params.target_type
    if target == "number":
        if isinstance(value, bool):
            return int(value), True
        number = parse_number(value)
        return (value, False) if number is None else (number, True)
    if target == "boolean":
        if isinstance(value, str):
            return value.lower() in TRUE_STRINGS, True
        return bool(value), True
    if target == "string":
        return format_scalar(value), True

    parsed = parse_date(value)
    if parsed is None:
        return value, False
    return format_date(parsed, params.output_format), True


def convert_type(
    dataset: Dataset, field: str, params: ConvertTypeParameters, ctx: OperationContext
) -> Dataset:
    """
    Coerce cells of the field to the target type.

    Blank cells are left alone. A failed conversion keeps the original value,
    or takes ``fallbackValue`` when one was given.
    """
    with tracer.start_as_current_span(
        "operation.convert_type", attributes={"target_type": params.target_type}
    ):
        if not _has_column(dataset, field, ctx):
            return dataset

        failures: List[Scalar] = []

        def convert(value: Scalar) -> Scalar:
            if is_blank(value):
                return value
            converted, ok = _convert_value(value, params)
            if ok:
                return converted
            failures.append(value)
            return params.fallback_value if params.has_fallback else value

        rows = _map_column(dataset, field, convert)
        if failures:
            ctx.warn(
                "conversion",
                f"{len(failures)} value(s) in {field!r} could not be converted to "
                f"{params.target_type}, first: {failures[0]!r}",
                column=field,
            )
        return dataset.with_rows(rows)


def rename(
    dataset: Dataset, field: str, params: RenameParameters, ctx: OperationContext
) -> Dataset:
    """
    Rename columns across headers and rows.

    Columns that are not renamed keep their names; a renamed column whose
    target is already taken gets a ``_merged`` suffix instead.
    """
    with tracer.start_as_current_span("operation.rename"):
        mapping: Dict[str, str] = dict(params.mapping or {})
        if params.new_name is not None:
            mapping[field] = params.new_name

        for old in list(mapping):
            if not _has_column(dataset, old, ctx) or mapping[old] == old:
                del mapping[old]
        if not mapping:
            return dataset

        taken = {header for header in dataset.headers if header not in mapping}
        final: Dict[str, str] = {}
        for header in dataset.headers:
            if header not in mapping:
                continue
            target = mapping[header]
            while target in taken:
                ctx.warn("structural", f"Column conflict: {target!r} already exists", column=header)
                target = f"{target}_merged"
            taken.add(target)
            final[header] = target

        headers = [final.get(header, header) for header in dataset.headers]
        rows = [{final.get(key, key): value for key, value in row.items()} for row in dataset.rows]
        return dataset.with_rows(rows, headers=headers)


def categorize(
    dataset: Dataset, field: str, params: CategorizeParameters, ctx: OperationContext
) -> Dataset:
    """
    Label numeric values with the first range containing them (bounds inclusive).

    Numbers outside every range get ``defaultCategory`` ("Unknown"); values
    that are not numbers get ``invalidCategory`` ("Invalid").
    """
    with tracer.start_as_current_span("operation.categorize"):
        if not _has_column(dataset, field, ctx):
            return dataset

        target = f"{field}_category" if params.derived_column else field
        headers = list(dataset.headers)
        if target not in headers:
            headers.append(target)

        invalid = 0
        rows = []
        for row in dataset.rows:
            number = parse_number(row.get(field))
            if number is None:
                invalid += 1
                label = params.invalid_category
            else:
                match = next((r for r in params.ranges if r.min <= number <= r.max), None)
                label = match.label if match else params.default_category
            rows.append({**row, target: label})

        if invalid:
            ctx.warn(
                "conversion",
                f"{invalid} non-numeric value(s) in {field!r} labelled {params.invalid_category!r}",
                column=field,
            )
        return dataset.with_rows(rows, headers=headers)


def _numbers(values: Sequence[Scalar]) -> List[Number]:
    return [n for n in (parse_number(v) for v in values) if n is not None]


def _mode(values: Sequence[Scalar]) -> Scalar:
    counts: Dict[str, int] = {}
    first_seen: Dict[str, Scalar] = {}
    for value in values:
        key = format_scalar(value)
        counts[key] = counts.get(key, 0) + 1
        first_seen.setdefault(key, value)
    # max() keeps the first key reaching the top count
    return first_seen[max(counts, key=counts.__getitem__)]


def fill_value(values: Sequence[Scalar], method: str) -> Optional[Scalar]:
    """
    Compute the replacement for missing cells from a column's present values.

    mean and median use numeric values only; an even number of values gives
    the average of the two middle ones as median. mode compares values by
    their text form and the first-seen value wins ties. Returns None when the
    column has nothing usable.
    """
    present = [v for v in values if not is_blank(v)]
    if method == "mode":
        return _mode(present) if present else None

    numbers = _numbers(present)
    if not numbers:
        return None
    series = pl.Series([float(n) for n in numbers], dtype=pl.Float64)
    return series.mean() if method == "mean" else series.median()


def handle_missing_values(
    dataset: Dataset, field: str, params: HandleMissingValuesParameters, ctx: OperationContext
) -> Dataset:
    """Fill None and empty cells with the column's mean, median or mode."""
    with tracer.start_as_current_span(
        "operation.handle_missing_values", attributes={"method": params.method}
    ):
        rows = dataset.rows
        for column in params.columns or [field]:
            if not _has_column(dataset, column, ctx):
                continue

            replacement = fill_value([row.get(column) for row in rows], params.method)
            if replacement is None:
                ctx.warn(
                    "conversion",
                    f"No usable values in {column!r} to compute the {params.method}",
                    column=column,
                )
                continue

            rows = [
                {**row, column: replacement} if is_blank(row.get(column)) else row
                for row in rows
            ]
        return dataset.with_rows(list(rows))


def normalization(
    dataset: Dataset, field: str, params: NormalizationParameters, ctx: OperationContext
) -> Dataset:
    """
    Min-max scale numeric values of the field.

    value -> (value - min) / (max - min + 1e-9), rounded to 4 decimals.
    Results outside [-0.5, 1.5] are reported as likely outliers before
    optional clipping to [0, 1].
    """
    with tracer.start_as_current_span("operation.normalization"):
        if not _has_column(dataset, field, ctx):
            return dataset

        if params.auto_range:
            numbers = _numbers(dataset.column_values(field))
            if not numbers:
                ctx.warn("conversion", f"No numeric values in {field!r} to normalize", column=field)
                return dataset
            series = pl.Series([float(n) for n in numbers], dtype=pl.Float64)
            low, high = series.min(), series.max()
        else:
            low, high = params.min_value, params.max_value

        span = high - low + EPSILON
        outliers: List[Number] = []
        skipped = 0

        def scale(value: Scalar) -> Scalar:
            nonlocal skipped
            number = parse_number(value)
            if number is None:
                if not is_blank(value):
                    skipped += 1
                return value
            normalized = (number - low) / span
            if normalized < OUTLIER_LOW or normalized > OUTLIER_HIGH:
                outliers.append(number)
                ctx.log.warning("normalization_outlier", column=field, value=number)
            if params.clip_outliers:
                normalized = max(0.0, min(1.0, normalized))
            return round(normalized, 4)

        rows = _map_column(dataset, field, scale)
        if outliers:
            ctx.warn(
                "outlier",
                f"{len(outliers)} extreme value(s) in {field!r}, first: {outliers[0]!r}",
                column=field,
            )
        if skipped:
            ctx.warn("conversion", f"{skipped} non-numeric value(s) in {field!r} left as is", column=field)
        return dataset.with_rows(rows)


def custom_regex_replacement(
    dataset: Dataset, field: str, params: CustomRegexReplacementParameters, ctx: OperationContext
) -> Dataset:
    """Apply one regex replacement to every string cell of every row."""
    with tracer.start_as_current_span("operation.custom_regex_replacement"):
        regex = re.compile(params.pattern)
        callback = expand_template(params.replacement)
        rows = [
            {key: regex.sub(callback, value) if isinstance(value, str) else value for key, value in row.items()}
            for row in dataset.rows
        ]
        return dataset.with_rows(rows)


def remove_duplicates(
    dataset: Dataset, field: str, params: RemoveDuplicatesParameters, ctx: OperationContext
) -> Dataset:
    """Keep the first row of every composite key (pipe-joined values of the key columns)."""
    with tracer.start_as_current_span("operation.remove_duplicates"):
        columns = params.columns or list(dataset.headers)
        for column in columns:
            _has_column(dataset, column, ctx)

        seen = set()
        rows = []
        for row in dataset.rows:
            key = "|".join(format_scalar(row.get(column)) for column in columns)
            if key in seen:
                continue
            seen.add(key)
            rows.append(row)
        return dataset.with_rows(rows)


def _satisfies(value: Scalar, criterion: FilterCriterion) -> bool:
    if criterion.min is not None or criterion.max is not None:
        number = parse_number(value)
        if number is None:
            return False
        if criterion.min is not None and number < criterion.min:
            return False
        if criterion.max is not None and number > criterion.max:
            return False
    if criterion.values is not None:
        if format_scalar(value) not in {format_scalar(v) for v in criterion.values}:
            return False
    if criterion.pattern is not None:
        if not re.search(criterion.pattern, format_scalar(value)):
            return False
    return True


def filter_out_unwanted_records(
    dataset: Dataset, field: str, params: FilterParameters, ctx: OperationContext
) -> Dataset:
    """
    Keep only rows meeting every criterion.

    Criteria naming a column absent from the headers are reported and skipped.
    """
    with tracer.start_as_current_span("operation.filter_out_unwanted_records"):
        criteria = {
            column: criterion
            for column, criterion in params.criteria.items()
            if _has_column(dataset, column, ctx)
        }

        rows = [
            row
            for row in dataset.rows
            if all(_satisfies(row.get(column), c) for column, c in criteria.items())
        ]
        return dataset.with_rows(rows)


def convert_date_formats(
    dataset: Dataset, field: str, params: ConvertDateFormatsParameters, ctx: OperationContext
) -> Dataset:
    """Rewrite date cells of the listed columns with the configured strftime format."""
    with tracer.start_as_current_span("operation.convert_date_formats"):
        rows = dataset.rows
        for column in params.columns:
            if not _has_column(dataset, column, ctx):
                continue

            failures: List[Scalar] = []

            def reformat(value: Scalar) -> Scalar:
                if is_blank(value):
                    return value
                parsed = parse_date(value, params.input_formats)
                if parsed is None:
                    failures.append(value)
                    return value
                return parsed.strftime(params.output_format)

            rows = [{**row, column: reformat(row[column])} if column in row else row for row in rows]
            if failures:
                ctx.warn(
                    "conversion",
                    f"{len(failures)} invalid date(s) in {column!r}, first: {failures[0]!r}",
                    column=column,
                )
        return dataset.with_rows(list(rows))


def standardize_diagnosis_codes(
    dataset: Dataset, field: str, params: StandardizeCodesParameters, ctx: OperationContext
) -> Dataset:
    """Normalize code cells, repairing those not matching the valid pattern."""
    with tracer.start_as_current_span("operation.standardize_diagnosis_codes"):
        valid = re.compile(params.valid_pattern)
        fix = re.compile(params.fix_pattern)
        callback = expand_template(params.fix_replacement)

        def standardize(value: Scalar) -> Scalar:
            if not isinstance(value, str):
                return value
            code = value.strip()
            if params.uppercase:
                code = code.upper()
            if not valid.search(code):
                code = fix.sub(callback, code, count=1)
            return code

        rows = dataset.rows
        for column in params.columns or [field]:
            if _has_column(dataset, column, ctx):
                rows = [{**row, column: standardize(row[column])} if column in row else row for row in rows]
        return dataset.with_rows(list(rows))


def log_cleaning_actions(
    dataset: Dataset, field: str, params: LogCleaningActionsParameters, ctx: OperationContext
) -> Dataset:
    """Record a cleaning action; the dataset passes through unchanged."""
    with tracer.start_as_current_span("operation.log_cleaning_actions"):
        message = params.message or (
            f"Dataset {dataset.metadata.source_name or '<unnamed>'} has "
            f"{len(dataset.rows)} rows and {len(dataset.headers)} columns"
        )
        ctx.record_action(message, params.log_format)
        return dataset


OperationFn = Callable[[Dataset, str, OperationParameters, OperationContext], Dataset]

# Operation registry
OPERATIONS: Dict[CleaningOperation, OperationFn] = {
    CleaningOperation.TRIM: trim,
    CleaningOperation.REPLACE: replace,
    CleaningOperation.REMOVE_NULLS: remove_nulls,
    CleaningOperation.CONVERT_TYPE: convert_type,
    CleaningOperation.RENAME: rename,
    CleaningOperation.CATEGORIZE: categorize,
    CleaningOperation.HANDLE_MISSING_VALUES: handle_missing_values,
    CleaningOperation.NORMALIZATION: normalization,
    CleaningOperation.CUSTOM_REGEX_REPLACEMENT: custom_regex_replacement,
    CleaningOperation.REMOVE_DUPLICATES: remove_duplicates,
    CleaningOperation.FILTER_OUT_UNWANTED_RECORDS: filter_out_unwanted_records,
    CleaningOperation.CONVERT_DATE_FORMATS: convert_date_formats,
    CleaningOperation.STANDARDIZE_DIAGNOSIS_CODES: standardize_diagnosis_codes,
    CleaningOperation.LOG_CLEANING_ACTIONS: log_cleaning_actions,
}
