"""
Data contracts: Pandera schemas checked against a dataset's Polars form.
"""

from typing import Any, Dict, List, Optional

import pandera.polars as pa
import polars as pl
import structlog
from opentelemetry import trace

from tabular_cleaner.dataset import Dataset
from tabular_cleaner.rules import DataContract

tracer = trace.get_tracer(__name__)
logger = structlog.get_logger(__name__)

# Map contract dtype names to Polars types
DTYPES = {
    "int": pl.Int64,
    "Int64": pl.Int64,
    "float": pl.Float64,
    "Float64": pl.Float64,
    "str": pl.Utf8,
    "string": pl.Utf8,
    "Utf8": pl.Utf8,
    "String": pl.Utf8,
    "bool": pl.Boolean,
    "boolean": pl.Boolean,
    "Boolean": pl.Boolean,
}

NUMERIC_DTYPES = (pl.Int64, pl.Float64)


def _dtype_name(dtype: Any) -> str:
    if dtype == pl.Int64:
        return "int"
    if dtype == pl.Float64:
        return "float"
    if dtype == pl.Boolean:
        return "bool"
    return "str"


class ContractValidator:
    """
    Turns DataContracts into Pandera schemas and reports how a dataset breaks them.
    Violations are returned as messages, never raised.
    """

    @staticmethod
    def create_schema_from_contract(contract: DataContract) -> pa.DataFrameSchema:
        """
        Build the Pandera schema for a contract.

        Raises:
            ValueError: If a column names a dtype outside DTYPES
        """
        columns: Dict[str, pa.Column] = {}

        for col_name, col_spec in contract.columns.items():
            dtype_name = col_spec.get("dtype", "str")
            dtype = DTYPES.get(dtype_name)
            if dtype is None:
                raise ValueError(f"Unsupported contract dtype for {col_name}: {dtype_name}")
            nullable = col_spec.get("nullable", True)
            checks = []

            if "min" in col_spec:
                checks.append(pa.Check.greater_than_or_equal_to(col_spec["min"]))
            if "max" in col_spec:
                checks.append(pa.Check.less_than_or_equal_to(col_spec["max"]))
            if "regex" in col_spec:
                checks.append(pa.Check.str_matches(col_spec["regex"]))
            if "isin" in col_spec:
                checks.append(pa.Check.isin(col_spec["isin"]))

            columns[col_name] = pa.Column(dtype, nullable=nullable, checks=checks)

        return pa.DataFrameSchema(columns=columns, strict=contract.strict, coerce=contract.coerce)

    def check(
        self, dataset: Dataset, contract: Optional[DataContract], contract_name: str = "data"
    ) -> List[str]:
        """
        Check a dataset against a contract.

        Args:
            dataset: Dataset to check
            contract: DataContract to check against
            contract_name: "input", "output" or another label for spans and logs

        Returns:
            Violations found, empty when the dataset satisfies the contract
        """
        if contract is None:
            return []

        with tracer.start_as_current_span(
            "schema.validate",
            attributes={
                "contract": contract_name,
                "rows": len(dataset.rows),
                "columns": len(dataset.headers),
            },
        ):
            try:
                schema = self.create_schema_from_contract(contract)
            except ValueError as e:
                return [str(e)]

            try:
                schema.validate(dataset.to_polars(), lazy=True)
            except pa.errors.SchemaErrors as e:
                problems = [str(err) for err in getattr(e, "schema_errors", [])] or [str(e)]
            except pa.errors.SchemaError as e:
                problems = [str(e)]
            else:
                return []

        logger.warning("contract_violated", contract=contract_name, violations=len(problems))
        return problems

    @staticmethod
    def infer_contract(dataset: Dataset, strict: bool = True) -> DataContract:
        """
        Describe a sample dataset as a contract: dtype and nullability per
        column, plus the observed range of numeric columns.
        """
        df = dataset.to_polars()
        columns: Dict[str, Dict[str, Any]] = {}

        for col in df.columns:
            dtype = df[col].dtype
            col_spec: Dict[str, Any] = {
                "dtype": _dtype_name(dtype),
                "nullable": df[col].null_count() > 0,
            }

            if dtype in NUMERIC_DTYPES and df[col].null_count() < len(df):
                col_spec["min"] = df[col].min()
                col_spec["max"] = df[col].max()

            columns[col] = col_spec

        return DataContract(columns=columns, strict=strict, coerce=False)
