"""
Dataset model - the in-memory table the cleaning engine operates on.
Rows are plain mappings of column name to scalar; Polars is used only at the
edges (contracts, CSV writing, storage).
"""

import copy
import math
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

import polars as pl
from pydantic import BaseModel, ConfigDict, Field, model_validator

Scalar = Union[bool, int, float, str, None]
Row = Dict[str, Scalar]


def is_null(value: Any) -> bool:
    """Return True for None and float NaN."""
    return value is None or (isinstance(value, float) and math.isnan(value))


def format_scalar(value: Any) -> str:
    """Render a scalar as text the way exports and composite keys expect."""
    if is_null(value):
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class DatasetMetadata(BaseModel):
    """Snapshot of where a dataset came from and how big it was."""

    model_config = ConfigDict(populate_by_name=True)

    source_name: str = Field("", alias="sourceName")
    row_count: int = Field(0, alias="rowCount")
    column_count: int = Field(0, alias="columnCount")
    loaded_at: datetime = Field(
        default_factory=lambda: datetime.now(timezone.utc), alias="loadedAt"
    )


class Dataset(BaseModel):
    """Headers, rows and metadata of one uploaded table."""

    model_config = ConfigDict(populate_by_name=True)

    headers: List[str] = Field(default_factory=list)
    rows: List[Row] = Field(default_factory=list)
    metadata: DatasetMetadata = Field(default_factory=DatasetMetadata)

    @model_validator(mode="after")
    def check_shape(self) -> "Dataset":
        """Headers must be unique and every row key must be a header."""
        if len(set(self.headers)) != len(self.headers):
            duplicates = sorted({h for h in self.headers if self.headers.count(h) > 1})
            raise ValueError(f"Duplicate headers: {duplicates}")

        known = set(self.headers)
        for index, row in enumerate(self.rows):
            unknown = set(row) - known
            if unknown:
                raise ValueError(f"Row {index} has columns not in headers: {sorted(unknown)}")
        return self

    @classmethod
    def create(
        cls,
        headers: List[str],
        rows: List[Row],
        source_name: str = "",
    ) -> "Dataset":
        """Build a dataset with metadata counts taken from the given sequences."""
        return cls(
            headers=list(headers),
            rows=rows,
            metadata=DatasetMetadata(
                source_name=source_name,
                row_count=len(rows),
                column_count=len(headers),
            ),
        )

    def with_rows(self, rows: List[Row], headers: Optional[List[str]] = None) -> "Dataset":
        """Return a new dataset with replaced rows (and headers) and refreshed counts."""
        new_headers = list(self.headers if headers is None else headers)
        metadata = self.metadata.model_copy(
            update={"row_count": len(rows), "column_count": len(new_headers)}
        )
        return Dataset(headers=new_headers, rows=rows, metadata=metadata)

    def copy_rows(self) -> List[Row]:
        return copy.deepcopy(self.rows)

    def column_values(self, column: str) -> List[Scalar]:
        return [row.get(column) for row in self.rows]

    def to_polars(self) -> pl.DataFrame:
        """
        Convert to a Polars DataFrame with one homogeneous dtype per column.

        Columns mixing incompatible kinds are rendered as strings.
        """
        series = []
        for header in self.headers:
            values = [None if is_null(v) else v for v in self.column_values(header)]
            present = [v for v in values if v is not None]

            if present and all(isinstance(v, bool) for v in present):
                series.append(pl.Series(header, values, dtype=pl.Boolean))
            elif present and all(
                isinstance(v, int) and not isinstance(v, bool) for v in present
            ):
                series.append(pl.Series(header, values, dtype=pl.Int64))
            elif present and all(
                isinstance(v, (int, float)) and not isinstance(v, bool) for v in present
            ):
                floats = [None if v is None else float(v) for v in values]
                series.append(pl.Series(header, floats, dtype=pl.Float64))
            else:
                texts = [None if v is None else format_scalar(v) for v in values]
                series.append(pl.Series(header, texts, dtype=pl.Utf8))

        return pl.DataFrame(series)

    @classmethod
    def from_polars(cls, df: pl.DataFrame, source_name: str = "") -> "Dataset":
        rows: List[Row] = []
        for record in df.to_dicts():
            rows.append({key: _to_scalar(value) for key, value in record.items()})
        return cls.create(df.columns, rows, source_name=source_name)


def _to_scalar(value: Any) -> Scalar:
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, datetime):
        return value.isoformat()
    if hasattr(value, "isoformat"):
        return value.isoformat()
    return str(value)
