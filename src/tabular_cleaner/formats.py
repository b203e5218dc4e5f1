"""
Import and export of datasets as text files.

The "tde" export is plain JSON wrapped in a version envelope, not a real
Tableau extract.
"""

import csv
import io
import json
from pathlib import Path
from typing import Callable, Dict, List, NamedTuple, Union

import structlog
from opentelemetry import trace

from tabular_cleaner.dataset import Dataset, Row

tracer = trace.get_tracer(__name__)
logger = structlog.get_logger(__name__)


class EmptyDatasetError(ValueError):
    """Raised when an uploaded file holds no header row or no data rows."""

    def __init__(self, source_name: str = ""):
        self.source_name = source_name
        super().__init__("No data found in file")


def _unique_headers(raw: List[str]) -> List[str]:
    headers: List[str] = []
    for index, name in enumerate(raw):
        base = name.strip() or f"column_{index + 1}"
        candidate, suffix = base, 2
        while candidate in headers:
            candidate = f"{base}_{suffix}"
            suffix += 1
        headers.append(candidate)
    return headers


def parse_csv(text: str, source_name: str = "") -> Dataset:
    """
    Parse CSV text into a dataset of string cells.

    The first non-empty line holds the headers, every following non-blank line
    is a row. Missing trailing fields become empty strings; surplus fields
    are dropped.

    Raises:
        EmptyDatasetError: If there is no header row or no data row
    """
    with tracer.start_as_current_span("formats.parse_csv", attributes={"source": source_name}):
        records = [
            record
            for record in csv.reader(io.StringIO(text))
            if any(cell.strip() for cell in record)
        ]
        if len(records) < 2:
            raise EmptyDatasetError(source_name)

        headers = _unique_headers(records[0])
        rows: List[Row] = []
        for record in records[1:]:
            padded = record + [""] * (len(headers) - len(record))
            rows.append(dict(zip(headers, padded)))

        logger.info("dataset_parsed", source=source_name, rows=len(rows), columns=len(headers))
        return Dataset.create(headers, rows, source_name=source_name)


def read_csv(path: Union[str, Path], encoding: str = "utf-8-sig") -> Dataset:
    """Read a CSV file from disk."""
    file_path = Path(path)
    return parse_csv(file_path.read_text(encoding=encoding), source_name=file_path.name)


def to_csv(dataset: Dataset) -> str:
    """Header row plus one line per row."""
    if not dataset.headers:
        return ""
    return dataset.to_polars().write_csv()


def to_json(dataset: Dataset) -> str:
    """Pretty-printed headers, rows and metadata."""
    return dataset.model_dump_json(by_alias=True, indent=2)


def to_tableau_json(dataset: Dataset) -> str:
    """The dataset JSON wrapped in a ``{version, dataset}`` envelope."""
    payload = json.loads(dataset.model_dump_json(by_alias=True))
    return json.dumps({"version": "1.0", "dataset": payload}, indent=2)


class ExportFormat(NamedTuple):
    render: Callable[[Dataset], str]
    extension: str
    media_type: str


EXPORT_FORMATS: Dict[str, ExportFormat] = {
    "csv": ExportFormat(to_csv, ".csv", "text/csv;charset=utf-8"),
    "json": ExportFormat(to_json, ".json", "application/json"),
    "tde": ExportFormat(to_tableau_json, ".tde", "application/vnd.tableau.extract"),
}


def export_dataset(dataset: Dataset, fmt: str) -> str:
    """Render a dataset in one of the EXPORT_FORMATS."""
    try:
        export_format = EXPORT_FORMATS[fmt]
    except KeyError:
        raise ValueError(f"Unknown export format: {fmt}") from None
    with tracer.start_as_current_span("formats.export", attributes={"format": fmt}):
        return export_format.render(dataset)
