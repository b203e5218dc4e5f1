"""
DuckDB storage layer for persisting uploaded and cleaned datasets.
"""

from pathlib import Path
from typing import List, Optional, Union

import duckdb
from opentelemetry import trace

from tabular_cleaner.dataset import Dataset

tracer = trace.get_tracer(__name__)

_STAGING_VIEW = "__tabular_cleaner_staging"


def quote_identifier(name: str) -> str:
    return '"' + name.replace('"', '""') + '"'


class DuckDBStorage:
    """
    Keeps uploaded and cleaned datasets as DuckDB tables.
    Tables come back as datasets named after the table; SQL results come back
    as datasets named "query".
    """

    def __init__(self, db_path: Optional[Union[str, Path]] = None):
        """
        Args:
            db_path: Database file; omitted means a private in-memory database
        """
        self.db_path = str(db_path) if db_path else ":memory:"
        self.connection: Optional[duckdb.DuckDBPyConnection] = None

    def __enter__(self) -> "DuckDBStorage":
        self.connect()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:  # type: ignore
        self.close()

    def connect(self) -> None:
        """Open the database."""
        with tracer.start_as_current_span("duckdb.connect"):
            self.connection = duckdb.connect(self.db_path)

    def close(self) -> None:
        if self.connection:
            with tracer.start_as_current_span("duckdb.close"):
                self.connection.close()
                self.connection = None

    def _require_connection(self) -> duckdb.DuckDBPyConnection:
        if not self.connection:
            raise RuntimeError("Not connected to database. Call connect() first.")
        return self.connection

    def table_exists(self, table_name: str) -> bool:
        connection = self._require_connection()
        result = connection.execute(
            "SELECT COUNT(*) FROM information_schema.tables WHERE table_name = ?", [table_name]
        ).fetchone()
        return bool(result and result[0] > 0)

    def save_dataset(self, dataset: Dataset, table_name: str, if_exists: str = "replace") -> None:
        """
        Save a dataset to DuckDB.

        Args:
            dataset: Dataset to save
            table_name: Target table, created when missing
            if_exists: Action if table exists ('replace', 'append', 'fail')
        """
        connection = self._require_connection()
        if if_exists not in ("replace", "append", "fail"):
            raise ValueError(f"Unknown if_exists mode: {if_exists}")

        with tracer.start_as_current_span(
            "duckdb.save_dataset", attributes={"table_name": table_name, "rows": len(dataset.rows)}
        ):
            table = quote_identifier(table_name)
            exists = self.table_exists(table_name)
            if exists and if_exists == "fail":
                raise ValueError(f"Table {table_name} already exists")

            # Arrow keeps the transfer columnar
            connection.register(_STAGING_VIEW, dataset.to_polars().to_arrow())
            try:
                if exists and if_exists == "append":
                    connection.execute(f"INSERT INTO {table} SELECT * FROM {_STAGING_VIEW}")
                else:
                    connection.execute(f"DROP TABLE IF EXISTS {table}")
                    connection.execute(f"CREATE TABLE {table} AS SELECT * FROM {_STAGING_VIEW}")
            finally:
                connection.unregister(_STAGING_VIEW)

    def load_dataset(self, table_name: str, limit: Optional[int] = None) -> Dataset:
        """
        Load a table as a dataset.

        Args:
            table_name: Stored table
            limit: Optional row limit

        Returns:
            Dataset named after the table
        """
        connection = self._require_connection()

        with tracer.start_as_current_span(
            "duckdb.load_dataset", attributes={"table_name": table_name}
        ):
            query = f"SELECT * FROM {quote_identifier(table_name)}"
            if limit:
                query += f" LIMIT {int(limit)}"
            return Dataset.from_polars(connection.execute(query).pl(), source_name=table_name)

    def query(self, sql: str) -> Dataset:
        """
        Run a query and return its result as a dataset.

        Args:
            sql: Any SELECT over the stored tables

        Returns:
            Query results as a Dataset
        """
        connection = self._require_connection()

        with tracer.start_as_current_span("duckdb.query"):
            return Dataset.from_polars(connection.execute(sql).pl(), source_name="query")

    def execute(self, sql: str) -> None:
        """Run a statement whose result is not needed (DDL, UPDATE, DELETE)."""
        connection = self._require_connection()

        with tracer.start_as_current_span("duckdb.execute"):
            connection.execute(sql)

    def list_tables(self) -> List[str]:
        """Names of the stored tables in the main schema, sorted."""
        connection = self._require_connection()

        result = connection.execute(
            "SELECT table_name FROM information_schema.tables "
            "WHERE table_schema = 'main' AND table_type = 'BASE TABLE' ORDER BY table_name"
        ).fetchall()
        return [row[0] for row in result]
