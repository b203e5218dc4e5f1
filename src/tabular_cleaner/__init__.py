"""
Tabular Cleaner

A rule-based cleaning engine for uploaded tabular data:
- Pydantic models for datasets, rules and typed operation parameters
- Ordered rule execution with per-rule failure isolation
- Polars-backed statistics and interchange, Pandera contracts
- OpenTelemetry tracing and structlog logging
- DuckDB storage for datasets
"""

__version__ = "0.1.0"

from tabular_cleaner.dataset import Dataset, DatasetMetadata
from tabular_cleaner.engine import CleaningEngine, CleaningEvent, CleaningResult, RuleDiagnostic
from tabular_cleaner.rules import CleaningOperation, CleaningRule, RuleConfig, RuleTemplate
from tabular_cleaner.storage import DuckDBStorage
from tabular_cleaner.validation import ParameterValidator

__all__ = [
    "CleaningEngine",
    "CleaningEvent",
    "CleaningOperation",
    "CleaningResult",
    "CleaningRule",
    "Dataset",
    "DatasetMetadata",
    "DuckDBStorage",
    "ParameterValidator",
    "RuleConfig",
    "RuleDiagnostic",
    "RuleTemplate",
]
