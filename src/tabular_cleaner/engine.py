"""
Main cleaning engine implementation.
Applies an ordered list of cleaning rules to a dataset, one rule at a time,
isolating every rule's failure from the rest of the pass.
"""

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, List, Literal, Mapping, Optional, Sequence, Union

import structlog
import yaml
from opentelemetry import trace
from pydantic import BaseModel, Field, ValidationError

from tabular_cleaner.contracts import ContractValidator
from tabular_cleaner.dataset import Dataset
from tabular_cleaner.observability import setup_observability
from tabular_cleaner.operations import OPERATIONS, OperationContext
from tabular_cleaner.rules import CleaningRule, DataContract, RuleConfig
from tabular_cleaner.storage import DuckDBStorage
from tabular_cleaner.validation import ParameterValidator, RuleValidationError

tracer = trace.get_tracer(__name__)
logger = structlog.get_logger(__name__)

DiagnosticKind = Literal[
    "validation",
    "unknown_operation",
    "execution",
    "conversion",
    "structural",
    "outlier",
    "contract",
]


class RuleDiagnostic(BaseModel):
    """Something the caller should know about one rule of a pass."""

    rule_id: str
    rule_name: str
    operation: str
    kind: DiagnosticKind
    message: str


class CleaningEvent(BaseModel):
    """Emitted to the observer for every rule handled and every logged action."""

    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    rule_id: str
    operation: str
    status: Literal["applied", "skipped", "failed", "logged"]
    message: str


class CleaningResult(BaseModel):
    """Outcome of a cleaning pass."""

    dataset: Dataset
    diagnostics: List[RuleDiagnostic] = Field(default_factory=list)
    events: List[CleaningEvent] = Field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.diagnostics


Observer = Callable[[CleaningEvent], None]
RuleInput = Union[CleaningRule, Mapping[str, Any]]


def render_action(event_time: datetime, message: str, log_format: str) -> str:
    if log_format == "json":
        return json.dumps({"timestamp": event_time.isoformat(), "action": message})
    return f"[{event_time.isoformat()}] {message}"


class _Pass:
    """Diagnostics and events gathered during one run."""

    def __init__(self, observer: Optional[Observer]):
        self.observer = observer
        self.diagnostics: List[RuleDiagnostic] = []
        self.events: List[CleaningEvent] = []

    def diagnose(self, rule: CleaningRule, kind: str, message: str) -> None:
        self.diagnostics.append(
            RuleDiagnostic(
                rule_id=rule.id,
                rule_name=rule.label,
                operation=rule.operation,
                kind=kind,
                message=message,
            )
        )

    def emit(self, rule: CleaningRule, status: str, message: str) -> CleaningEvent:
        event = CleaningEvent(
            rule_id=rule.id, operation=rule.operation, status=status, message=message
        )
        self.events.append(event)
        if self.observer is not None:
            try:
                self.observer(event)
            except Exception as exc:  # noqa: BLE001
                logger.warning("observer_failed", rule_id=rule.id, error=str(exc))
        return event


class CleaningEngine:
    """
    Rule executor for tabular datasets.

    Features:
    - Ordered, per-rule isolated execution of cleaning rules
    - Typed parameter validation before each rule runs
    - Injected observer for per-rule events
    - Optional Pandera contracts on input and output
    - YAML rule configuration and DuckDB storage integration
    """

    def __init__(
        self,
        config: Optional[Union[str, Path, RuleConfig]] = None,
        observer: Optional[Observer] = None,
        validator: Optional[ParameterValidator] = None,
        storage: Optional[DuckDBStorage] = None,
        enable_observability: bool = True,
    ):
        """
        Initialize the cleaning engine.

        Args:
            config: Path to YAML config file or RuleConfig object
            observer: Callback receiving a CleaningEvent per rule handled
            validator: Parameter validator (a default one is created if omitted)
            storage: Optional DuckDBStorage instance
            enable_observability: Whether to enable OpenTelemetry tracing
        """
        self.config: Optional[RuleConfig] = None
        self.observer = observer
        self.validator = validator or ParameterValidator()
        self.contracts = ContractValidator()
        self.storage = storage

        if config:
            self.load_config(config)

        if enable_observability and self.config and self.config.observability.get("enabled", True):
            service_name = self.config.observability.get("service_name", "tabular-cleaner")
            console_export = self.config.observability.get("console_export", False)
            setup_observability(service_name=service_name, console_export=console_export)

    def load_config(self, config: Union[str, Path, RuleConfig]) -> None:
        """
        Load cleaning configuration.

        Args:
            config: Path to YAML file or RuleConfig object
        """
        with tracer.start_as_current_span("engine.load_config"):
            if isinstance(config, RuleConfig):
                self.config = config
            else:
                with open(Path(config), "r") as f:
                    config_dict = yaml.safe_load(f)
                self.config = RuleConfig(**config_dict)

    def apply_rules(self, dataset: Dataset, rules: Sequence[RuleInput]) -> Dataset:
        """Apply rules in order and return the cleaned dataset."""
        return self.run(dataset, rules, validate_input=False, validate_output=False).dataset

    def run(
        self,
        dataset: Dataset,
        rules: Optional[Sequence[RuleInput]] = None,
        validate_input: bool = True,
        validate_output: bool = True,
    ) -> CleaningResult:
        """
        Apply cleaning rules to a dataset.

        Disabled rules are dropped and the rest run in list order. A rule that
        is unknown, has invalid parameters or raises is skipped and reported;
        the dataset stays as it was before that rule.

        Args:
            dataset: Input dataset; it is never modified
            rules: Rules to apply (defaults to the loaded configuration's rules)
            validate_input: Whether to check the configured input contract
            validate_output: Whether to check the configured output contract

        Returns:
            CleaningResult with a new dataset, diagnostics and emitted events

        Raises:
            ValueError: If no rules are given and no configuration is loaded
        """
        if rules is None:
            if not self.config:
                raise ValueError("No rules given and no configuration loaded.")
            rules = self.config.rules

        report = _Pass(self.observer)

        with tracer.start_as_current_span(
            "engine.run",
            attributes={
                "input_rows": len(dataset.rows),
                "input_columns": len(dataset.headers),
                "rules_count": len(rules),
            },
        ) as span:
            if validate_input and self.config and self.config.input_contract:
                self._check_contract(dataset, self.config.input_contract, "input", report)

            current = dataset
            for raw in rules:
                rule = self._coerce_rule(raw, report)
                if rule is None or not rule.enabled:
                    continue
                current = self._apply_rule(current, rule, report)

            if current is dataset:
                current = dataset.with_rows(dataset.copy_rows())

            if validate_output and self.config and self.config.output_contract:
                self._check_contract(current, self.config.output_contract, "output", report)

            span.set_attribute("output_rows", len(current.rows))
            span.set_attribute("output_columns", len(current.headers))
            span.set_attribute("diagnostics", len(report.diagnostics))

        logger.info(
            "cleaning_pass_completed",
            source=dataset.metadata.source_name,
            input_rows=len(dataset.rows),
            output_rows=len(current.rows),
            diagnostics=len(report.diagnostics),
        )
        return CleaningResult(dataset=current, diagnostics=report.diagnostics, events=report.events)

    def _coerce_rule(self, raw: RuleInput, report: _Pass) -> Optional[CleaningRule]:
        """Copy a rule (or parse a mapping) so the caller's list is never shared."""
        if isinstance(raw, CleaningRule):
            return raw.model_copy(deep=True)
        if isinstance(raw, Mapping) and not raw.get("enabled", True):
            return None
        try:
            return CleaningRule.model_validate(dict(raw))
        except (ValidationError, TypeError, ValueError) as exc:
            placeholder = CleaningRule(
                id=str(raw.get("id", "")) if isinstance(raw, Mapping) else "",
                name=str(raw.get("name", "")) if isinstance(raw, Mapping) else "",
                operation=str(raw.get("operation", "")) if isinstance(raw, Mapping) else "",
            )
            report.diagnose(placeholder, "validation", f"Malformed rule: {exc}")
            logger.warning("malformed_rule", rule_id=placeholder.id, error=str(exc))
            return None

    def _apply_rule(self, dataset: Dataset, rule: CleaningRule, report: _Pass) -> Dataset:
        """
        Apply a single cleaning rule.

        Args:
            dataset: Dataset produced by the previous rule
            rule: CleaningRule to apply
            report: Collector for diagnostics and events

        Returns:
            The rule's output, or the unchanged input if the rule was skipped or failed
        """
        with tracer.start_as_current_span(
            "engine.apply_rule",
            attributes={"rule_name": rule.label, "operation": rule.operation},
        ) as span:
            log = logger.bind(rule_id=rule.id, operation=rule.operation, field=rule.field)

            operation = rule.kind
            if operation is None:
                message = f"Unknown operation: {rule.operation}"
                log.warning("unknown_operation")
                report.diagnose(rule, "unknown_operation", message)
                report.emit(rule, "skipped", message)
                span.set_attribute("status", "skipped")
                return dataset

            try:
                params = self.validator.parse(rule)
            except RuleValidationError as exc:
                log.warning("invalid_rule_parameters", problems=exc.problems)
                report.diagnose(rule, "validation", str(exc))
                report.emit(rule, "skipped", str(exc))
                span.set_attribute("status", "skipped")
                return dataset

            ctx = OperationContext(rule_id=rule.id, operation=rule.operation)
            working = dataset.with_rows(dataset.copy_rows())
            try:
                result = OPERATIONS[operation](working, rule.field, params, ctx)
            except Exception as exc:  # noqa: BLE001
                message = f"Error applying rule {rule.label}: {exc}"
                log.warning("rule_failed", error=str(exc))
                report.diagnose(rule, "execution", message)
                report.emit(rule, "failed", message)
                span.set_attribute("status", "failed")
                return dataset

            for kind, message in ctx.issues:
                report.diagnose(rule, kind, message)
            for message, log_format in ctx.actions:
                now = datetime.now(timezone.utc)
                rendered = render_action(now, message, log_format)
                log.info("cleaning_action", action=rendered)
                report.emit(rule, "logged", rendered)

            report.emit(
                rule,
                "applied",
                f"{rule.label}: {len(dataset.rows)} -> {len(result.rows)} rows",
            )
            span.set_attribute("status", "applied")
            log.debug("rule_applied", rows_before=len(dataset.rows), rows_after=len(result.rows))
            return result

    def _check_contract(
        self, dataset: Dataset, contract: DataContract, name: str, report: _Pass
    ) -> None:
        problems = self.contracts.check(dataset, contract, contract_name=name)
        if problems:
            placeholder = CleaningRule(id=f"{name}_contract", name=f"{name} contract", operation="contract")
            for problem in problems:
                report.diagnose(placeholder, "contract", problem)

    def clean_from_storage(
        self,
        table_name: str,
        output_table: Optional[str] = None,
        rules: Optional[Sequence[RuleInput]] = None,
    ) -> CleaningResult:
        """
        Clean a dataset stored in DuckDB.

        Args:
            table_name: Source table name
            output_table: Optional table to write the cleaned dataset to
            rules: Rules to apply (defaults to the loaded configuration's rules)

        Returns:
            CleaningResult of the pass
        """
        if not self.storage:
            raise ValueError("Storage not configured. Provide DuckDBStorage instance.")

        with tracer.start_as_current_span("engine.clean_from_storage"):
            dataset = self.storage.load_dataset(table_name)
            result = self.run(dataset, rules)
            if output_table:
                self.storage.save_dataset(result.dataset, output_table)
            return result

    def infer_contracts(self, dataset: Dataset) -> None:
        """
        Infer and set input/output contracts from a sample dataset.

        Args:
            dataset: Sample dataset to infer contracts from
        """
        if not self.config:
            raise ValueError("Configuration not loaded.")

        with tracer.start_as_current_span("engine.infer_contracts"):
            inferred = self.contracts.infer_contract(dataset)
            if not self.config.input_contract:
                self.config.input_contract = inferred
            if not self.config.output_contract:
                self.config.output_contract = inferred

    def save_config(self, path: Union[str, Path]) -> None:
        """
        Save current configuration to YAML file.

        Args:
            path: Output file path
        """
        if not self.config:
            raise ValueError("Configuration not loaded.")

        with tracer.start_as_current_span("engine.save_config"):
            config_dict = self.config.model_dump(mode="json")
            with open(path, "w") as f:
                yaml.safe_dump(config_dict, f, default_flow_style=False, sort_keys=False)
