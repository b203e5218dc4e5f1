"""
Parameter validation for cleaning rules.
"""

from typing import List

from pydantic import ValidationError

from tabular_cleaner.parameters import PARAMETER_MODELS, OperationParameters
from tabular_cleaner.rules import CleaningRule


class RuleValidationError(ValueError):
    """Raised when a rule's parameters do not fit its operation."""

    def __init__(self, rule: CleaningRule, problems: List[str]):
        self.rule = rule
        self.problems = problems
        super().__init__(f"Invalid parameters for rule {rule.label}: {'; '.join(problems)}")


def _describe(error: ValidationError) -> List[str]:
    problems = []
    for item in error.errors():
        location = ".".join(str(part) for part in item["loc"])
        message = item["msg"]
        problems.append(f"{location}: {message}" if location else message)
    return problems


class ParameterValidator:
    """
    Checks rule parameters against the typed model of the rule's operation.

    The validator holds no state; the same instance can be shared freely.
    """

    def parse(self, rule: CleaningRule) -> OperationParameters:
        """
        Parse a rule's parameters into their typed model.

        Args:
            rule: Rule to check

        Returns:
            Typed parameters for the rule's operation

        Raises:
            RuleValidationError: If the operation is unknown or the parameters are malformed
        """
        operation = rule.kind
        if operation is None:
            raise RuleValidationError(rule, [f"unknown operation {rule.operation!r}"])

        model = PARAMETER_MODELS[operation]
        try:
            return model.model_validate(rule.parameters or {})
        except ValidationError as e:
            raise RuleValidationError(rule, _describe(e)) from e

    def explain(self, rule: CleaningRule) -> List[str]:
        """Return the problems with a rule's parameters, empty when it is valid."""
        try:
            self.parse(rule)
        except RuleValidationError as e:
            return e.problems
        return []

    def validate(self, rule: CleaningRule) -> bool:
        return not self.explain(rule)
