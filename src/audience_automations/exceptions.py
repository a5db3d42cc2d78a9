"""Custom exceptions for Audience Automations."""

from __future__ import annotations


class AutomationEngineError(Exception):
    """Base exception for all Audience Automations errors."""


class ValidationError(AutomationEngineError):
    """Exception raised when step configuration or filter input is malformed.

    Carries one message per offending field so callers can report them individually.
    """

    def __init__(self, errors: list[dict[str, str]] | str) -> None:
        if isinstance(errors, str):
            errors = [{"field": "", "message": errors}]
        self.errors = errors
        super().__init__("; ".join(e["message"] for e in errors))


class UnsupportedOperationError(ValidationError):
    """Exception raised when a filter operation is not supported for a field."""

    def __init__(self, field: str, operation: str) -> None:
        self.field = field
        self.operation = operation
        super().__init__(
            [
                {
                    "field": field,
                    "message": f"Filter operation {operation} not supported for field {field}.",
                }
            ]
        )


class StepConfigurationError(AutomationEngineError):
    """Exception raised when a runner meets a step whose configuration is unusable.

    Configuration is validated at write time, so this indicates corrupted data.
    """


class NotFoundError(AutomationEngineError):
    """Exception raised when a referenced automation, step or contact does not exist."""
