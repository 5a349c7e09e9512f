# errors.py
"""
Error types for flowci.

Two families:
  - fatal errors (DocumentError, GraphError): raised before anything runs,
    the whole run is aborted
  - localized errors (StepExecutionError, TemplateError): caught by the step
    runner and turned into a FAILED step / instance
"""
from __future__ import annotations

from enum import Enum


class ErrorKind(str, Enum):
    NONZERO_EXIT = "nonzero_exit"
    EXECUTOR_UNAVAILABLE = "executor_unavailable"
    UNRESOLVED_TEMPLATE = "unresolved_template"
    CANCELLED = "cancelled"
    INTERNAL = "internal"


class FlowCIError(Exception):
    """Base exception for flowci."""
    pass


class DocumentError(FlowCIError):
    """Malformed or invalid workflow document."""

    def __init__(self, message: str, location: str = "<document>"):
        super().__init__(message)
        self.message = message
        self.location = location

    def __str__(self) -> str:
        return f"{self.location}: {self.message}"


# The loader's public name for it.
ParseError = DocumentError


class GraphError(FlowCIError):
    """The document is valid but cannot be turned into an execution plan."""

    CYCLE = "cycle"
    UNRESOLVED_DEPENDENCY = "unresolved_dependency"
    MATRIX_TOO_LARGE = "matrix_too_large"

    def __init__(self, kind: str, message: str, nodes: list[str] | None = None):
        super().__init__(message)
        self.kind = kind
        self.message = message
        self.nodes = list(nodes or [])

    def __str__(self) -> str:
        return f"{self.kind}: {self.message}"


class StepExecutionError(FlowCIError):
    """A step could not complete successfully."""

    kind = ErrorKind.NONZERO_EXIT

    def __init__(self, step: str, message: str, exit_code: int | None = None):
        super().__init__(message)
        self.step = step
        self.message = message
        self.exit_code = exit_code

    def __str__(self) -> str:
        if self.exit_code is None:
            return f"step '{self.step}': {self.message}"
        return f"step '{self.step}' failed (exit={self.exit_code}): {self.message}"


class ExecutorUnavailable(StepExecutionError):
    """No executor could be found (or started) for the step's reference."""

    kind = ErrorKind.EXECUTOR_UNAVAILABLE


class TemplateError(FlowCIError):
    """A `${{ ... }}` reference could not be resolved."""

    kind = ErrorKind.UNRESOLVED_TEMPLATE

    def __init__(self, expression: str, message: str | None = None):
        self.expression = expression
        self.message = message or f"unresolved template reference '${{{{ {expression} }}}}'"
        super().__init__(self.message)
