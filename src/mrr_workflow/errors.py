# Module: src/mrr_workflow/errors.py
# Description: Typed error taxonomy shared by the API client and the workflow layers.

from dataclasses import dataclass
from typing import List, Optional


@dataclass
class FieldError:
    """A single validation problem, optionally tied to a form row (1-based)."""
    field: str
    message: str
    row: Optional[int] = None

    def __str__(self) -> str:
        if self.row is not None:
            return f"Row {self.row}: {self.message}"
        return self.message


class WorkflowError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class ValidationError(WorkflowError):
    """Input rejected, either locally before any request or by the server (400/422)."""

    def __init__(self, message: str, errors: Optional[List[FieldError]] = None, status_code: Optional[int] = None):
        super().__init__(message, status_code=status_code)
        self.errors: List[FieldError] = list(errors or [])

    def __str__(self) -> str:
        if not self.errors:
            return self.message
        return f"{self.message}: " + "; ".join(str(e) for e in self.errors)


class NotFoundError(WorkflowError):
    pass


class ConflictError(WorkflowError):
    pass


class InvalidTransitionError(ConflictError):
    """The requested action is not admissible from the MRR's current status."""
    pass


class PermissionDeniedError(WorkflowError):
    pass


class TransportError(WorkflowError):
    """Network failure, timeout, unreadable body or a 5xx response."""
    pass
