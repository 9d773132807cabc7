"""Exception hierarchy for taskstore.

Store internals raise these; the public store operations catch them at the
operation boundary and turn them into :class:`~taskstore.models.OperationResult`
values, so callers only ever see ``success``/``error`` results.
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from .models import OperationResult
from .store_logging import log_error_with_context

logger = logging.getLogger("taskstore.errors")


class StoreError(Exception):
    """Base exception for all taskstore errors."""

    kind = "io"


class ValidationError(StoreError):
    """Input failed validation: bad field values, unknown fields, bad references."""

    kind = "validation"


class NameValidationError(ValidationError):
    """Raised when a project, plan or task name is illegal.

    Attributes:
        errors: Individual validation messages.
        sanitized_name: The sanitized form of the rejected name, if any.
    """

    def __init__(self, message: str, errors: Optional[List[str]] = None, sanitized_name: Optional[str] = None) -> None:
        super().__init__(message)
        self.errors = list(errors or [])
        self.sanitized_name = sanitized_name


class NotFoundError(StoreError):
    """An identifier does not resolve to an entity."""

    kind = "not_found"


class ProjectNotFoundError(NotFoundError):
    """Raised when a project id or name cannot be resolved."""

    def __init__(self, message: str, suggestions: Optional[List[str]] = None) -> None:
        super().__init__(message)
        self.suggestions = list(suggestions or [])


class PlanNotFoundError(NotFoundError):
    """Raised when a plan does not exist in the given project."""


class TaskNotFoundError(NotFoundError):
    """Raised when a task does not exist in the given plan."""


class ConflictError(StoreError):
    """Duplicate names, protected entities and other state conflicts."""

    kind = "conflict"


class LastPlanError(ConflictError):
    """Raised when deleting the only plan of a project."""


class StorageError(StoreError):
    """Reading or writing an index or data file failed."""

    kind = "io"


def error_result(operation: str, error: Exception, **context: Any) -> OperationResult:
    """Convert an exception caught at an operation boundary into a result.

    Expected business conditions are logged as warnings; storage failures
    and unexpected exceptions are logged with full context.
    """
    if isinstance(error, StoreError) and error.kind != "io":
        logger.warning(f"{operation} rejected: {error}")
    else:
        log_error_with_context(error, {"operation": operation, **context})

    ids = {key: context[key] for key in ("project_id", "plan_id") if isinstance(context.get(key), str)}
    return OperationResult.from_error(error, operation, **ids)
