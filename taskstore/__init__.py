"""taskstore - file-backed Project -> Plan -> Task hierarchy."""

from .config import StoreSettings
from .exceptions import (
    ConflictError,
    LastPlanError,
    NameValidationError,
    NotFoundError,
    PlanNotFoundError,
    ProjectNotFoundError,
    StorageError,
    StoreError,
    TaskNotFoundError,
    ValidationError,
)
from .models import (
    CURRENT_CONTEXT,
    OperationResult,
    Plan,
    PlanCreationOptions,
    PlanStats,
    Project,
    ProjectCreationOptions,
    ProjectQuery,
    ProjectStats,
    RelatedFile,
    Task,
    TaskInput,
    TaskStatus,
    UpdateMode,
    UseCurrentContext,
)
from .notifications import Notifier, UpdateEvent
from .plans import PlanStore
from .projects import ProjectStore
from .resolver import ProjectResolution, ProjectResolver, ResolutionOptions
from .service import TaskStoreService
from .tasks import TaskStore

__all__ = [
    "CURRENT_CONTEXT",
    "ConflictError",
    "LastPlanError",
    "NameValidationError",
    "NotFoundError",
    "Notifier",
    "OperationResult",
    "Plan",
    "PlanCreationOptions",
    "PlanNotFoundError",
    "PlanStats",
    "PlanStore",
    "Project",
    "ProjectCreationOptions",
    "ProjectNotFoundError",
    "ProjectQuery",
    "ProjectResolution",
    "ProjectResolver",
    "ProjectStats",
    "ProjectStore",
    "RelatedFile",
    "ResolutionOptions",
    "StorageError",
    "StoreError",
    "StoreSettings",
    "Task",
    "TaskInput",
    "TaskNotFoundError",
    "TaskStatus",
    "TaskStore",
    "TaskStoreService",
    "UpdateEvent",
    "UpdateMode",
    "UseCurrentContext",
    "ValidationError",
]
