"""Data models for the taskstore hierarchy.

This module contains the core data structures persisted by the stores:
projects, plans and tasks, the per-project and per-plan context records,
and the result type every store operation returns. On disk all keys are
camelCase; in Python all attributes are snake_case.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional


def utc_now() -> str:
    """Current UTC time as an ISO-8601 string with a ``Z`` suffix."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Parse a stored timestamp, tolerating a trailing ``Z`` and naive values."""
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class ProjectStatus(str, Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    TEMPLATE = "template"


class PlanStatus(str, Enum):
    ACTIVE = "active"
    COMPLETED = "completed"
    ARCHIVED = "archived"
    TEMPLATE = "template"


class TaskStatus(str, Enum):
    """Task status; ``TaskStatus.COMPLETED == "completed"`` holds."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    BLOCKED = "blocked"


class RelatedFileType(str, Enum):
    TO_MODIFY = "TO_MODIFY"
    REFERENCE = "REFERENCE"
    CREATE = "CREATE"
    DEPENDENCY = "DEPENDENCY"
    OTHER = "OTHER"


class UpdateMode(str, Enum):
    """How :meth:`TaskStore.batch_upsert` merges incoming tasks."""

    APPEND = "append"
    OVERWRITE = "overwrite"
    SELECTIVE = "selective"
    CLEAR_ALL_TASKS = "clearAllTasks"


class UpdateKind(str, Enum):
    PROJECTS = "projects"
    PLANS = "plans"
    TASKS = "tasks"
    BOTH = "both"


class UpdateAction(str, Enum):
    CREATED = "created"
    UPDATED = "updated"
    DELETED = "deleted"


class UseCurrentContext:
    """Marker passed instead of a plan id to read from the current plan."""

    _instance: Optional["UseCurrentContext"] = None

    def __new__(cls) -> "UseCurrentContext":
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __repr__(self) -> str:
        return "CURRENT_CONTEXT"


CURRENT_CONTEXT = UseCurrentContext()

MAX_TASK_NAME_LENGTH = 100
MIN_TASK_DESCRIPTION_LENGTH = 10


def _enum_value(value: Any) -> Any:
    return value.value if isinstance(value, Enum) else value


# ----------------------------------------------------------------------
# Projects
# ----------------------------------------------------------------------


@dataclass(slots=True)
class ProjectConfig:
    """Per-project preferences."""

    template_language: str = "en"
    auto_backup: bool = True
    env_overrides: Dict[str, str] = field(default_factory=dict)
    tool_config: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "templateLanguage": self.template_language,
            "autoBackup": self.auto_backup,
            "envOverrides": dict(self.env_overrides),
            "toolConfig": dict(self.tool_config),
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProjectConfig":
        data = data or {}
        return cls(
            template_language=data.get("templateLanguage", "en"),
            auto_backup=data.get("autoBackup", True),
            env_overrides=dict(data.get("envOverrides") or {}),
            tool_config=dict(data.get("toolConfig") or {}),
        )

    def merged(self, patch: Optional[Dict[str, Any]]) -> "ProjectConfig":
        """Return a copy with camelCase or snake_case keys from ``patch`` applied."""
        current = self.to_dict()
        for key, value in (patch or {}).items():
            current[_CONFIG_KEYS.get(key, key)] = value
        return ProjectConfig.from_dict(current)


_CONFIG_KEYS = {
    "template_language": "templateLanguage",
    "auto_backup": "autoBackup",
    "env_overrides": "envOverrides",
    "tool_config": "toolConfig",
}


@dataclass(slots=True)
class ProjectStats:
    """Task counts rolled up across all plans of a project."""

    total_tasks: int = 0
    completed_tasks: int = 0
    active_tasks: int = 0
    last_activity: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalTasks": self.total_tasks,
            "completedTasks": self.completed_tasks,
            "activeTasks": self.active_tasks,
            "lastActivity": self.last_activity,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "ProjectStats":
        data = data or {}
        return cls(
            total_tasks=data.get("totalTasks", 0),
            completed_tasks=data.get("completedTasks", 0),
            active_tasks=data.get("activeTasks", 0),
            last_activity=data.get("lastActivity") or utc_now(),
        )


@dataclass(slots=True)
class Project:
    """Top-level container for plans."""

    id: str
    name: str
    sanitized_name: str
    description: Optional[str] = None
    status: str = ProjectStatus.ACTIVE.value
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    tags: List[str] = field(default_factory=list)
    config: ProjectConfig = field(default_factory=ProjectConfig)
    stats: ProjectStats = field(default_factory=ProjectStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "sanitizedName": self.sanitized_name,
            "description": self.description,
            "status": _enum_value(self.status),
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "tags": list(self.tags),
            "config": self.config.to_dict(),
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Project":
        now = utc_now()
        return cls(
            id=data["id"],
            name=data["name"],
            sanitized_name=data["sanitizedName"],
            description=data.get("description"),
            status=data.get("status", ProjectStatus.ACTIVE.value),
            created_at=data.get("createdAt") or now,
            updated_at=data.get("updatedAt") or now,
            tags=list(data.get("tags") or []),
            config=ProjectConfig.from_dict(data.get("config")),
            stats=ProjectStats.from_dict(data.get("stats")),
        )

    def validate(self) -> List[str]:
        issues = []
        if not self.id:
            issues.append("Project ID is required")
        if not self.name:
            issues.append("Project name is required")
        if not self.sanitized_name:
            issues.append("Sanitized name is required")
        if _enum_value(self.status) not in {s.value for s in ProjectStatus}:
            issues.append(f"Invalid project status: {self.status}")
        return issues


# ----------------------------------------------------------------------
# Plans
# ----------------------------------------------------------------------


@dataclass(slots=True)
class PlanStats:
    """Derived task counts for a single plan."""

    total_tasks: int = 0
    completed_tasks: int = 0
    active_tasks: int = 0
    pending_tasks: int = 0
    blocked_tasks: int = 0
    completion_rate: int = 0
    last_activity: str = field(default_factory=utc_now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "totalTasks": self.total_tasks,
            "completedTasks": self.completed_tasks,
            "activeTasks": self.active_tasks,
            "pendingTasks": self.pending_tasks,
            "blockedTasks": self.blocked_tasks,
            "completionRate": self.completion_rate,
            "lastActivity": self.last_activity,
        }

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "PlanStats":
        data = data or {}
        return cls(
            total_tasks=data.get("totalTasks", 0),
            completed_tasks=data.get("completedTasks", 0),
            active_tasks=data.get("activeTasks", 0),
            pending_tasks=data.get("pendingTasks", 0),
            blocked_tasks=data.get("blockedTasks", 0),
            completion_rate=data.get("completionRate", 0),
            last_activity=data.get("lastActivity") or utc_now(),
        )


@dataclass(slots=True)
class Plan:
    """A named group of tasks inside a project."""

    id: str
    name: str
    sanitized_name: str
    project_id: str
    description: Optional[str] = None
    status: str = PlanStatus.ACTIVE.value
    parent_plan_id: Optional[str] = None
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    tags: List[str] = field(default_factory=list)
    stats: PlanStats = field(default_factory=PlanStats)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "sanitizedName": self.sanitized_name,
            "description": self.description,
            "status": _enum_value(self.status),
            "projectId": self.project_id,
            "parentPlanId": self.parent_plan_id,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "tags": list(self.tags),
            "stats": self.stats.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Plan":
        now = utc_now()
        return cls(
            id=data["id"],
            name=data["name"],
            sanitized_name=data["sanitizedName"],
            project_id=data["projectId"],
            description=data.get("description"),
            status=data.get("status", PlanStatus.ACTIVE.value),
            parent_plan_id=data.get("parentPlanId"),
            created_at=data.get("createdAt") or now,
            updated_at=data.get("updatedAt") or now,
            tags=list(data.get("tags") or []),
            stats=PlanStats.from_dict(data.get("stats")),
        )

    def validate(self) -> List[str]:
        issues = []
        if not self.id:
            issues.append("Plan ID is required")
        if not self.name:
            issues.append("Plan name is required")
        if not self.project_id:
            issues.append("Plan must belong to a project")
        if _enum_value(self.status) not in {s.value for s in PlanStatus}:
            issues.append(f"Invalid plan status: {self.status}")
        return issues


# ----------------------------------------------------------------------
# Tasks
# ----------------------------------------------------------------------


@dataclass(slots=True)
class RelatedFile:
    """A file a task touches, with an optional line range."""

    path: str
    type: str = RelatedFileType.OTHER.value
    description: Optional[str] = None
    line_start: Optional[int] = None
    line_end: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"path": self.path, "type": _enum_value(self.type)}
        if self.description is not None:
            data["description"] = self.description
        if self.line_start is not None:
            data["lineStart"] = self.line_start
        if self.line_end is not None:
            data["lineEnd"] = self.line_end
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RelatedFile":
        return cls(
            path=data["path"],
            type=data.get("type", RelatedFileType.OTHER.value),
            description=data.get("description"),
            line_start=data.get("lineStart"),
            line_end=data.get("lineEnd"),
        )

    def validate(self) -> List[str]:
        issues = []
        if not self.path:
            issues.append("File path cannot be empty")
        if _enum_value(self.type) not in {t.value for t in RelatedFileType}:
            issues.append(f"Invalid related file type: {self.type}")
        for label, value in (("lineStart", self.line_start), ("lineEnd", self.line_end)):
            if value is not None and value <= 0:
                issues.append(f"{label} must be a positive integer")
        if self.line_start is not None and self.line_end is not None and self.line_start > self.line_end:
            issues.append("lineStart must be less than or equal to lineEnd")
        return issues


@dataclass(slots=True)
class Task:
    """Atomic unit of work within a plan."""

    id: str
    name: str
    description: str
    plan_id: str
    project_id: str
    notes: Optional[str] = None
    status: str = TaskStatus.PENDING.value
    dependencies: List[str] = field(default_factory=list)
    related_files: List[RelatedFile] = field(default_factory=list)
    created_at: str = field(default_factory=utc_now)
    updated_at: str = field(default_factory=utc_now)
    completed_at: Optional[str] = None
    summary: Optional[str] = None
    analysis_result: Optional[str] = None
    implementation_guide: Optional[str] = None
    verification_criteria: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "notes": self.notes,
            "status": _enum_value(self.status),
            "dependencies": [{"taskId": dep} for dep in self.dependencies],
            "relatedFiles": [f.to_dict() for f in self.related_files],
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "completedAt": self.completed_at,
            "summary": self.summary,
            "analysisResult": self.analysis_result,
            "implementationGuide": self.implementation_guide,
            "verificationCriteria": self.verification_criteria,
            "planId": self.plan_id,
            "projectId": self.project_id,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], *, plan_id: Optional[str] = None, project_id: Optional[str] = None) -> "Task":
        """Create from the stored form.

        ``plan_id``/``project_id`` override whatever the file says, since the
        location of the task list is authoritative.
        """
        now = utc_now()
        dependencies = []
        for dep in data.get("dependencies") or []:
            dep_id = dep.get("taskId") if isinstance(dep, dict) else dep
            if dep_id:
                dependencies.append(dep_id)
        return cls(
            id=data["id"],
            name=data["name"],
            description=data.get("description", ""),
            plan_id=plan_id or data.get("planId", ""),
            project_id=project_id or data.get("projectId", ""),
            notes=data.get("notes"),
            status=data.get("status", TaskStatus.PENDING.value),
            dependencies=dependencies,
            related_files=[RelatedFile.from_dict(f) for f in data.get("relatedFiles") or []],
            created_at=data.get("createdAt") or now,
            updated_at=data.get("updatedAt") or data.get("createdAt") or now,
            completed_at=data.get("completedAt"),
            summary=data.get("summary"),
            analysis_result=data.get("analysisResult"),
            implementation_guide=data.get("implementationGuide"),
            verification_criteria=data.get("verificationCriteria"),
        )

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    def set_status(self, new_status: str) -> bool:
        """Change status, maintaining ``completed_at``. Returns True on change."""
        new_status = TaskStatus(new_status).value
        if self.status == new_status:
            return False
        now = utc_now()
        if new_status == TaskStatus.COMPLETED:
            self.completed_at = now
        elif self.status == TaskStatus.COMPLETED:
            self.completed_at = None
        self.status = new_status
        self.updated_at = now
        return True

    def validate(self) -> List[str]:
        issues = []
        if not self.id:
            issues.append("Task ID is required")
        if not self.name:
            issues.append("Task name is required")
        if _enum_value(self.status) not in {s.value for s in TaskStatus}:
            issues.append(f"Invalid status: {self.status}")
        if self.id in self.dependencies:
            issues.append("A task cannot depend on itself")
        for related in self.related_files:
            issues.extend(related.validate())
        return issues


@dataclass(slots=True)
class TaskInput:
    """Caller-supplied fields for creating or upserting a task.

    ``dependencies`` may hold task ids or task names; the task store resolves
    them to ids within the same plan.
    """

    name: str
    description: str
    notes: Optional[str] = None
    dependencies: List[str] = field(default_factory=list)
    related_files: List[RelatedFile] = field(default_factory=list)
    implementation_guide: Optional[str] = None
    verification_criteria: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "TaskInput":
        return cls(
            name=data["name"],
            description=data.get("description", ""),
            notes=data.get("notes"),
            dependencies=list(data.get("dependencies") or []),
            related_files=[
                f if isinstance(f, RelatedFile) else RelatedFile.from_dict(f)
                for f in data.get("relatedFiles") or data.get("related_files") or []
            ],
            implementation_guide=data.get("implementationGuide") or data.get("implementation_guide"),
            verification_criteria=data.get("verificationCriteria") or data.get("verification_criteria"),
        )

    def validate(self) -> List[str]:
        issues = []
        if not self.name or not self.name.strip():
            issues.append("Task name cannot be empty")
        elif len(self.name) > MAX_TASK_NAME_LENGTH:
            issues.append(f"Task name too long, please limit to {MAX_TASK_NAME_LENGTH} characters")
        if len((self.description or "").strip()) < MIN_TASK_DESCRIPTION_LENGTH:
            issues.append(
                f"Task description too short, please provide at least {MIN_TASK_DESCRIPTION_LENGTH} characters"
            )
        for related in self.related_files:
            issues.extend(related.validate())
        return issues


# ----------------------------------------------------------------------
# Context records
# ----------------------------------------------------------------------


@dataclass(slots=True)
class ProjectContext:
    """Advisory "current project" pointer for interactive consumers."""

    data_directory: str
    current_project_id: Optional[str] = None
    current_project: Optional[Project] = None
    available_projects: List[Project] = field(default_factory=list)
    is_multi_project: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentProjectId": self.current_project_id,
            "currentProject": self.current_project.to_dict() if self.current_project else None,
            "availableProjects": [p.to_dict() for p in self.available_projects],
            "isMultiProject": self.is_multi_project,
            "dataDirectory": self.data_directory,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], *, data_directory: str) -> "ProjectContext":
        current = data.get("currentProject")
        return cls(
            data_directory=data_directory,
            current_project_id=data.get("currentProjectId"),
            current_project=Project.from_dict(current) if current else None,
            available_projects=[Project.from_dict(p) for p in data.get("availableProjects") or []],
            is_multi_project=bool(data.get("isMultiProject", False)),
        )

    def clear_current(self) -> None:
        self.current_project_id = None
        self.current_project = None


@dataclass(slots=True)
class PlanContext:
    """Advisory "current plan" pointer of one project."""

    current_plan_id: Optional[str] = None
    current_plan: Optional[Plan] = None
    available_plans: List[Plan] = field(default_factory=list)
    plan_directory: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "currentPlanId": self.current_plan_id,
            "currentPlan": self.current_plan.to_dict() if self.current_plan else None,
            "availablePlans": [p.to_dict() for p in self.available_plans],
            "planDirectory": self.plan_directory,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PlanContext":
        current = data.get("currentPlan")
        return cls(
            current_plan_id=data.get("currentPlanId"),
            current_plan=Plan.from_dict(current) if current else None,
            available_plans=[Plan.from_dict(p) for p in data.get("availablePlans") or []],
            plan_directory=data.get("planDirectory"),
        )

    def clear_current(self) -> None:
        self.current_plan_id = None
        self.current_plan = None
        self.plan_directory = None


# ----------------------------------------------------------------------
# Operation inputs and results
# ----------------------------------------------------------------------


@dataclass(slots=True)
class ProjectCreationOptions:
    name: str
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    copy_from_project: Optional[str] = None
    config: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class ProjectQuery:
    """Filtering, sorting and pagination for :meth:`ProjectStore.list`."""

    status: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    name_pattern: Optional[str] = None
    sort_by: str = "updatedAt"
    sort_order: str = "desc"
    limit: Optional[int] = None
    offset: int = 0


@dataclass(slots=True)
class PlanCreationOptions:
    name: str
    description: Optional[str] = None
    tags: List[str] = field(default_factory=list)
    copy_from_plan: Optional[str] = None
    parent_plan_id: Optional[str] = None


@dataclass(slots=True)
class OperationResult:
    """Discriminated success/error result returned by every store operation.

    A delete attempted without confirmation is a *successful* call with
    ``confirmation_required`` set and the would-be-deleted summary in ``data``.
    """

    success: bool
    data: Any = None
    error: Optional[str] = None
    error_kind: Optional[str] = None
    confirmation_required: bool = False
    project_id: Optional[str] = None
    plan_id: Optional[str] = None
    suggestions: List[str] = field(default_factory=list)
    message: Optional[str] = None

    @classmethod
    def ok(cls, data: Any = None, **kwargs: Any) -> "OperationResult":
        return cls(success=True, data=data, **kwargs)

    @classmethod
    def fail(cls, error: str, kind: str = "io", **kwargs: Any) -> "OperationResult":
        return cls(success=False, error=error, error_kind=kind, **kwargs)

    @classmethod
    def from_error(cls, error: Exception, operation: str, **kwargs: Any) -> "OperationResult":
        """Error result for ``error``; exceptions without a ``kind`` become ``io``."""
        kind = getattr(error, "kind", None)
        message = str(error) if kind else f"Failed to {operation}: {error}"
        kwargs.setdefault("suggestions", list(getattr(error, "suggestions", None) or []))
        return cls.fail(message, kind or "io", **kwargs)

    @classmethod
    def confirmation(cls, message: str, data: Any = None, **kwargs: Any) -> "OperationResult":
        return cls(success=True, data=data, confirmation_required=True, message=message, **kwargs)

    def to_dict(self) -> Dict[str, Any]:
        data = self.data
        if hasattr(data, "to_dict"):
            data = data.to_dict()
        return {
            "success": self.success,
            "data": data,
            "error": self.error,
            "errorKind": self.error_kind,
            "confirmationRequired": self.confirmation_required,
            "projectId": self.project_id,
            "planId": self.plan_id,
            "suggestions": list(self.suggestions),
            "message": self.message,
        }
