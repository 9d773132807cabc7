"""Plan store: the per-project plan index and plan directories.

Each project directory holds ``plans.json`` (plan metadata),
``plan-context.json`` (the advisory current-plan pointer), ``backups/`` and
one ``plans/{planId}/tasks.json`` per plan.
"""

from __future__ import annotations

import logging
import math
import time
import uuid
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Optional, Tuple, Union

from .config import StoreSettings
from .exceptions import (
    ConflictError,
    LastPlanError,
    NameValidationError,
    PlanNotFoundError,
    ProjectNotFoundError,
    StorageError,
    StoreError,
    ValidationError,
    error_result,
)
from .models import (
    CURRENT_CONTEXT,
    OperationResult,
    Plan,
    PlanContext,
    PlanCreationOptions,
    PlanStats,
    PlanStatus,
    TaskStatus,
    UpdateAction,
    UpdateKind,
    UseCurrentContext,
    parse_timestamp,
    utc_now,
)
from .naming import normalize_for_comparison, sanitize_name, validate_name
from .notifications import Notifier
from .projects import ProjectStore
from .storage import read_json, remove_tree, write_backup, write_json
from .store_logging import log_operation, log_performance

PLANS_FILE = "plans.json"
CONTEXT_FILE = "plan-context.json"
PLANS_DIR = "plans"
BACKUPS_DIR = "backups"
TASKS_FILE = "tasks.json"

UPDATABLE_FIELDS = frozenset({"name", "description", "status", "tags", "parent_plan_id"})
SORT_FIELDS = ("name", "createdAt", "updatedAt")

PlanRef = Union[str, UseCurrentContext]


def completion_rate(completed: int, total: int) -> int:
    """Percentage of completed tasks, rounding halves up."""
    if total <= 0:
        return 0
    return int(math.floor(completed / total * 100 + 0.5))


def stats_from_tasks(tasks: Iterable[Dict[str, Any]]) -> PlanStats:
    """Count stored task dicts by status and find the latest activity."""
    counts = {status.value: 0 for status in TaskStatus}
    total = 0
    latest = None
    for task in tasks:
        total += 1
        status = task.get("status")
        if status in counts:
            counts[status] += 1
        touched = parse_timestamp(task.get("updatedAt") or task.get("createdAt"))
        if touched and (latest is None or touched > latest[0]):
            latest = (touched, task.get("updatedAt") or task.get("createdAt"))

    completed = counts[TaskStatus.COMPLETED.value]
    return PlanStats(
        total_tasks=total,
        completed_tasks=completed,
        active_tasks=counts[TaskStatus.IN_PROGRESS.value],
        pending_tasks=counts[TaskStatus.PENDING.value],
        blocked_tasks=counts[TaskStatus.BLOCKED.value],
        completion_rate=completion_rate(completed, total),
        last_activity=latest[1] if latest else utc_now(),
    )


class PlanStore:
    """Create, list, switch, update and delete plans within a project.

    Indexes and contexts are kept per project id. Like the project store,
    a project's plan index is rebuilt from ``plans.json`` after every write.
    """

    def __init__(
        self,
        settings: StoreSettings,
        projects: ProjectStore,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.projects = projects
        self.notifier = notifier or projects.notifier
        self.clock = clock
        self.stats_ttl = settings.stats_ttl_seconds
        self.logger = logging.getLogger("taskstore.plans")
        self._indexes: Dict[str, Dict[str, Plan]] = {}
        self._contexts: Dict[str, PlanContext] = {}
        self._stats_cache: Dict[Tuple[str, str], Tuple[float, PlanStats]] = {}

    # ------------------------------------------------------------------
    # Paths
    # ------------------------------------------------------------------

    def _project_dir(self, project_id: str) -> Path:
        return self.projects.project_path(project_id)

    def plans_file(self, project_id: str) -> Path:
        return self._project_dir(project_id) / PLANS_FILE

    def context_file(self, project_id: str) -> Path:
        return self._project_dir(project_id) / CONTEXT_FILE

    def backups_dir(self, project_id: str) -> Path:
        return self._project_dir(project_id) / BACKUPS_DIR

    def plan_path(self, project_id: str, plan_id: str) -> Path:
        return self._project_dir(project_id) / PLANS_DIR / plan_id

    def tasks_file(self, project_id: str, plan_id: str) -> Path:
        return self.plan_path(project_id, plan_id) / TASKS_FILE

    # ------------------------------------------------------------------
    # Loading
    # ------------------------------------------------------------------

    def initialize(self, project_id: str) -> None:
        """Prepare ``plans.json`` and load the index and context of a project."""
        if not project_id:
            raise ProjectNotFoundError("Project ID is required for plan initialization")
        if not self.projects.exists(project_id):
            raise ProjectNotFoundError(f'Project "{project_id}" not found')
        if not self.plans_file(project_id).exists():
            write_json(self.plans_file(project_id), {"plans": []})
        self._reload_index(project_id)
        self._load_context(project_id)

    def _ensure_initialized(self, project_id: str) -> None:
        if project_id not in self._indexes or not self.projects.exists(project_id):
            self.initialize(project_id)

    def _read_plans(self, project_id: str) -> List[Plan]:
        data = read_json(self.plans_file(project_id), {"plans": []})
        # the owning directory decides the project, not the stored field
        for item in data.get("plans", []):
            item["projectId"] = project_id
        return [Plan.from_dict(item) for item in data.get("plans", [])]

    def _write_plans(self, project_id: str, plans: List[Plan]) -> None:
        write_json(self.plans_file(project_id), {"plans": [p.to_dict() for p in plans]})
        self._reload_index(project_id)

    def _reload_index(self, project_id: str) -> None:
        self._indexes[project_id] = {plan.id: plan for plan in self._read_plans(project_id)}

    def _load_context(self, project_id: str) -> None:
        context_file = self.context_file(project_id)
        context = PlanContext.from_dict(read_json(context_file)) if context_file.exists() else PlanContext()
        if context.current_plan_id and context.current_plan_id not in self._indexes[project_id]:
            self.logger.warning(f"Current plan {context.current_plan_id} no longer exists, clearing")
            context.clear_current()
        self._contexts[project_id] = context
        self._save_context(project_id)

    def _save_context(self, project_id: str) -> None:
        context = self._contexts[project_id]
        index = self._indexes.get(project_id, {})
        context.available_plans = list(index.values())
        if context.current_plan_id:
            context.current_plan = index.get(context.current_plan_id)
        write_json(self.context_file(project_id), context.to_dict())

    def require_plan(self, project_id: str, plan_id: str) -> Plan:
        self._ensure_initialized(project_id)
        plan = self._indexes[project_id].get(plan_id)
        if plan is None:
            raise PlanNotFoundError(f'Plan "{plan_id}" not found in project "{project_id}"')
        return plan

    def resolve_plan_id(self, project_id: str, plan: PlanRef) -> str:
        """Map an explicit plan id or ``CURRENT_CONTEXT`` to a plan id."""
        if isinstance(plan, UseCurrentContext):
            self._ensure_initialized(project_id)
            current = self._contexts[project_id].current_plan_id
            if not current:
                raise PlanNotFoundError(
                    f'No current plan is selected for project "{project_id}". Switch to a plan or pass a plan ID.'
                )
            return current
        if not plan:
            raise PlanNotFoundError("Plan ID is required")
        return plan

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_plans(
        self,
        project_id: str,
        status: Optional[str] = None,
        tags: Optional[List[str]] = None,
        sort_by: str = "updatedAt",
        sort_order: str = "desc",
    ) -> List[Plan]:
        self._ensure_initialized(project_id)
        plans = list(self._indexes[project_id].values())
        if status:
            status = getattr(status, "value", status)
            plans = [p for p in plans if p.status == status]
        if tags:
            wanted = set(tags)
            plans = [p for p in plans if wanted.intersection(p.tags)]

        if sort_by not in SORT_FIELDS:
            sort_by = "updatedAt"

        def key(plan: Plan):
            if sort_by == "name":
                return plan.name.lower()
            value = plan.created_at if sort_by == "createdAt" else plan.updated_at
            return parse_timestamp(value) or parse_timestamp("1970-01-01T00:00:00Z")

        plans.sort(key=key, reverse=sort_order != "asc")
        return plans

    def get_plan(self, project_id: str, plan: PlanRef) -> Optional[Plan]:
        """Plan metadata by id, or the current plan for ``CURRENT_CONTEXT``."""
        try:
            plan_id = self.resolve_plan_id(project_id, plan)
            self._ensure_initialized(project_id)
        except StoreError:
            return None
        return self._indexes[project_id].get(plan_id)

    def plan_exists(self, project_id: str, plan_id: str) -> bool:
        return self.get_plan(project_id, plan_id) is not None and self.plan_path(project_id, plan_id).is_dir()

    def find_plan(self, project_id: str, identifier: str) -> Optional[Plan]:
        """Find a plan by id, name or sanitized name, then case-insensitively."""
        if not identifier:
            return None
        try:
            self._ensure_initialized(project_id)
        except StoreError:
            return None
        plans = list(self._indexes[project_id].values())
        for match in (
            lambda p: p.id == identifier,
            lambda p: p.name == identifier,
            lambda p: p.sanitized_name == identifier,
        ):
            found = next((p for p in plans if match(p)), None)
            if found:
                return found

        wanted = normalize_for_comparison(identifier)
        sanitized = sanitize_name(identifier)
        for plan in plans:
            if normalize_for_comparison(plan.name) == wanted or plan.sanitized_name in (wanted, sanitized):
                return plan
        return None

    def get_current_context(self, project_id: str) -> Optional[PlanContext]:
        try:
            self._ensure_initialized(project_id)
        except StoreError:
            return None
        return self._contexts[project_id]

    def get_current_plan(self, project_id: str) -> Optional[Plan]:
        return self.get_plan(project_id, CURRENT_CONTEXT)

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @log_performance("plan_create")
    def create_plan(self, project_id: str, options: Union[PlanCreationOptions, str]) -> OperationResult:
        """Create a plan with an empty task list, optionally cloning another plan's tasks."""
        if isinstance(options, str):
            options = PlanCreationOptions(name=options)
        try:
            self._ensure_initialized(project_id)
            with log_operation("plan_create", project_id=project_id, name=options.name):
                plan = self._create_plan(project_id, options)
        except (StoreError, OSError, ValueError) as e:
            return error_result("create plan", e, project_id=project_id, name=options.name)

        self.notifier.notify(project_id, UpdateKind.PLANS, UpdateAction.CREATED, {"plan": plan.to_dict()})
        return OperationResult.ok(
            plan, project_id=project_id, plan_id=plan.id, message=f'Plan "{plan.name}" created'
        )

    def _create_plan(self, project_id: str, options: PlanCreationOptions) -> Plan:
        validation = validate_name(options.name, kind="Plan")
        if not validation.is_valid:
            raise NameValidationError(
                f"Invalid plan name: {', '.join(validation.errors)}",
                errors=validation.errors,
                sanitized_name=validation.sanitized_name,
            )

        plans = self._read_plans(project_id)
        sanitized = validation.sanitized_name
        if any(p.sanitized_name == sanitized for p in plans):
            raise ConflictError(f'A plan with the name "{sanitized}" already exists in this project')

        known = {p.id for p in plans}
        if options.copy_from_plan and options.copy_from_plan not in known:
            raise PlanNotFoundError(f'Source plan "{options.copy_from_plan}" not found')
        if options.parent_plan_id and options.parent_plan_id not in known:
            raise PlanNotFoundError(f'Parent plan "{options.parent_plan_id}" not found')

        now = utc_now()
        plan = Plan(
            id=str(uuid.uuid4()),
            name=options.name,
            sanitized_name=sanitized,
            project_id=project_id,
            description=options.description,
            status=PlanStatus.ACTIVE.value,
            parent_plan_id=options.parent_plan_id,
            created_at=now,
            updated_at=now,
            tags=list(dict.fromkeys(options.tags or [])),
            stats=PlanStats(last_activity=now),
        )

        self.plan_path(project_id, plan.id).mkdir(parents=True, exist_ok=False)
        tasks: List[Dict[str, Any]] = []
        if options.copy_from_plan:
            source = read_json(self.tasks_file(project_id, options.copy_from_plan), {"tasks": []})
            for task in source.get("tasks", []):
                tasks.append({**task, "planId": plan.id, "projectId": project_id})
            plan.stats = stats_from_tasks(tasks)
        write_json(self.tasks_file(project_id, plan.id), {"tasks": tasks})

        plans.append(plan)
        self._write_plans(project_id, plans)
        self._save_context(project_id)
        if tasks:
            self._rollup_project_stats(project_id)

        self.logger.info(f"Created plan {plan.name} ({plan.id}) in project {project_id}")
        return self._indexes[project_id][plan.id]

    @log_performance("plan_update")
    def update_plan(self, project_id: str, plan_id: str, patch: Dict[str, Any]) -> OperationResult:
        """Apply ``patch`` (name, description, status, tags, parent_plan_id) to a plan."""
        try:
            self._ensure_initialized(project_id)
            with log_operation("plan_update", project_id=project_id, plan_id=plan_id):
                plan = self._update_plan(project_id, plan_id, dict(patch or {}))
        except (StoreError, OSError, ValueError) as e:
            return error_result("update plan", e, project_id=project_id, plan_id=plan_id)

        self.notifier.notify(project_id, UpdateKind.PLANS, UpdateAction.UPDATED, {"plan": plan.to_dict()})
        return OperationResult.ok(plan, project_id=project_id, plan_id=plan_id)

    def _update_plan(self, project_id: str, plan_id: str, patch: Dict[str, Any]) -> Plan:
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update plan fields: {', '.join(sorted(unknown))}")

        plans = self._read_plans(project_id)
        plan = next((p for p in plans if p.id == plan_id), None)
        if plan is None:
            raise PlanNotFoundError(f'Plan "{plan_id}" not found in project "{project_id}"')

        new_name = patch.get("name")
        if new_name is not None and new_name != plan.name:
            validation = validate_name(new_name, kind="Plan")
            if not validation.is_valid:
                raise NameValidationError(
                    f"Invalid plan name: {', '.join(validation.errors)}",
                    errors=validation.errors,
                    sanitized_name=validation.sanitized_name,
                )
            if any(p.id != plan_id and p.sanitized_name == validation.sanitized_name for p in plans):
                raise ConflictError(f'A plan with the name "{validation.sanitized_name}" already exists')
            plan.name = new_name
            plan.sanitized_name = validation.sanitized_name

        if "status" in patch:
            status = getattr(patch["status"], "value", patch["status"])
            if status not in {s.value for s in PlanStatus}:
                raise ValidationError(f"Invalid plan status: {status}")
            plan.status = status
        if "parent_plan_id" in patch:
            parent = patch["parent_plan_id"]
            if parent == plan_id:
                raise ConflictError("A plan cannot be its own parent")
            if parent and not any(p.id == parent for p in plans):
                raise PlanNotFoundError(f'Parent plan "{parent}" not found')
            plan.parent_plan_id = parent
        if "description" in patch:
            plan.description = patch["description"]
        if "tags" in patch:
            plan.tags = list(dict.fromkeys(patch["tags"] or []))

        plan.updated_at = utc_now()
        self._write_plans(project_id, plans)
        self._save_context(project_id)
        return self._indexes[project_id][plan_id]

    @log_performance("plan_delete")
    def delete_plan(self, project_id: str, plan_id: str, confirm: bool = False) -> OperationResult:
        """Delete a plan after backing it up.

        The last plan of a project can never be deleted, with or without
        ``confirm``. Without ``confirm`` a confirmation result is returned
        and nothing changes.
        """
        try:
            plan = self.require_plan(project_id, plan_id)
            plans = self._read_plans(project_id)
            if len(plans) <= 1:
                raise LastPlanError(
                    f'Cannot delete plan "{plan.name}": it is the only plan in the project'
                )

            tasks = read_json(self.tasks_file(project_id, plan_id), {"tasks": []}).get("tasks", [])
            if not confirm:
                return OperationResult.confirmation(
                    f'Deleting plan "{plan.name}" will remove {len(tasks)} task(s). '
                    "Call again with confirm=True to proceed.",
                    data={"plan": plan.to_dict(), "taskCount": len(tasks)},
                    project_id=project_id,
                    plan_id=plan_id,
                )

            with log_operation("plan_delete", project_id=project_id, plan_id=plan_id):
                backup = self._backup(project_id, plan, tasks)
                remove_tree(self.plan_path(project_id, plan_id))
                self._write_plans(project_id, [p for p in plans if p.id != plan_id])
                context = self._contexts[project_id]
                if context.current_plan_id == plan_id:
                    context.clear_current()
                self._save_context(project_id)
                self._stats_cache.pop((project_id, plan_id), None)
                self._rollup_project_stats(project_id)
        except (StoreError, OSError, ValueError) as e:
            return error_result("delete plan", e, project_id=project_id, plan_id=plan_id)

        self.notifier.notify(project_id, UpdateKind.PLANS, UpdateAction.DELETED, {"planId": plan_id})
        return OperationResult.ok(
            {"deletedPlan": plan.to_dict(), "backup": backup},
            project_id=project_id,
            plan_id=plan_id,
            message=f'Plan "{plan.name}" deleted',
        )

    def _backup(self, project_id: str, plan: Plan, tasks: List[Dict[str, Any]]) -> Dict[str, Any]:
        created_at = utc_now()
        payload = {
            "plan": plan.to_dict(),
            "tasks": tasks,
            "timestamp": created_at,
            "type": "manual",
            "description": "Pre-deletion backup",
        }
        path = write_backup(self.backups_dir(project_id), "plan", plan.sanitized_name, payload)
        return {"backupPath": str(path), "size": path.stat().st_size, "createdAt": created_at}

    def set_current_plan(self, project_id: str, plan_id: str) -> OperationResult:
        """Point the project's plan context at ``plan_id``; plan data is untouched."""
        try:
            plan = self.require_plan(project_id, plan_id)
            context = self._contexts[project_id]
            context.current_plan_id = plan_id
            context.plan_directory = str(self.plan_path(project_id, plan_id))
            self._save_context(project_id)
        except (StoreError, OSError, ValueError) as e:
            return error_result("set current plan", e, project_id=project_id, plan_id=plan_id)
        self.logger.info(f"Current plan for project {project_id} set to {plan_id}")
        return OperationResult.ok(plan, project_id=project_id, plan_id=plan_id)

    def switch_plan(self, project_id: str, plan_id: str) -> OperationResult:
        return self.set_current_plan(project_id, plan_id)

    # ------------------------------------------------------------------
    # Statistics
    # ------------------------------------------------------------------

    def calculate_stats(self, project_id: str, plan: PlanRef) -> PlanStats:
        """Derive stats from the plan's task list without persisting them."""
        plan_id = self.resolve_plan_id(project_id, plan)
        self.require_plan(project_id, plan_id)
        data = read_json(self.tasks_file(project_id, plan_id), {"tasks": []})
        return stats_from_tasks(data.get("tasks", []))

    def update_plan_stats(self, project_id: str, plan_id: str) -> OperationResult:
        """Recompute a plan's stats, persist them and roll them up into the project."""
        try:
            stats = self.calculate_stats(project_id, plan_id)
            plans = self._read_plans(project_id)
            for plan in plans:
                if plan.id == plan_id:
                    plan.stats = stats
                    plan.updated_at = utc_now()
            self._write_plans(project_id, plans)
            if self._contexts[project_id].current_plan_id == plan_id:
                self._save_context(project_id)
            self._stats_cache[(project_id, plan_id)] = (self.clock(), stats)
            self._rollup_project_stats(project_id)
        except (StoreError, OSError, ValueError) as e:
            return error_result("update plan stats", e, project_id=project_id, plan_id=plan_id)
        return OperationResult.ok(stats, project_id=project_id, plan_id=plan_id)

    def get_plan_stats(self, project_id: str, plan: PlanRef, force_refresh: bool = False) -> Optional[PlanStats]:
        """Cached plan stats; recomputed when older than the configured TTL."""
        try:
            plan_id = self.resolve_plan_id(project_id, plan)
            self.require_plan(project_id, plan_id)
        except StoreError as e:
            self.logger.warning(f"Cannot get plan stats: {e}")
            return None

        cached = self._stats_cache.get((project_id, plan_id))
        if cached and not force_refresh and self.clock() - cached[0] < self.stats_ttl:
            return cached[1]

        result = self.update_plan_stats(project_id, plan_id)
        return result.data if result.success else None

    def _rollup_project_stats(self, project_id: str) -> None:
        plans = self._indexes.get(project_id, {}).values()
        latest = max(
            (p.stats.last_activity for p in plans),
            key=lambda value: parse_timestamp(value) or parse_timestamp("1970-01-01T00:00:00Z"),
            default=utc_now(),
        )
        result = self.projects.update_project_stats(project_id, {
            "totalTasks": sum(p.stats.total_tasks for p in plans),
            "completedTasks": sum(p.stats.completed_tasks for p in plans),
            "activeTasks": sum(p.stats.active_tasks for p in plans),
            "lastActivity": latest,
        })
        if not result.success:
            raise StorageError(result.error)
