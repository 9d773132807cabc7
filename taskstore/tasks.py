"""Task store: the task list of each plan.

Every plan owns ``plans/{planId}/tasks.json``. Each mutation rewrites the
whole list, then refreshes the plan's stats (which roll up into the project)
and publishes a ``tasks`` notification.
"""

from __future__ import annotations

import logging
import math
import uuid
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple, Union

from .config import StoreSettings
from .exceptions import (
    ConflictError,
    StoreError,
    TaskNotFoundError,
    ValidationError,
    error_result,
)
from .models import (
    MAX_TASK_NAME_LENGTH,
    OperationResult,
    Plan,
    RelatedFile,
    Task,
    TaskInput,
    TaskStatus,
    UpdateAction,
    UpdateKind,
    UpdateMode,
    UseCurrentContext,
    parse_timestamp,
    utc_now,
)
from .notifications import Notifier
from .plans import PlanRef, PlanStore
from .storage import read_json, write_backup, write_json
from .store_logging import log_operation, log_performance

DEFAULT_PAGE_SIZE = 3
PASSING_SCORE = 80

UPDATABLE_FIELDS = frozenset({
    "name",
    "description",
    "notes",
    "dependencies",
    "related_files",
    "implementation_guide",
    "verification_criteria",
    "summary",
    "analysis_result",
})
COMPLETED_UPDATABLE_FIELDS = frozenset({"summary", "related_files"})

_EPOCH = parse_timestamp("1970-01-01T00:00:00Z")

TaskLike = Union[TaskInput, Dict[str, Any]]


def _as_input(value: TaskLike) -> TaskInput:
    return value if isinstance(value, TaskInput) else TaskInput.from_dict(value)


def _as_related_files(values: Iterable[Any]) -> List[RelatedFile]:
    return [v if isinstance(v, RelatedFile) else RelatedFile.from_dict(v) for v in values or []]


def _time(value: Optional[str]):
    return parse_timestamp(value) or _EPOCH


def _coerce(enum, value, label: str):
    try:
        return enum(value)
    except ValueError:
        raise ValidationError(f"Invalid {label}: {value}") from None


class TaskStore:
    """CRUD and batch upsert over the task lists of plans.

    Reads accept ``CURRENT_CONTEXT`` in place of a plan id. Mutations always
    need an explicit plan id.
    """

    def __init__(self, settings: StoreSettings, plans: PlanStore, notifier: Optional[Notifier] = None):
        self.settings = settings
        self.plans = plans
        self.notifier = notifier or plans.notifier
        self.logger = logging.getLogger("taskstore.tasks")

    # ------------------------------------------------------------------
    # Loading and saving
    # ------------------------------------------------------------------

    def _plan_for_read(self, project_id: str, plan: PlanRef) -> Plan:
        plan_id = self.plans.resolve_plan_id(project_id, plan)
        return self.plans.require_plan(project_id, plan_id)

    def _plan_for_write(self, project_id: str, plan_id: Any) -> Plan:
        if isinstance(plan_id, UseCurrentContext) or not plan_id:
            raise ValidationError("An explicit plan ID is required to modify tasks")
        return self.plans.require_plan(project_id, plan_id)

    def _load(self, project_id: str, plan_id: str) -> List[Task]:
        data = read_json(self.plans.tasks_file(project_id, plan_id), {"tasks": []})
        return [Task.from_dict(item, plan_id=plan_id, project_id=project_id) for item in data.get("tasks", [])]

    def _save(self, project_id: str, plan_id: str, tasks: List[Task]) -> None:
        write_json(self.plans.tasks_file(project_id, plan_id), {"tasks": [t.to_dict() for t in tasks]})
        stats = self.plans.update_plan_stats(project_id, plan_id)
        if not stats.success:
            self.logger.warning(f"Tasks saved but stats refresh failed for plan {plan_id}: {stats.error}")

    def _find(self, tasks: List[Task], task_id: str) -> Task:
        task = next((t for t in tasks if t.id == task_id), None)
        if task is None:
            raise TaskNotFoundError(f'Task "{task_id}" not found')
        return task

    def _notify(self, project_id: str, plan_id: str, action: UpdateAction, task_ids: Sequence[str]) -> None:
        self.notifier.notify(project_id, UpdateKind.TASKS, action, {"planId": plan_id, "taskIds": list(task_ids)})

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def list_tasks(self, project_id: str, plan: PlanRef, status: Optional[str] = None) -> List[Task]:
        """Tasks of a plan in stored order, optionally filtered by status."""
        try:
            plan_meta = self._plan_for_read(project_id, plan)
            tasks = self._load(project_id, plan_meta.id)
            if status:
                wanted = _coerce(TaskStatus, status, "task status").value
                tasks = [t for t in tasks if t.status == wanted]
        except StoreError as e:
            self.logger.warning(f"Cannot list tasks: {e}")
            return []
        return tasks

    def get_task(self, project_id: str, plan: PlanRef, task_id: str) -> Optional[Task]:
        return next((t for t in self.list_tasks(project_id, plan) if t.id == task_id), None)

    def query_tasks(
        self,
        project_id: str,
        plan: PlanRef,
        query: str,
        is_id: bool = False,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
    ) -> OperationResult:
        """Keyword or id search with pagination.

        Every whitespace-separated keyword must occur (case-insensitively) in
        the name, description, notes, implementation guide or summary.
        Completed tasks come first, most recently completed first; the rest
        follow by most recent update.
        """
        try:
            plan_meta = self._plan_for_read(project_id, plan)
            tasks = self._load(project_id, plan_meta.id)
        except (StoreError, OSError, ValueError) as e:
            return error_result("query tasks", e, project_id=project_id)

        if is_id:
            matches = [t for t in tasks if t.id == query]
        else:
            keywords = [k.lower() for k in (query or "").split()]
            matches = [t for t in tasks if all(self._contains(t, k) for k in keywords)]

        matches.sort(key=lambda t: _time(t.updated_at), reverse=True)
        matches.sort(key=lambda t: _time(t.completed_at), reverse=True)
        matches.sort(key=lambda t: t.completed_at is None)

        page_size = max(page_size, 1)
        total = len(matches)
        total_pages = max(math.ceil(total / page_size), 1)
        page = max(1, min(page, total_pages))
        start = (page - 1) * page_size
        return OperationResult.ok(
            {
                "tasks": matches[start:start + page_size],
                "pagination": {
                    "currentPage": page,
                    "totalPages": total_pages,
                    "totalResults": total,
                    "hasMore": page < total_pages,
                },
            },
            project_id=project_id,
            plan_id=plan_meta.id,
        )

    @staticmethod
    def _contains(task: Task, keyword: str) -> bool:
        fields = (task.name, task.description, task.notes, task.implementation_guide, task.summary)
        return any(keyword in value.lower() for value in fields if value)

    def can_execute_task(self, project_id: str, plan: PlanRef, task_id: str) -> OperationResult:
        """A task can run when it is not completed and all its dependencies are."""
        try:
            plan_meta = self._plan_for_read(project_id, plan)
            tasks = self._load(project_id, plan_meta.id)
            task = self._find(tasks, task_id)
        except (StoreError, OSError, ValueError) as e:
            return error_result("check task", e, project_id=project_id)

        by_id = {t.id: t for t in tasks}
        blocked_by = [dep for dep in task.dependencies if dep not in by_id or not by_id[dep].is_completed]
        executable = not task.is_completed and not blocked_by
        if task.is_completed:
            message = f'Task "{task.name}" is already completed'
        elif blocked_by:
            message = f'Task "{task.name}" is blocked by {len(blocked_by)} unfinished dependency(ies)'
        else:
            message = f'Task "{task.name}" can be executed'
        return OperationResult.ok(
            {"executable": executable, "blockedBy": blocked_by},
            project_id=project_id,
            plan_id=plan_meta.id,
            message=message,
        )

    # ------------------------------------------------------------------
    # Single-task mutations
    # ------------------------------------------------------------------

    @log_performance("task_create")
    def create_task(self, project_id: str, plan_id: str, task_input: TaskLike) -> OperationResult:
        """Add one task; its name must be unique within the plan."""
        try:
            task_input = _as_input(task_input)
            plan = self._plan_for_write(project_id, plan_id)
            with log_operation("task_create", project_id=project_id, plan_id=plan.id):
                tasks = self._load(project_id, plan.id)
                self._validate_inputs([task_input])
                if any(t.name == task_input.name for t in tasks):
                    raise ConflictError(f'A task named "{task_input.name}" already exists in this plan')
                task = self._new_task(project_id, plan.id, task_input)
                task.dependencies = self._resolve_dependencies(task_input.dependencies, tasks, task.id)
                tasks.append(task)
                self._save(project_id, plan.id, tasks)
        except (StoreError, OSError, ValueError, KeyError) as e:
            return error_result("create task", e, project_id=project_id, plan_id=plan_id)

        self._notify(project_id, plan.id, UpdateAction.CREATED, [task.id])
        return OperationResult.ok(task, project_id=project_id, plan_id=plan.id)

    @log_performance("task_update")
    def update_task(self, project_id: str, plan_id: str, task_id: str, patch: Dict[str, Any]) -> OperationResult:
        """Update task fields. Completed tasks only accept ``summary`` and ``related_files``."""
        try:
            plan = self._plan_for_write(project_id, plan_id)
            with log_operation("task_update", project_id=project_id, plan_id=plan.id, task_id=task_id):
                tasks = self._load(project_id, plan.id)
                task = self._find(tasks, task_id)
                self._apply_patch(task, tasks, dict(patch or {}))
                self._save(project_id, plan.id, tasks)
        except (StoreError, OSError, ValueError, KeyError) as e:
            return error_result("update task", e, project_id=project_id, plan_id=plan_id)

        self._notify(project_id, plan.id, UpdateAction.UPDATED, [task.id])
        return OperationResult.ok(task, project_id=project_id, plan_id=plan.id)

    def _apply_patch(self, task: Task, tasks: List[Task], patch: Dict[str, Any]) -> None:
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update task fields: {', '.join(sorted(unknown))}")
        if task.is_completed and set(patch) - COMPLETED_UPDATABLE_FIELDS:
            raise ConflictError(
                f'Task "{task.name}" is completed; only summary and related files can be updated'
            )

        if "name" in patch:
            name = patch["name"]
            if not name or not name.strip():
                raise ValidationError("Task name cannot be empty")
            if len(name) > MAX_TASK_NAME_LENGTH:
                raise ValidationError(f"Task name too long, please limit to {MAX_TASK_NAME_LENGTH} characters")
            if any(t.id != task.id and t.name == name for t in tasks):
                raise ConflictError(f'A task named "{name}" already exists in this plan')
            task.name = name
        if "related_files" in patch:
            related = _as_related_files(patch["related_files"])
            issues = [issue for f in related for issue in f.validate()]
            if issues:
                raise ValidationError(f"Invalid related files: {', '.join(issues)}")
            task.related_files = related
        if "dependencies" in patch:
            task.dependencies = self._resolve_dependencies(patch["dependencies"], tasks, task.id)
        for key in ("description", "notes", "implementation_guide", "verification_criteria", "summary",
                    "analysis_result"):
            if key in patch:
                setattr(task, key, patch[key])
        task.updated_at = utc_now()

    def update_task_status(self, project_id: str, plan_id: str, task_id: str, status: str) -> OperationResult:
        """Change a task's status; ``completed_at`` follows the transition."""
        try:
            status = _coerce(TaskStatus, status, "task status").value
            plan = self._plan_for_write(project_id, plan_id)
            tasks = self._load(project_id, plan.id)
            task = self._find(tasks, task_id)
            if task.set_status(status):
                self._save(project_id, plan.id, tasks)
                self.logger.info(f"Task {task.id} status changed to {status}")
        except (StoreError, OSError, ValueError) as e:
            return error_result("update task status", e, project_id=project_id, plan_id=plan_id)

        self._notify(project_id, plan.id, UpdateAction.UPDATED, [task.id])
        return OperationResult.ok(task, project_id=project_id, plan_id=plan.id)

    def update_task_summary(self, project_id: str, plan_id: str, task_id: str, summary: str) -> OperationResult:
        return self.update_task(project_id, plan_id, task_id, {"summary": summary})

    def verify_task(self, project_id: str, plan_id: str, task_id: str, score: int, summary: str) -> OperationResult:
        """Record a verification score.

        A score of ``PASSING_SCORE`` or more completes the task; anything lower
        sends it back to ``in_progress``. The summary is stored either way.
        """
        try:
            if not 0 <= score <= 100:
                raise ValidationError("Score must be between 0 and 100")
            plan = self._plan_for_write(project_id, plan_id)
            tasks = self._load(project_id, plan.id)
            task = self._find(tasks, task_id)
            if task.is_completed:
                raise ConflictError(f'Task "{task.name}" is already completed')
            target = TaskStatus.COMPLETED if score >= PASSING_SCORE else TaskStatus.IN_PROGRESS
            task.set_status(target)
            task.summary = summary
            task.updated_at = utc_now()
            self._save(project_id, plan.id, tasks)
        except (StoreError, OSError, ValueError) as e:
            return error_result("verify task", e, project_id=project_id, plan_id=plan_id)

        self._notify(project_id, plan.id, UpdateAction.UPDATED, [task.id])
        return OperationResult.ok(
            task,
            project_id=project_id,
            plan_id=plan.id,
            message=f'Task "{task.name}" scored {score}/100 and is now {task.status}',
        )

    @log_performance("task_delete")
    def delete_task(self, project_id: str, plan_id: str, task_id: str) -> OperationResult:
        """Remove a task and every sibling dependency that points at it."""
        try:
            plan = self._plan_for_write(project_id, plan_id)
            with log_operation("task_delete", project_id=project_id, plan_id=plan.id, task_id=task_id):
                tasks = self._load(project_id, plan.id)
                task = self._find(tasks, task_id)
                if task.is_completed:
                    raise ConflictError(f'Task "{task.name}" is completed and cannot be deleted')
                remaining = [t for t in tasks if t.id != task_id]
                self._strip_dependencies(remaining, {task_id})
                self._save(project_id, plan.id, remaining)
        except (StoreError, OSError, ValueError) as e:
            return error_result("delete task", e, project_id=project_id, plan_id=plan_id)

        self._notify(project_id, plan.id, UpdateAction.DELETED, [task_id])
        return OperationResult.ok(
            {"deletedTask": task.to_dict()},
            project_id=project_id,
            plan_id=plan.id,
            message=f'Task "{task.name}" deleted',
        )

    # ------------------------------------------------------------------
    # Batch operations
    # ------------------------------------------------------------------

    def clear_all_tasks(self, project_id: str, plan_id: str) -> OperationResult:
        """Back up the plan's task list, then empty it."""
        try:
            plan = self._plan_for_write(project_id, plan_id)
            with log_operation("task_clear_all", project_id=project_id, plan_id=plan.id):
                tasks = self._load(project_id, plan.id)
                backup = self._snapshot(project_id, plan, tasks)
                self._save(project_id, plan.id, [])
        except (StoreError, OSError, ValueError) as e:
            return error_result("clear tasks", e, project_id=project_id, plan_id=plan_id)

        if tasks:
            self._notify(project_id, plan.id, UpdateAction.DELETED, [t.id for t in tasks])
        message = (
            f"Cleared {len(tasks)} task(s); backup saved to {backup}"
            if backup else "No tasks to clear"
        )
        return OperationResult.ok(
            {"removed": len(tasks), "backupFile": backup},
            project_id=project_id,
            plan_id=plan.id,
            message=message,
        )

    def _snapshot(self, project_id: str, plan: Plan, tasks: List[Task]) -> Optional[str]:
        if not tasks:
            return None
        payload = {
            "plan": plan.to_dict(),
            "tasks": [t.to_dict() for t in tasks],
            "timestamp": utc_now(),
            "type": "clear",
            "description": "Backup before clearing all tasks",
        }
        return str(write_backup(self.plans.backups_dir(project_id), "tasks", plan.sanitized_name, payload))

    @log_performance("task_batch_upsert")
    def batch_upsert(
        self,
        project_id: str,
        plan_id: str,
        inputs: Sequence[TaskLike],
        update_mode: Union[UpdateMode, str] = UpdateMode.APPEND,
        global_analysis_result: Optional[str] = None,
    ) -> OperationResult:
        """Merge a batch of tasks into a plan.

        ``append`` adds every input as a new task. ``overwrite`` drops the
        unfinished tasks and keeps completed ones before adding. ``selective``
        updates existing tasks whose name matches an input and adds the rest.
        ``clearAllTasks`` backs up and empties the list before adding.
        """
        backup = None
        try:
            mode = _coerce(UpdateMode, update_mode, "update mode")
            plan = self._plan_for_write(project_id, plan_id)
            with log_operation("task_batch_upsert", project_id=project_id, plan_id=plan.id, mode=mode.value):
                batch = [_as_input(item) for item in inputs]
                if not batch:
                    raise ValidationError("Please provide at least one task")
                self._validate_inputs(batch)

                stored = self._load(project_id, plan.id)
                existing = stored
                if mode is UpdateMode.CLEAR_ALL_TASKS:
                    existing = []
                elif mode is UpdateMode.OVERWRITE:
                    kept = [t for t in stored if t.is_completed]
                    self._strip_dependencies(kept, {t.id for t in stored} - {t.id for t in kept})
                    existing = kept

                final, touched, skipped = self._merge(project_id, plan.id, existing, batch, mode,
                                                      global_analysis_result)
                if mode is UpdateMode.CLEAR_ALL_TASKS:
                    # only once the new batch has merged cleanly
                    backup = self._snapshot(project_id, plan, stored)
                self._save(project_id, plan.id, final)
        except (StoreError, OSError, ValueError, KeyError) as e:
            return error_result("upsert tasks", e, project_id=project_id, plan_id=plan_id)

        action = UpdateAction.UPDATED if mode is UpdateMode.SELECTIVE else UpdateAction.CREATED
        self._notify(project_id, plan.id, action, [t.id for t in touched])
        return OperationResult.ok(
            {"tasks": touched, "allTasks": final, "skipped": skipped, "backupFile": backup},
            project_id=project_id,
            plan_id=plan.id,
            message=self._batch_message(mode, len(touched)),
        )

    def _merge(
        self,
        project_id: str,
        plan_id: str,
        existing: List[Task],
        batch: List[TaskInput],
        mode: UpdateMode,
        analysis: Optional[str],
    ) -> Tuple[List[Task], List[Task], List[str]]:
        """Combine kept tasks with the batch; dependencies resolve against the result."""
        final = list(existing)
        by_name = {t.name: t for t in existing}
        pairs: List[Tuple[Task, TaskInput]] = []
        skipped: List[str] = []

        for item in batch:
            match = by_name.get(item.name)
            if match is not None and mode is not UpdateMode.SELECTIVE:
                raise ConflictError(f'A task named "{item.name}" already exists in this plan')
            if match is not None:
                if match.is_completed:
                    skipped.append(match.id)
                    continue
                match.description = item.description
                match.notes = item.notes
                match.related_files = list(item.related_files)
                match.implementation_guide = item.implementation_guide
                match.verification_criteria = item.verification_criteria
                match.updated_at = utc_now()
                task = match
            else:
                task = self._new_task(project_id, plan_id, item)
                final.append(task)
            if analysis:
                task.analysis_result = analysis
            pairs.append((task, item))

        for task, item in pairs:
            task.dependencies = self._resolve_dependencies(item.dependencies, final, task.id)
        if skipped:
            self.logger.info(f"Skipped {len(skipped)} completed task(s) during selective update")
        return final, [task for task, _ in pairs], skipped

    @staticmethod
    def _batch_message(mode: UpdateMode, count: int) -> str:
        if mode is UpdateMode.OVERWRITE:
            return f"Successfully cleared incomplete tasks and created {count} new tasks."
        if mode is UpdateMode.SELECTIVE:
            return f"Successfully selectively updated/created {count} tasks."
        if mode is UpdateMode.CLEAR_ALL_TASKS:
            return f"Cleared existing tasks and created {count} new tasks."
        return f"Successfully appended {count} new tasks."

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_inputs(batch: Sequence[TaskInput]) -> None:
        names = [item.name for item in batch]
        if len(set(names)) != len(names):
            raise ValidationError("Duplicate task names found in tasks parameter, please ensure each task name is unique")
        for item in batch:
            issues = item.validate()
            if issues:
                raise ValidationError(f'Invalid task "{item.name}": {", ".join(issues)}')

    @staticmethod
    def _new_task(project_id: str, plan_id: str, item: TaskInput) -> Task:
        now = utc_now()
        return Task(
            id=str(uuid.uuid4()),
            name=item.name,
            description=item.description,
            plan_id=plan_id,
            project_id=project_id,
            notes=item.notes,
            related_files=list(item.related_files),
            created_at=now,
            updated_at=now,
            implementation_guide=item.implementation_guide,
            verification_criteria=item.verification_criteria,
        )

    @staticmethod
    def _resolve_dependencies(references: Iterable[Any], tasks: Sequence[Task], task_id: str) -> List[str]:
        """Map dependency ids or names to ids of tasks in ``tasks``."""
        ids = {t.id for t in tasks}
        names = {t.name: t.id for t in tasks}
        resolved: List[str] = []
        for ref in references or []:
            if isinstance(ref, dict):
                ref = ref.get("taskId")
            dep_id = ref if ref in ids else names.get(ref)
            if dep_id is None:
                raise ValidationError(f'Dependency "{ref}" does not match any task ID or name in this plan')
            if dep_id == task_id:
                raise ValidationError("A task cannot depend on itself")
            if dep_id not in resolved:
                resolved.append(dep_id)
        return resolved

    @staticmethod
    def _strip_dependencies(tasks: Iterable[Task], removed_ids: set) -> None:
        if not removed_ids:
            return
        for task in tasks:
            if any(dep in removed_ids for dep in task.dependencies):
                task.dependencies = [dep for dep in task.dependencies if dep not in removed_ids]
