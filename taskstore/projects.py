"""Project store: the global project index and per-project directories.

``projects.json`` holds every project's metadata. Each project owns
``projects/{id}/`` (its plans live below that, managed by the plan store).
Project backups written before deletion go to ``memory/``.
"""

from __future__ import annotations

import logging
import uuid
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from .config import StoreSettings
from .exceptions import (
    ConflictError,
    NameValidationError,
    ProjectNotFoundError,
    StoreError,
    ValidationError,
    error_result,
)
from .models import (
    OperationResult,
    Project,
    ProjectConfig,
    ProjectContext,
    ProjectCreationOptions,
    ProjectQuery,
    ProjectStats,
    ProjectStatus,
    UpdateAction,
    UpdateKind,
    parse_timestamp,
    utc_now,
)
from .naming import validate_name
from .notifications import Notifier
from .storage import copy_tree, read_json, remove_tree, write_backup, write_json
from .store_logging import log_operation, log_performance

PROJECTS_FILE = "projects.json"
CONTEXT_FILE = "project-context.json"
PROJECTS_DIR = "projects"
MEMORY_DIR = "memory"

PROTECTED_PROJECT_IDS = frozenset({"default"})
UPDATABLE_FIELDS = frozenset({"name", "description", "status", "tags", "config"})
SORT_FIELDS = ("name", "createdAt", "updatedAt", "lastActivity")

_EPOCH = parse_timestamp("1970-01-01T00:00:00Z")


def _unique(values) -> List[str]:
    seen: Dict[str, None] = {}
    for value in values or []:
        seen.setdefault(value, None)
    return list(seen)


class ProjectStore:
    """Create, list, update and delete projects.

    The in-memory index (``id -> Project``) is a full snapshot of
    ``projects.json`` and is rebuilt from disk after every write.
    """

    def __init__(self, settings: StoreSettings, notifier: Optional[Notifier] = None):
        self.settings = settings
        self.data_dir = Path(settings.data_dir)
        self.notifier = notifier or Notifier()
        self.logger = logging.getLogger("taskstore.projects")
        self._index: Dict[str, Project] = {}
        self._context: Optional[ProjectContext] = None
        self._initialized = False

    # ------------------------------------------------------------------
    # Paths and loading
    # ------------------------------------------------------------------

    @property
    def projects_file(self) -> Path:
        return self.data_dir / PROJECTS_FILE

    @property
    def context_file(self) -> Path:
        return self.data_dir / CONTEXT_FILE

    @property
    def memory_dir(self) -> Path:
        return self.data_dir / MEMORY_DIR

    def project_path(self, project_id: str) -> Path:
        return self.data_dir / PROJECTS_DIR / project_id

    def initialize(self) -> None:
        """Create the data directory layout and load the index and context."""
        with log_operation("project_store_initialize", data_dir=str(self.data_dir)):
            for directory in (self.data_dir, self.data_dir / PROJECTS_DIR, self.memory_dir):
                directory.mkdir(parents=True, exist_ok=True)
            if not self.projects_file.exists():
                write_json(self.projects_file, {"projects": []})
            self._reload_index()
            self._load_context()
            self._initialized = True

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            self.initialize()

    def _read_projects(self) -> List[Project]:
        data = read_json(self.projects_file, {"projects": []})
        return [Project.from_dict(item) for item in data.get("projects", [])]

    def _write_projects(self, projects: List[Project]) -> None:
        write_json(self.projects_file, {"projects": [p.to_dict() for p in projects]})
        self._reload_index()

    def _reload_index(self) -> None:
        self._index = {project.id: project for project in self._read_projects()}

    def _load_context(self) -> None:
        if self.context_file.exists():
            self._context = ProjectContext.from_dict(read_json(self.context_file), data_directory=str(self.data_dir))
        else:
            self._context = ProjectContext(data_directory=str(self.data_dir))
        self._context.data_directory = str(self.data_dir)
        if self._context.current_project_id and self._context.current_project_id not in self._index:
            self.logger.warning(f"Current project {self._context.current_project_id} no longer exists, clearing")
            self._context.clear_current()
        self._save_context()

    def _save_context(self) -> None:
        context = self._context
        context.available_projects = list(self._index.values())
        if context.current_project_id:
            context.current_project = self._index.get(context.current_project_id)
        write_json(self.context_file, context.to_dict())

    def _require(self, project_id: str) -> Project:
        project = self._index.get(project_id)
        if project is None:
            raise ProjectNotFoundError(f'Project "{project_id}" not found')
        return project

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get(self, project_id: str) -> Optional[Project]:
        self._ensure_initialized()
        return self._index.get(project_id)

    def exists(self, project_id: str) -> bool:
        self._ensure_initialized()
        return project_id in self._index and self.project_path(project_id).is_dir()

    def all(self) -> List[Project]:
        """Every project in index order."""
        self._ensure_initialized()
        return list(self._index.values())

    def list(self, query: Optional[ProjectQuery] = None) -> List[Project]:
        """Filter, sort and paginate projects."""
        self._ensure_initialized()
        query = query or ProjectQuery()
        projects = list(self._index.values())

        if query.status:
            status = getattr(query.status, "value", query.status)
            projects = [p for p in projects if p.status == status]
        if query.tags:
            wanted = set(query.tags)
            projects = [p for p in projects if wanted.intersection(p.tags)]
        if query.name_pattern:
            pattern = query.name_pattern.lower()
            projects = [
                p for p in projects
                if pattern in p.name.lower() or pattern in (p.description or "").lower()
            ]

        sort_by = query.sort_by if query.sort_by in SORT_FIELDS else "updatedAt"
        projects.sort(key=lambda p: self._sort_key(p, sort_by), reverse=query.sort_order != "asc")

        offset = max(query.offset or 0, 0)
        if query.limit:
            return projects[offset:offset + query.limit]
        return projects[offset:] if offset else projects

    @staticmethod
    def _sort_key(project: Project, sort_by: str):
        if sort_by == "name":
            return project.name.lower()
        if sort_by == "createdAt":
            return parse_timestamp(project.created_at) or _EPOCH
        if sort_by == "lastActivity":
            return parse_timestamp(project.stats.last_activity) or _EPOCH
        return parse_timestamp(project.updated_at) or _EPOCH

    def is_multi_project(self) -> bool:
        self._ensure_initialized()
        return bool(self._context and self._context.is_multi_project)

    def get_current_context(self) -> ProjectContext:
        self._ensure_initialized()
        return self._context

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @log_performance("project_create")
    def create(self, options: Union[ProjectCreationOptions, str]) -> OperationResult:
        """Create a project and its directory.

        Fails with a validation error for illegal names and a conflict when
        another project already has the same sanitized name; in both cases
        nothing is written.
        """
        if isinstance(options, str):
            options = ProjectCreationOptions(name=options)
        try:
            self._ensure_initialized()
            with log_operation("project_create", name=options.name):
                project = self._create(options)
        except (StoreError, OSError, ValueError) as e:
            return error_result("create project", e, name=options.name)

        self.notifier.notify(project.id, UpdateKind.PROJECTS, UpdateAction.CREATED, {"project": project.to_dict()})
        return OperationResult.ok(project, project_id=project.id, message=f'Project "{project.name}" created')

    def _create(self, options: ProjectCreationOptions) -> Project:
        validation = validate_name(options.name)
        if not validation.is_valid:
            raise NameValidationError(
                f"Invalid project name: {', '.join(validation.errors)}",
                errors=validation.errors,
                sanitized_name=validation.sanitized_name,
            )

        projects = self._read_projects()
        sanitized = validation.sanitized_name
        if any(p.sanitized_name == sanitized for p in projects):
            raise ConflictError(f'A project with the name "{sanitized}" already exists')

        source = None
        if options.copy_from_project:
            source = next((p for p in projects if p.id == options.copy_from_project), None)
            if source is None:
                raise ProjectNotFoundError(f'Source project "{options.copy_from_project}" not found')

        now = utc_now()
        config = ProjectConfig(
            template_language=self.settings.template_language,
            auto_backup=self.settings.auto_backup,
        ).merged(options.config)
        project = Project(
            id=str(uuid.uuid4()),
            name=options.name,
            sanitized_name=sanitized,
            description=options.description,
            status=ProjectStatus.ACTIVE.value,
            created_at=now,
            updated_at=now,
            tags=_unique(options.tags),
            config=config,
            stats=ProjectStats(last_activity=now),
        )

        project_dir = self.project_path(project.id)
        project_dir.mkdir(parents=True, exist_ok=False)
        if source is not None:
            self._copy_project_data(source, project)

        projects.append(project)
        self._write_projects(projects)

        if len(projects) > 1 and not self._context.is_multi_project:
            self._context.is_multi_project = True
            self.logger.info("Switched to multi-project mode")
        self._save_context()

        self.logger.info(f"Created project {project.name} ({project.id})")
        return project

    def _copy_project_data(self, source: Project, target: Project) -> None:
        """Copy the plan index and plan directories of ``source`` into ``target``."""
        source_dir = self.project_path(source.id)
        target_dir = self.project_path(target.id)
        plans_file = source_dir / "plans.json"
        if plans_file.exists():
            data = read_json(plans_file, {"plans": []})
            for plan in data.get("plans", []):
                plan["projectId"] = target.id
            write_json(target_dir / "plans.json", data)
        if (source_dir / "plans").is_dir():
            copy_tree(source_dir / "plans", target_dir / "plans")
        target.stats = ProjectStats.from_dict(source.stats.to_dict())
        self.logger.info(f"Copied data from project {source.id} to {target.id}")

    @log_performance("project_update")
    def update(self, project_id: str, patch: Dict[str, Any]) -> OperationResult:
        """Apply ``patch`` (name, description, status, tags, config) to a project."""
        try:
            self._ensure_initialized()
            with log_operation("project_update", project_id=project_id):
                project = self._update(project_id, dict(patch or {}))
        except (StoreError, OSError, ValueError) as e:
            return error_result("update project", e, project_id=project_id)

        self.notifier.notify(project.id, UpdateKind.PROJECTS, UpdateAction.UPDATED, {"project": project.to_dict()})
        return OperationResult.ok(project, project_id=project.id)

    def _update(self, project_id: str, patch: Dict[str, Any]) -> Project:
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update project fields: {', '.join(sorted(unknown))}")

        projects = self._read_projects()
        project = next((p for p in projects if p.id == project_id), None)
        if project is None:
            raise ProjectNotFoundError(f'Project "{project_id}" not found')

        new_name = patch.get("name")
        if new_name is not None and new_name != project.name:
            validation = validate_name(new_name)
            if not validation.is_valid:
                raise NameValidationError(
                    f"Invalid project name: {', '.join(validation.errors)}",
                    errors=validation.errors,
                    sanitized_name=validation.sanitized_name,
                )
            if any(p.id != project_id and p.sanitized_name == validation.sanitized_name for p in projects):
                raise ConflictError(f'A project with the name "{validation.sanitized_name}" already exists')
            project.name = new_name
            project.sanitized_name = validation.sanitized_name

        if "status" in patch:
            status = getattr(patch["status"], "value", patch["status"])
            if status not in {s.value for s in ProjectStatus}:
                raise ValidationError(f"Invalid project status: {status}")
            project.status = status
        if "description" in patch:
            project.description = patch["description"]
        if "tags" in patch:
            project.tags = _unique(patch["tags"])
        if "config" in patch:
            project.config = project.config.merged(patch["config"])

        project.updated_at = utc_now()
        self._write_projects(projects)
        if self._context.current_project_id == project_id:
            self._save_context()
        return self._index[project_id]

    def update_project_stats(self, project_id: str, stats: Union[ProjectStats, Dict[str, Any]]) -> OperationResult:
        """Persist rolled-up task counts for a project."""
        try:
            self._ensure_initialized()
            projects = self._read_projects()
            project = next((p for p in projects if p.id == project_id), None)
            if project is None:
                raise ProjectNotFoundError(f'Project "{project_id}" not found')
            current = project.stats.to_dict()
            current.update(stats.to_dict() if isinstance(stats, ProjectStats) else stats)
            project.stats = ProjectStats.from_dict(current)
            project.updated_at = utc_now()
            self._write_projects(projects)
            if self._context.current_project_id == project_id:
                self._save_context()
        except (StoreError, OSError, ValueError) as e:
            return error_result("update project stats", e, project_id=project_id)
        return OperationResult.ok(self._index[project_id].stats, project_id=project_id)

    def set_current(self, project_id: str) -> OperationResult:
        """Point the advisory current-project context at ``project_id``."""
        try:
            self._ensure_initialized()
            if not self.exists(project_id):
                raise ProjectNotFoundError(f'Project "{project_id}" not found')
            self._context.current_project_id = project_id
            self._save_context()
        except (StoreError, OSError, ValueError) as e:
            return error_result("set current project", e, project_id=project_id)
        self.logger.info(f"Current project set to {project_id}")
        return OperationResult.ok(self._index[project_id], project_id=project_id)

    @log_performance("project_delete")
    def delete(self, project_id: str, confirm: bool = False) -> OperationResult:
        """Delete a project.

        Without ``confirm`` nothing is touched and a confirmation result with
        a summary of what would be removed is returned. With ``confirm`` the
        project is first written to a backup snapshot, then removed.
        """
        try:
            self._ensure_initialized()
            project = self._require(project_id)
            if project_id in PROTECTED_PROJECT_IDS:
                raise ConflictError(f'Project "{project.name}" is protected and cannot be deleted')

            plans, tasks = self._collect_project_data(project_id)
            task_count = sum(len(items) for items in tasks.values())
            if not confirm:
                summary = {"project": project.to_dict(), "planCount": len(plans), "taskCount": task_count}
                return OperationResult.confirmation(
                    f'Deleting project "{project.name}" will remove {len(plans)} plan(s) and '
                    f"{task_count} task(s). Call again with confirm=True to proceed.",
                    data=summary,
                    project_id=project_id,
                )

            with log_operation("project_delete", project_id=project_id):
                backup = self._backup(project, plans, tasks)
                remove_tree(self.project_path(project_id))
                self._write_projects([p for p in self._read_projects() if p.id != project_id])
                if self._context.current_project_id == project_id:
                    self._context.clear_current()
                self._save_context()
        except (StoreError, OSError, ValueError) as e:
            return error_result("delete project", e, project_id=project_id)

        self.notifier.notify(project_id, UpdateKind.PROJECTS, UpdateAction.DELETED, {"projectId": project_id})
        return OperationResult.ok(
            {"deletedProject": project.to_dict(), "backup": backup},
            project_id=project_id,
            message=f'Project "{project.name}" deleted',
        )

    def _collect_project_data(self, project_id: str):
        project_dir = self.project_path(project_id)
        plans = read_json(project_dir / "plans.json", {"plans": []}).get("plans", [])
        tasks = {}
        for plan in plans:
            tasks_file = project_dir / "plans" / plan["id"] / "tasks.json"
            tasks[plan["id"]] = read_json(tasks_file, {"tasks": []}).get("tasks", [])
        return plans, tasks

    def _backup(self, project: Project, plans: List[Dict[str, Any]], tasks: Dict[str, List[Dict[str, Any]]]) -> Dict[str, Any]:
        created_at = utc_now()
        payload = {
            "project": project.to_dict(),
            "plans": plans,
            "tasks": tasks,
            "timestamp": created_at,
            "type": "manual",
            "description": "Pre-deletion backup",
        }
        path = write_backup(self.memory_dir, "project", project.sanitized_name, payload)
        return {
            "id": str(uuid.uuid4()),
            "projectId": project.id,
            "createdAt": created_at,
            "filePath": str(path),
            "size": path.stat().st_size,
            "type": "manual",
            "description": "Pre-deletion backup",
        }
