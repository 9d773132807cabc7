"""Explicitly constructed wiring of the stores.

A :class:`TaskStoreService` owns one data directory. Create one per data
directory (tests create one per temporary directory) and pass it to the
code that needs it.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional, Union

from .config import StoreSettings
from .exceptions import PlanNotFoundError, ProjectNotFoundError, error_result
from .models import OperationResult, UseCurrentContext
from .notifications import Notifier
from .plans import PlanStore
from .projects import ProjectStore
from .resolver import ProjectResolver, ResolutionOptions
from .store_logging import setup_logging
from .tasks import TaskStore


class TaskStoreService:
    """Holds settings, the notifier and the project, plan and task stores."""

    def __init__(
        self,
        settings: Optional[StoreSettings] = None,
        notifier: Optional[Notifier] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or StoreSettings.from_env()
        self.notifier = notifier or Notifier()
        self.projects = ProjectStore(self.settings, self.notifier)
        self.plans = PlanStore(self.settings, self.projects, self.notifier, clock=clock)
        self.tasks = TaskStore(self.settings, self.plans, self.notifier)
        self.resolver = ProjectResolver(self.projects)
        self.logger = logging.getLogger("taskstore.service")

    @classmethod
    def from_env(cls, configure_logging: bool = True) -> "TaskStoreService":
        settings = StoreSettings.from_env()
        if configure_logging:
            setup_logging(settings.log_level, settings.log_file)
        service = cls(settings)
        service.initialize()
        return service

    def initialize(self) -> None:
        """Create the data directory layout and load the project index."""
        self.projects.initialize()
        self.logger.info(f"taskstore ready at {self.settings.data_dir}")

    def resolve_target(
        self,
        project_identifier: Optional[str],
        plan_identifier: Union[str, UseCurrentContext, None] = None,
        options: Optional[ResolutionOptions] = None,
    ) -> OperationResult:
        """Resolve a project (by id or name) and optionally a plan inside it.

        ``plan_identifier`` may be a plan id or name, or ``CURRENT_CONTEXT``
        for the project's current plan. ``data`` holds ``project`` and
        ``plan`` (``None`` when no plan was asked for).
        """
        resolution = self.resolver.resolve(project_identifier, options)
        if not resolution.success:
            return OperationResult.fail(resolution.error, "not_found", suggestions=resolution.suggestions)

        project = resolution.project
        plan = None
        try:
            if isinstance(plan_identifier, UseCurrentContext):
                plan = self.plans.require_plan(project.id, self.plans.resolve_plan_id(project.id, plan_identifier))
            elif plan_identifier:
                plan = self.plans.find_plan(project.id, plan_identifier)
                if plan is None:
                    names = ", ".join(p.name for p in self.plans.list_plans(project.id)) or "none"
                    raise PlanNotFoundError(
                        f'Plan "{plan_identifier}" not found in project "{project.name}". Available plans: {names}.'
                    )
        except (PlanNotFoundError, ProjectNotFoundError, OSError, ValueError) as e:
            return error_result("resolve plan", e, project_id=project.id)

        return OperationResult.ok(
            {"project": project, "plan": plan},
            project_id=project.id,
            plan_id=plan.id if plan else None,
        )
