"""
Integration test for the Web App / Sprint 1 scenario.

Drives a project through plan creation, task work, stats and plan deletion
using a single TaskStoreService on a temporary data directory.
"""

import json
from pathlib import Path

import pytest

from taskstore import CURRENT_CONTEXT, StoreSettings, TaskInput, TaskStoreService


class TestWebAppScenario:
    """End-to-end flow over projects, plans and tasks."""

    @pytest.fixture
    def service(self, tmp_path):
        service = TaskStoreService(StoreSettings(data_dir=tmp_path / "data"))
        service.initialize()
        return service

    @pytest.fixture
    def events(self, service):
        received = []
        service.notifier.subscribe(received.append)
        return received

    def build_sprint(self, service):
        """Create Web App / Sprint 1 with two tasks, one of them completed."""
        project = service.projects.create("Web App").data
        plan = service.plans.create_plan(project.id, "Sprint 1").data
        result = service.tasks.batch_upsert(project.id, plan.id, [
            TaskInput(name="Login page", description="Build the login form and its validation"),
            TaskInput(name="Session API", description="Expose session endpoints for the login page",
                      dependencies=["Login page"]),
        ])
        login, session = result.data["tasks"]
        service.tasks.update_task_status(project.id, plan.id, login.id, "completed")
        return project, plan, login, session

    def test_only_plan_cannot_be_deleted(self, service):
        """
        Given: Web App whose only plan is Sprint 1
        When: Sprint 1 is deleted without and with confirm
        Then: Both calls fail and the plan stays listed
        """
        project, plan, _, _ = self.build_sprint(service)

        stats = service.plans.get_plan_stats(project.id, plan.id)
        assert stats.completion_rate == 50

        for confirm in (False, True):
            result = service.plans.delete_plan(project.id, plan.id, confirm=confirm)
            assert not result.success
            assert result.error_kind == "conflict"

        assert [p.id for p in service.plans.list_plans(project.id)] == [plan.id]
        assert list(service.plans.backups_dir(project.id).glob("plan_*.json")) == []

    def test_delete_with_sibling_plan(self, service, events):
        """
        Given: Web App with Sprint 1 and a Backlog plan
        When: Sprint 1 is deleted without confirm, then with confirm
        Then: The first call only asks for confirmation, the second removes the plan after one backup
        """
        project, plan, login, session = self.build_sprint(service)
        backlog = service.plans.create_plan(project.id, "Backlog").data
        service.plans.switch_plan(project.id, plan.id)

        assert service.plans.get_plan_stats(project.id, CURRENT_CONTEXT).completion_rate == 50
        executable = service.tasks.can_execute_task(project.id, CURRENT_CONTEXT, session.id)
        assert executable.data == {"executable": True, "blockedBy": []}

        pending = service.plans.delete_plan(project.id, plan.id)
        assert pending.success and pending.confirmation_required
        assert pending.data["taskCount"] == 2
        assert plan.id in [p.id for p in service.plans.list_plans(project.id)]

        deleted = service.plans.delete_plan(project.id, plan.id, confirm=True)
        assert deleted.success

        backups = list(service.plans.backups_dir(project.id).glob("plan_sprint-1_*.json"))
        assert len(backups) == 1
        snapshot = json.loads(backups[0].read_text(encoding="utf-8"))
        assert {t["name"] for t in snapshot["tasks"]} == {"Login page", "Session API"}

        assert [p.id for p in service.plans.list_plans(project.id)] == [backlog.id]
        assert service.plans.get_current_plan(project.id) is None
        assert service.projects.get(project.id).stats.total_tasks == 0
        assert ("plans", "deleted") in [(e.update_kind, e.action) for e in events]

    def test_resolve_and_work_by_name(self, service):
        """
        Given: Web App / Sprint 1
        When: The target is resolved by user-facing names
        Then: Task reads through the resolved ids see the sprint's tasks
        """
        project, plan, login, _ = self.build_sprint(service)

        target = service.resolve_target("web app", "sprint-1")

        assert target.success
        assert target.data["project"].id == project.id
        tasks = service.tasks.list_tasks(target.project_id, target.plan_id, status="completed")
        assert [t.id for t in tasks] == [login.id]

    def test_project_delete_removes_everything(self, service):
        """
        Given: Web App / Sprint 1 with tasks
        When: The project is deleted with confirm
        Then: Its backup holds the plans and tasks and the directory is gone
        """
        project, plan, _, _ = self.build_sprint(service)

        result = service.projects.delete(project.id, confirm=True)

        assert result.success
        snapshot = json.loads(Path(result.data["backup"]["filePath"]).read_text(encoding="utf-8"))
        assert [p["id"] for p in snapshot["plans"]] == [plan.id]
        assert len(snapshot["tasks"][plan.id]) == 2
        assert not service.projects.project_path(project.id).exists()
        assert not service.resolve_target("Web App").success
