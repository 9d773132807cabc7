"""
Contract tests for the store's guaranteed properties:
sanitization idempotence, uniqueness without side effects, last-plan
protection, the confirm gate, backup-before-remove, stats correctness,
resolution precedence and suggestion ordering.
"""

import json
from pathlib import Path

import pytest

from taskstore import StoreSettings, TaskStoreService
from taskstore.naming import sanitize_name
from taskstore.storage import backup_stamp


@pytest.fixture
def service(tmp_path):
    service = TaskStoreService(StoreSettings(data_dir=tmp_path / "data"))
    service.initialize()
    return service


def snapshot_tree(root):
    """Relative paths and contents of every file under ``root``."""
    return {
        str(path.relative_to(root)): path.read_bytes()
        for path in sorted(root.rglob("*"))
        if path.is_file()
    }


class TestSanitization:
    """sanitize(sanitize(s)) == sanitize(s)."""

    @pytest.mark.parametrize("raw", [
        "Web App",
        "  leading and trailing  ",
        "a/b\\c:d*e?f\"g<h>i|j",
        "...dots...",
        "--hyphens--",
        "CON",
        "x" * 80,
        "Ünïcödé Ñame",
        "tab\tand\nnewline",
        "",
        "---",
        "a.-.b",
        "COM1.txt",
        "-.abc",
        "a.-",
        " .hidden",
    ])
    def test_idempotent(self, raw):
        """Test sanitizing twice equals sanitizing once."""
        once = sanitize_name(raw)
        assert sanitize_name(once) == once
        assert once


class TestUniqueness:
    """Colliding sanitized names fail with a conflict and leave disk untouched."""

    def test_project_collision(self, service):
        """Test a colliding project name changes nothing on disk."""
        service.projects.create("Web App")
        before = snapshot_tree(service.settings.data_dir)

        result = service.projects.create("WEB-APP")

        assert result.error_kind == "conflict"
        assert snapshot_tree(service.settings.data_dir) == before

    def test_plan_collision(self, service):
        """Test a colliding plan name changes nothing on disk."""
        project = service.projects.create("Web App").data
        service.plans.create_plan(project.id, "Sprint 1")
        before = snapshot_tree(service.settings.data_dir)

        result = service.plans.create_plan(project.id, "sprint   1")

        assert result.error_kind == "conflict"
        assert snapshot_tree(service.settings.data_dir) == before


class TestDeletionContracts:
    """Last-plan protection, the confirm gate and backup contents."""

    def test_last_plan_protection(self, service):
        """Test the sole plan cannot be deleted with either confirm value."""
        project = service.projects.create("Web App").data
        plan = service.plans.create_plan(project.id, "Sprint 1").data
        for confirm in (False, True):
            assert not service.plans.delete_plan(project.id, plan.id, confirm=confirm).success
        assert service.plans.plan_exists(project.id, plan.id)

    def test_confirm_gate_for_projects(self, service):
        """Test unconfirmed deletes change nothing and confirmed ones write one dated backup."""
        project = service.projects.create("Web App").data
        before = snapshot_tree(service.settings.data_dir)

        pending = service.projects.delete(project.id, confirm=False)
        assert pending.confirmation_required
        assert snapshot_tree(service.settings.data_dir) == before

        called_at = backup_stamp()
        service.projects.delete(project.id, confirm=True)

        backups = list(service.projects.memory_dir.glob("project_web-app_*.json"))
        assert len(backups) == 1
        assert backups[0].stem[len("project_web-app_"):][:19] >= called_at

    def test_backup_matches_state_before_delete(self, service):
        """Test the plan backup equals the stored plan and tasks prior to deletion."""
        project = service.projects.create("Web App").data
        plan = service.plans.create_plan(project.id, "Sprint 1").data
        service.plans.create_plan(project.id, "Backlog")
        service.tasks.create_task(project.id, plan.id, {"name": "Setup", "description": "Install the toolchain"})

        stored_plan = next(
            p for p in json.loads(service.plans.plans_file(project.id).read_text(encoding="utf-8"))["plans"]
            if p["id"] == plan.id
        )
        stored_tasks = json.loads(service.plans.tasks_file(project.id, plan.id).read_text(encoding="utf-8"))["tasks"]

        result = service.plans.delete_plan(project.id, plan.id, confirm=True)

        backup = json.loads(Path(result.data["backup"]["backupPath"]).read_text(encoding="utf-8"))
        assert backup["plan"] == stored_plan
        assert backup["tasks"] == stored_tasks


class TestStatsContract:
    """2 completed, 1 in progress, 1 pending, 0 blocked gives 50 percent."""

    def test_calculate_stats(self, service):
        """Test every counter and the completion rate."""
        project = service.projects.create("Web App").data
        plan = service.plans.create_plan(project.id, "Sprint 1").data
        created = service.tasks.batch_upsert(project.id, plan.id, [
            {"name": f"Task {i}", "description": "A task long enough to pass"} for i in range(4)
        ]).data["tasks"]
        for task, status in zip(created, ("completed", "completed", "in_progress")):
            service.tasks.update_task_status(project.id, plan.id, task.id, status)

        stats = service.plans.calculate_stats(project.id, plan.id)

        assert stats.total_tasks == 4
        assert stats.completed_tasks == 2
        assert stats.active_tasks == 1
        assert stats.pending_tasks == 1
        assert stats.blocked_tasks == 0
        assert stats.completion_rate == 50


class TestResolutionContracts:
    """Id precedence and suggestion ordering."""

    def test_id_precedence(self, service):
        """Test an id match wins over another project's equal name."""
        data_dir = service.settings.data_dir
        projects = [
            {"id": "abc", "name": "Foo", "sanitizedName": "foo"},
            {"id": "other-id", "name": "abc", "sanitizedName": "abc"},
        ]
        (data_dir / "projects.json").write_text(json.dumps({"projects": projects}), encoding="utf-8")
        service.projects.initialize()

        result = service.resolver.resolve("abc")

        assert result.matched_by == "id"
        assert result.project.name == "Foo"

    def test_suggestion_ordering(self, service):
        """Test my-project ranks above other for my-proj."""
        for name in ("my-project", "other", "myproj2"):
            service.projects.create(name)

        suggestions = service.resolver.resolve("my-proj").suggestions

        assert suggestions.index("my-project") == 0
        assert "other" not in suggestions or suggestions.index("other") > 0
