"""Unit tests for the plan store."""

import json
from pathlib import Path

import pytest

from taskstore.config import StoreSettings
from taskstore.models import CURRENT_CONTEXT, PlanCreationOptions
from taskstore.plans import completion_rate, stats_from_tasks
from taskstore.service import TaskStoreService


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def service(tmp_path, clock):
    service = TaskStoreService(StoreSettings(data_dir=tmp_path / "data", stats_ttl_seconds=60), clock=clock)
    service.initialize()
    return service


@pytest.fixture
def project(service):
    return service.projects.create("Web App").data


def write_tasks(service, project_id, plan_id, statuses):
    tasks = [
        {
            "id": f"t{i}",
            "name": f"Task {i}",
            "description": "A task description",
            "status": status,
            "planId": plan_id,
            "projectId": project_id,
            "createdAt": "2026-01-01T00:00:00.000Z",
            "updatedAt": f"2026-01-0{i + 1}T00:00:00.000Z",
        }
        for i, status in enumerate(statuses)
    ]
    service.plans.tasks_file(project_id, plan_id).write_text(json.dumps({"tasks": tasks}), encoding="utf-8")


class TestStatsHelpers:
    """Test cases for completion rate and stats derivation."""

    @pytest.mark.parametrize("completed,total,expected", [
        (0, 0, 0),
        (1, 2, 50),
        (1, 3, 33),
        (2, 3, 67),
        (1, 8, 13),
        (3, 3, 100),
    ])
    def test_completion_rate(self, completed, total, expected):
        """Test percentages round halves up."""
        assert completion_rate(completed, total) == expected

    def test_stats_from_tasks(self):
        """Test counting by status and picking the latest activity."""
        stats = stats_from_tasks([
            {"status": "completed", "updatedAt": "2026-01-01T00:00:00.000Z"},
            {"status": "completed", "updatedAt": "2026-01-03T00:00:00.000Z"},
            {"status": "in_progress", "updatedAt": "2026-01-02T00:00:00.000Z"},
            {"status": "pending"},
        ])
        assert (stats.total_tasks, stats.completed_tasks, stats.active_tasks, stats.pending_tasks) == (4, 2, 1, 1)
        assert stats.completion_rate == 50
        assert stats.last_activity == "2026-01-03T00:00:00.000Z"


class TestCreatePlan:
    """Test cases for plan creation."""

    def test_create(self, service, project):
        """Test the plan directory and empty task list are created."""
        result = service.plans.create_plan(project.id, PlanCreationOptions(name="Sprint 1", tags=["q1"]))

        assert result.success
        plan = result.data
        assert plan.sanitized_name == "sprint-1"
        assert plan.project_id == project.id
        assert json.loads(service.plans.tasks_file(project.id, plan.id).read_text(encoding="utf-8")) == {"tasks": []}
        assert service.plans.plan_exists(project.id, plan.id)

    def test_unknown_project(self, service):
        """Test creating a plan in a missing project."""
        result = service.plans.create_plan("nope", "Sprint 1")
        assert result.error_kind == "not_found"

    def test_names_unique_per_project_only(self, service, project):
        """Test the same plan name may exist in two projects but not twice in one."""
        other = service.projects.create("Mobile App").data
        assert service.plans.create_plan(project.id, "Sprint 1").success
        assert service.plans.create_plan(other.id, "Sprint 1").success

        duplicate = service.plans.create_plan(project.id, "sprint 1")
        assert duplicate.error_kind == "conflict"
        assert len(service.plans.list_plans(project.id)) == 1

    def test_invalid_name(self, service, project):
        """Test invalid plan names."""
        result = service.plans.create_plan(project.id, "   ")
        assert result.error_kind == "validation"

    def test_copy_from_plan(self, service, project):
        """Test cloned tasks are re-owned and counted."""
        source = service.plans.create_plan(project.id, "Sprint 1").data
        write_tasks(service, project.id, source.id, ["completed", "pending"])

        clone = service.plans.create_plan(
            project.id, PlanCreationOptions(name="Sprint 2", copy_from_plan=source.id)
        ).data

        tasks = service.tasks.list_tasks(project.id, clone.id)
        assert {t.plan_id for t in tasks} == {clone.id}
        assert clone.stats.total_tasks == 2
        assert service.projects.get(project.id).stats.total_tasks == 2

    def test_missing_parent(self, service, project):
        """Test a parent plan must exist."""
        result = service.plans.create_plan(project.id, PlanCreationOptions(name="Child", parent_plan_id="nope"))
        assert result.error_kind == "not_found"


class TestFindAndList:
    """Test cases for plan lookup."""

    def test_find_plan(self, service, project):
        """Test lookup by id, name, sanitized name and case-insensitively."""
        plan = service.plans.create_plan(project.id, "Sprint 1").data
        for identifier in (plan.id, "Sprint 1", "sprint-1", "SPRINT 1"):
            assert service.plans.find_plan(project.id, identifier).id == plan.id
        assert service.plans.find_plan(project.id, "Sprint 9") is None

    def test_list_filters(self, service, project):
        """Test status and tag filters with name sorting."""
        service.plans.create_plan(project.id, PlanCreationOptions(name="B", tags=["x"]))
        a = service.plans.create_plan(project.id, PlanCreationOptions(name="A", tags=["y"])).data
        service.plans.update_plan(project.id, a.id, {"status": "archived"})

        assert [p.name for p in service.plans.list_plans(project.id, sort_by="name", sort_order="asc")] == ["A", "B"]
        assert [p.name for p in service.plans.list_plans(project.id, status="archived")] == ["A"]
        assert [p.name for p in service.plans.list_plans(project.id, tags=["x"])] == ["B"]

    def test_get_plan_missing_project(self, service):
        """Test reads for missing projects return None."""
        assert service.plans.get_plan("nope", "pl1") is None


class TestUpdatePlan:
    """Test cases for plan updates."""

    def test_rename_and_status(self, service, project):
        """Test renaming re-sanitizes and status is validated."""
        plan = service.plans.create_plan(project.id, "Sprint 1").data
        result = service.plans.update_plan(project.id, plan.id, {"name": "Sprint One", "status": "completed"})
        assert result.data.sanitized_name == "sprint-one"
        assert result.data.status == "completed"

        bad = service.plans.update_plan(project.id, plan.id, {"status": "done"})
        assert bad.error_kind == "validation"

    def test_own_parent(self, service, project):
        """Test a plan cannot be its own parent."""
        plan = service.plans.create_plan(project.id, "Sprint 1").data
        assert service.plans.update_plan(project.id, plan.id, {"parent_plan_id": plan.id}).error_kind == "conflict"


class TestDeletePlan:
    """Test cases for plan deletion."""

    def test_last_plan_cannot_be_deleted(self, service, project):
        """Test the only plan survives with and without confirm."""
        plan = service.plans.create_plan(project.id, "Sprint 1").data

        for confirm in (False, True):
            result = service.plans.delete_plan(project.id, plan.id, confirm=confirm)
            assert not result.success
            assert result.error_kind == "conflict"
        assert service.plans.plan_exists(project.id, plan.id)

    def test_requires_confirmation(self, service, project):
        """Test the confirmation summary and that nothing changes."""
        plan = service.plans.create_plan(project.id, "Sprint 1").data
        service.plans.create_plan(project.id, "Sprint 2")
        write_tasks(service, project.id, plan.id, ["pending", "pending"])

        result = service.plans.delete_plan(project.id, plan.id)

        assert result.success and result.confirmation_required
        assert result.data["taskCount"] == 2
        assert service.plans.plan_exists(project.id, plan.id)

    def test_confirmed_delete(self, service, project):
        """Test backup contents, removal and context clearing."""
        plan = service.plans.create_plan(project.id, "Sprint 1").data
        service.plans.create_plan(project.id, "Sprint 2")
        write_tasks(service, project.id, plan.id, ["completed", "pending"])
        service.plans.switch_plan(project.id, plan.id)

        result = service.plans.delete_plan(project.id, plan.id, confirm=True)

        assert result.success
        backup = json.loads(Path(result.data["backup"]["backupPath"]).read_text(encoding="utf-8"))
        assert backup["plan"]["id"] == plan.id
        assert [t["id"] for t in backup["tasks"]] == ["t0", "t1"]
        assert not service.plans.plan_path(project.id, plan.id).exists()
        assert service.plans.get_plan(project.id, plan.id) is None
        assert service.plans.get_current_context(project.id).current_plan_id is None
        assert service.plans.get_current_plan(project.id) is None


class TestCurrentPlan:
    """Test cases for switching plans."""

    def test_switch_only_touches_context(self, service, project):
        """Test switching changes the pointer and not the plans."""
        first = service.plans.create_plan(project.id, "Sprint 1").data
        second = service.plans.create_plan(project.id, "Sprint 2").data
        before = service.plans.plans_file(project.id).read_text(encoding="utf-8")

        assert service.plans.switch_plan(project.id, second.id).success

        assert service.plans.get_plan(project.id, CURRENT_CONTEXT).id == second.id
        assert service.plans.plans_file(project.id).read_text(encoding="utf-8") == before
        saved = json.loads(service.plans.context_file(project.id).read_text(encoding="utf-8"))
        assert saved["currentPlanId"] == second.id
        assert service.plans.get_plan(project.id, first.id).id == first.id

    def test_switch_to_missing_plan(self, service, project):
        """Test switching to an unknown plan."""
        assert service.plans.switch_plan(project.id, "nope").error_kind == "not_found"

    def test_no_current_plan(self, service, project):
        """Test CURRENT_CONTEXT without a selected plan reads as None."""
        service.plans.create_plan(project.id, "Sprint 1")
        assert service.plans.get_plan(project.id, CURRENT_CONTEXT) is None


class TestPlanStats:
    """Test cases for cached statistics and the project rollup."""

    def test_counts_and_rate(self, service, project):
        """Test 2 completed, 1 active, 1 pending gives 50 percent."""
        plan = service.plans.create_plan(project.id, "Sprint 1").data
        write_tasks(service, project.id, plan.id, ["completed", "completed", "in_progress", "pending"])

        stats = service.plans.get_plan_stats(project.id, plan.id)

        assert (stats.total_tasks, stats.completed_tasks, stats.active_tasks, stats.pending_tasks) == (4, 2, 1, 1)
        assert stats.completion_rate == 50
        assert service.plans.get_plan(project.id, plan.id).stats.completion_rate == 50

    def test_cache_respects_ttl(self, service, project, clock):
        """Test cached stats are reused inside the TTL and refreshed after it."""
        plan = service.plans.create_plan(project.id, "Sprint 1").data
        write_tasks(service, project.id, plan.id, ["pending"])
        assert service.plans.get_plan_stats(project.id, plan.id).total_tasks == 1

        write_tasks(service, project.id, plan.id, ["pending", "pending"])
        clock.now += 30
        assert service.plans.get_plan_stats(project.id, plan.id).total_tasks == 1
        assert service.plans.get_plan_stats(project.id, plan.id, force_refresh=True).total_tasks == 2

        write_tasks(service, project.id, plan.id, ["pending", "pending", "pending"])
        clock.now += 61
        assert service.plans.get_plan_stats(project.id, plan.id).total_tasks == 3

    def test_rollup_sums_plans(self, service, project):
        """Test project stats are the sum over its plans."""
        first = service.plans.create_plan(project.id, "Sprint 1").data
        second = service.plans.create_plan(project.id, "Sprint 2").data
        write_tasks(service, project.id, first.id, ["completed", "pending"])
        write_tasks(service, project.id, second.id, ["in_progress"])

        service.plans.update_plan_stats(project.id, first.id)
        service.plans.update_plan_stats(project.id, second.id)

        stats = service.projects.get(project.id).stats
        assert (stats.total_tasks, stats.completed_tasks, stats.active_tasks) == (3, 1, 1)

    def test_stats_for_missing_plan(self, service, project):
        """Test stats of unknown plans are None."""
        assert service.plans.get_plan_stats(project.id, "nope") is None

    def test_calculate_does_not_persist(self, service, project):
        """Test calculate_stats leaves plans.json alone."""
        plan = service.plans.create_plan(project.id, "Sprint 1").data
        write_tasks(service, project.id, plan.id, ["completed"])
        assert service.plans.calculate_stats(project.id, plan.id).completed_tasks == 1
        assert service.plans.get_plan(project.id, plan.id).stats.completed_tasks == 0
