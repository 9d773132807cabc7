"""Unit tests for project identifier resolution."""

import json

import pytest

from taskstore.config import StoreSettings
from taskstore.exceptions import ProjectNotFoundError
from taskstore.projects import ProjectStore
from taskstore.resolver import ProjectResolver, ResolutionOptions, similarity, suggest, validate_identifier


@pytest.fixture
def projects(tmp_path):
    store = ProjectStore(StoreSettings(data_dir=tmp_path / "data"))
    store.initialize()
    return store


@pytest.fixture
def resolver(projects):
    return ProjectResolver(projects)


class TestSimilarity:
    """Test cases for the name similarity score."""

    def test_scores(self):
        """Test identity, containment, shared prefix and no overlap."""
        assert similarity("web", "web") == 1.0
        assert similarity("my-proj", "my-project") == 0.8
        assert similarity("abcd", "abxy") == pytest.approx(0.5 + 0.5 * 0.3)
        assert similarity("abc", "xyz") == 0.0

    def test_suggest_ranks_and_drops_zero(self):
        """Test closest names first and unrelated names dropped."""
        assert suggest("my-proj", ["other", "myproj2", "my-project"], 3) == ["my-project", "myproj2"]

    def test_suggest_limit(self):
        """Test the suggestion count is capped."""
        assert suggest("app", ["app-a", "app-b", "app-c", "app-d"], 2) == ["app-a", "app-b"]


class TestResolve:
    """Test cases for ProjectResolver.resolve."""

    def test_resolution_paths(self, projects, resolver):
        """Test id, name, sanitized name and case-insensitive matches."""
        project = projects.create("Web App").data

        assert resolver.resolve(project.id).matched_by == "id"
        assert resolver.resolve("Web App").matched_by == "name"
        assert resolver.resolve("web-app").matched_by == "sanitizedName"
        insensitive = resolver.resolve("WEB APP")
        assert insensitive.success and insensitive.resolved_id == project.id

    def test_case_sensitive_option(self, projects, resolver):
        """Test case-insensitive matching can be turned off."""
        projects.create("Web App")
        assert not resolver.resolve("WEB APP", ResolutionOptions(case_insensitive=False)).success

    def test_id_wins_over_name(self, projects, resolver):
        """Test a project whose id equals another project's name is found by id."""
        named = projects.create("Shadow").data
        target = projects.create("Target").data
        data = json.loads(projects.projects_file.read_text(encoding="utf-8"))
        for item in data["projects"]:
            if item["id"] == target.id:
                item["id"] = "Shadow"
        projects.projects_file.write_text(json.dumps(data), encoding="utf-8")
        projects.project_path(target.id).rename(projects.project_path("Shadow"))
        projects.initialize()

        result = resolver.resolve("Shadow")

        assert result.matched_by == "id"
        assert result.project.name == "Target"
        assert result.project.id != named.id

    def test_not_found_message(self, projects, resolver):
        """Test the error lists available projects and suggestions."""
        for name in ("my-project", "other", "myproj2"):
            projects.create(name)

        result = resolver.resolve("my-proj")

        assert not result.success
        assert result.suggestions[0] == "my-project"
        assert "other" not in result.suggestions
        assert result.error.startswith('Project "my-proj" not found. Available projects: ')
        assert "Did you mean: my-project" in result.error

    def test_no_projects(self, resolver):
        """Test the message when nothing exists."""
        result = resolver.resolve("anything")
        assert result.error == 'Project "anything" not found. No projects are currently available.'
        assert result.suggestions == []

    def test_empty_identifier(self, projects, resolver):
        """Test empty identifiers list some project names."""
        projects.create("Alpha")
        result = resolver.resolve("  ")
        assert result.error == "Project identifier is required. Please specify a project name or ID."
        assert result.suggestions == ["Alpha"]

    def test_require_raises(self, resolver):
        """Test require turns failures into ProjectNotFoundError."""
        with pytest.raises(ProjectNotFoundError):
            resolver.require("missing")

    def test_helpers(self, projects, resolver):
        """Test resolve_id, exists and resolve_many."""
        project = projects.create("Web App").data
        assert resolver.resolve_id("web-app") == project.id
        assert resolver.exists("Web App")
        assert [r.success for r in resolver.resolve_many(["web-app", "nope"])] == [True, False]


class TestValidateIdentifier:
    """Test cases for identifier classification."""

    def test_uuid(self):
        """Test uuids are recognised."""
        result = validate_identifier("123e4567-e89b-42d3-a456-426614174000")
        assert result.is_valid and result.is_uuid

    def test_name(self):
        """Test names are validated and sanitized."""
        result = validate_identifier("Web App")
        assert result.is_valid and result.is_project_name
        assert result.sanitized_name == "web-app"

    def test_empty(self):
        """Test empty identifiers."""
        assert not validate_identifier("").is_valid
        assert not validate_identifier("   ").is_valid
