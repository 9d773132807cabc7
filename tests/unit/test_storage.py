"""Unit tests for JSON file helpers."""

import json
from datetime import datetime, timezone
from unittest.mock import patch

import pytest

from taskstore.exceptions import StorageError
from taskstore.storage import backup_path, backup_stamp, read_json, remove_tree, write_backup, write_json


class TestReadWrite:
    """Test cases for read_json and write_json."""

    def test_missing_file_returns_default_copy(self, tmp_path):
        """Test defaults for missing files are copies."""
        default = {"projects": []}
        data = read_json(tmp_path / "missing.json", default)
        assert data == default
        assert data is not default

    def test_write_then_read(self, tmp_path):
        """Test writing creates parent directories and indented JSON."""
        path = tmp_path / "nested" / "projects.json"
        write_json(path, {"projects": [{"name": "Café"}]})

        assert read_json(path) == {"projects": [{"name": "Café"}]}
        assert path.read_text(encoding="utf-8").startswith("{\n  ")
        assert list(path.parent.glob("*.tmp")) == []

    def test_malformed_file(self, tmp_path):
        """Test malformed JSON raises StorageError."""
        path = tmp_path / "bad.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StorageError):
            read_json(path)

    def test_non_object_file(self, tmp_path):
        """Test a JSON array is rejected."""
        path = tmp_path / "list.json"
        path.write_text("[]", encoding="utf-8")
        with pytest.raises(StorageError):
            read_json(path)

    def test_failed_write_keeps_previous_content(self, tmp_path):
        """Test a failed replace leaves the old file and no temp file."""
        path = tmp_path / "projects.json"
        write_json(path, {"version": 1})

        with patch("taskstore.storage.os.replace", side_effect=OSError("disk full")):
            with pytest.raises(StorageError):
                write_json(path, {"version": 2})

        assert json.loads(path.read_text(encoding="utf-8")) == {"version": 1}
        assert list(tmp_path.glob("*.tmp")) == []

    def test_remove_missing_tree(self, tmp_path):
        """Test removing a missing directory is not an error."""
        remove_tree(tmp_path / "gone")


class TestBackups:
    """Test cases for backup naming."""

    def test_stamp_format(self):
        """Test colons are dashed and fractions dropped."""
        moment = datetime(2026, 10, 17, 12, 30, 5, 123000, tzinfo=timezone.utc)
        assert backup_stamp(moment) == "2026-10-17T12-30-05"

    def test_backup_path_never_collides(self, tmp_path):
        """Test a suffix is added when the name is taken."""
        first = backup_path(tmp_path, "plan", "sprint-1", stamp="2026-10-17T12-30-05")
        first.write_text("{}", encoding="utf-8")
        second = backup_path(tmp_path, "plan", "sprint-1", stamp="2026-10-17T12-30-05")

        assert first.name == "plan_sprint-1_2026-10-17T12-30-05.json"
        assert second.name == "plan_sprint-1_2026-10-17T12-30-05-1.json"

    def test_write_backup(self, tmp_path):
        """Test two backups in a row produce two files."""
        write_backup(tmp_path, "project", "web-app", {"n": 1})
        write_backup(tmp_path, "project", "web-app", {"n": 2})
        files = sorted(tmp_path.glob("project_web-app_*.json"))
        assert len(files) == 2
