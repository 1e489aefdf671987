"""Unit tests for PlanTrack workspace storage.

This module tests plan storage, identifier allocation and run snapshot
persistence.
"""

import json
import tempfile
from pathlib import Path

import pytest

from plantrack.config import get_settings
from plantrack.workspace import Workspace


class TestWorkspaceInitialization:
    """Test cases for Workspace initialization."""

    def test_workspace_creation(self):
        """Test creating a workspace with a valid root."""
        with tempfile.TemporaryDirectory() as temp_dir:
            workspace = Workspace(temp_dir)

            assert workspace.root == Path(temp_dir).resolve()
            assert workspace.base_dir == workspace.root / ".plantrack"
            assert workspace.plans_dir.is_dir()
            assert workspace.runs_dir.is_dir()

    def test_custom_storage_dir(self, tmp_path):
        workspace = Workspace(tmp_path, storage_dir=".custom")
        assert workspace.base_dir == tmp_path.resolve() / ".custom"

    def test_storage_dir_from_environment(self, tmp_path, monkeypatch):
        monkeypatch.setenv("PLANTRACK_STORAGE_DIR", ".from-env")
        get_settings.cache_clear()
        assert Workspace(tmp_path).base_dir.name == ".from-env"

    def test_unwritable_root(self, tmp_path):
        blocker = tmp_path / "file"
        blocker.write_text("not a directory")
        with pytest.raises(RuntimeError, match="Could not initialize workspace"):
            Workspace(blocker)


class TestPlanStorage:
    """Test cases for plan storage."""

    def test_save_assigns_sequential_ids(self, tmp_path, sample_text):
        workspace = Workspace(tmp_path)

        first = workspace.save_plan(sample_text, title="Add request tracing")
        second = workspace.save_plan(sample_text, title="Add request tracing")

        assert first == "001-add-request-tracing"
        assert second == "002-add-request-tracing"
        assert workspace.load_plan_text(first) == sample_text

    def test_explicit_id_is_slugified(self, tmp_path):
        workspace = Workspace(tmp_path)
        assert workspace.save_plan("# X\n", title="X", plan_id="My Plan!") == "my-plan"
        assert workspace.plan_exists("my-plan")

    def test_untitled_plan(self, tmp_path):
        assert Workspace(tmp_path).save_plan("text") == "001-plan"

    def test_saving_same_id_requires_replace(self, tmp_path):
        workspace = Workspace(tmp_path)
        workspace.save_plan("old", plan_id="p")

        with pytest.raises(FileExistsError, match="already exists"):
            workspace.save_plan("new", plan_id="p")
        assert workspace.load_plan_text("p") == "old"

        workspace.save_plan("new", plan_id="p", replace=True)
        assert workspace.load_plan_text("p") == "new"

    def test_plan_with_runs_cannot_be_replaced(self, tmp_path):
        workspace = Workspace(tmp_path)
        workspace.save_plan("old", plan_id="p")
        workspace.save_run("p", "run-001", {"history": []})

        with pytest.raises(ValueError, match="has recorded runs"):
            workspace.save_plan("new", plan_id="p", replace=True)
        assert workspace.load_plan_text("p") == "old"

    @pytest.mark.parametrize("plan_id", ["../outside", "a/b", "..", "Upper", ""])
    def test_unsafe_plan_ids_are_rejected(self, tmp_path, plan_id):
        workspace = Workspace(tmp_path)
        with pytest.raises(ValueError, match="Invalid plan id"):
            workspace.load_plan_text(plan_id)

    def test_missing_plan(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="No plan 'nope'"):
            Workspace(tmp_path).load_plan_text("nope")

    def test_list_plans(self, tmp_path, sample_text):
        workspace = Workspace(tmp_path)
        plan_id = workspace.save_plan(sample_text, title="Add request tracing")
        workspace.save_run(plan_id, "run-001", {"states": {}})

        plans = workspace.list_plans()

        assert len(plans) == 1
        assert plans[0]["plan_id"] == plan_id
        assert plans[0]["title"] == "Add request tracing"
        assert plans[0]["imported_at"]
        assert plans[0]["runs"] == ["run-001"]


class TestRunStorage:
    """Test cases for run snapshots."""

    def test_save_and_load_run(self, tmp_path):
        workspace = Workspace(tmp_path)
        data = {"ordered": True, "history": [{"node_path": "1"}]}

        path = workspace.save_run("001-x", "run-001", data)

        assert path == workspace.runs_dir / "001-x" / "run-001.json"
        assert json.loads(path.read_text()) == data
        assert workspace.load_run("001-x", "run-001") == data
        assert workspace.run_exists("001-x", "run-001")
        assert list(path.parent.glob("*.tmp")) == []

    def test_missing_run(self, tmp_path):
        with pytest.raises(FileNotFoundError, match="No run 'run-009'"):
            Workspace(tmp_path).load_run("001-x", "run-009")

    def test_next_run_id(self, tmp_path):
        workspace = Workspace(tmp_path)
        assert workspace.next_run_id("001-x") == "run-001"

        workspace.save_run("001-x", "run-001", {})
        workspace.save_run("001-x", "nightly", {})
        workspace.save_run("001-x", "run-004", {})

        assert workspace.next_run_id("001-x") == "run-005"
        assert workspace.list_runs("001-x") == ["nightly", "run-001", "run-004"]

    @pytest.mark.parametrize("run_id", ["../../../../escaped", "../escaped", "nested/run", ".hidden"])
    def test_unsafe_run_ids_are_rejected(self, tmp_path, run_id):
        workspace = Workspace(tmp_path)

        with pytest.raises(ValueError, match="Invalid run id"):
            workspace.save_run("001-x", run_id, {})

        assert list(tmp_path.parent.glob("escaped.json")) == []
        assert list(tmp_path.rglob("*escaped*")) == []

    def test_each_save_uses_its_own_temp_file(self, tmp_path, monkeypatch):
        workspace = Workspace(tmp_path)
        written = []
        original_write = Path.write_text

        def recording_write(self, *args, **kwargs):
            written.append(self.name)
            return original_write(self, *args, **kwargs)

        monkeypatch.setattr(Path, "write_text", recording_write)
        workspace.save_run("001-x", "run-001", {"n": 1})
        workspace.save_run("001-x", "run-001", {"n": 2})

        assert len(written) == 2
        assert written[0] != written[1]
        assert all(name.startswith("run-001.json.") and name.endswith(".tmp") for name in written)
        assert workspace.load_run("001-x", "run-001") == {"n": 2}
