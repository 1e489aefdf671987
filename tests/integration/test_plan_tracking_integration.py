"""
Integration tests for the plan tracking workflow.

These tests drive PlanManager and the MCP tool functions end to end
against a temporary project directory: import a plan, run it to
completion, and reload the run from disk.
"""

import json
import tempfile
from pathlib import Path

import pytest

from plantrack import server
from plantrack.config import get_settings
from plantrack.manager import PlanManager


class TestPlanTrackingIntegration:
    """Integration tests for the complete tracking workflow."""

    @pytest.fixture
    def temp_project_dir(self):
        """Create a temporary project directory for integration testing."""
        with tempfile.TemporaryDirectory() as temp_dir:
            yield Path(temp_dir)

    def test_complete_run(self, temp_project_dir, sample_text, sample_actions):
        """Import a plan and finish every action in order."""
        manager = PlanManager(temp_project_dir)

        imported = manager.import_plan(sample_text)
        assert imported["is_valid"] is True
        plan_id = imported["plan_id"]

        started = manager.start_run(plan_id)
        run_id = started["run_id"]

        for path in sample_actions:
            assert "error" not in manager.transition(plan_id, run_id, path, "in_progress", "alice")
            assert "error" not in manager.transition(plan_id, run_id, path, "done", "alice")

        for step in ("1", "2", "3", "4"):
            assert manager.node_state(plan_id, run_id, step)["state"] == "done"

        report = manager.progress_report(plan_id, run_id)
        assert report["completion_ratio"] == 1.0
        assert "Overall: 100% (7/7 actions)" in report["report"]
        assert manager.next_actions(plan_id, run_id)["actions"] == []

    def test_run_survives_reload(self, temp_project_dir, sample_text):
        """A fresh manager rebuilds the run from its saved history."""
        first = PlanManager(temp_project_dir)
        plan_id = first.import_plan(sample_text)["plan_id"]
        run_id = first.start_run(plan_id)["run_id"]
        first.transition(plan_id, run_id, "1.1.1", "in_progress", "alice")
        first.block(plan_id, run_id, "1.1.2", "waiting on API key", "alice")

        second = PlanManager(temp_project_dir)

        assert second.node_state(plan_id, run_id, "1.1.1")["state"] == "in_progress"
        assert second.node_state(plan_id, run_id, "1.1.2")["reason"] == "waiting on API key"
        assert len(second.run_history(plan_id, run_id)["history"]) == 4

        saved = json.loads((first.workspace.runs_dir / plan_id / f"{run_id}.json").read_text())
        assert saved["states"]["1"] == "in_progress"
        assert saved["plan_title"] == "Add request tracing"

    def test_rejected_change_is_not_persisted(self, temp_project_dir, sample_text):
        manager = PlanManager(temp_project_dir)
        plan_id = manager.import_plan(sample_text)["plan_id"]
        run_id = manager.start_run(plan_id)["run_id"]

        manager.block(plan_id, run_id, "1.1.2", "waiting on API key", "alice")
        rejected = manager.transition(plan_id, run_id, "1.1.2", "done", "alice")

        assert "invalid_transition" in rejected
        reloaded = PlanManager(temp_project_dir)
        assert reloaded.node_state(plan_id, run_id, "1.1.2")["state"] == "blocked"

    def test_separate_runs_are_independent(self, temp_project_dir, sample_text):
        manager = PlanManager(temp_project_dir)
        plan_id = manager.import_plan(sample_text)["plan_id"]
        first = manager.start_run(plan_id)["run_id"]
        second = manager.start_run(plan_id)["run_id"]

        manager.transition(plan_id, first, "1", "skipped", "alice")

        assert (first, second) == ("run-001", "run-002")
        assert manager.node_state(plan_id, first, "1")["state"] == "skipped"
        assert manager.node_state(plan_id, second, "1")["state"] == "pending"


class TestServerTools:
    """Integration tests for the MCP tool functions."""

    @pytest.fixture(autouse=True)
    def fresh_server_state(self):
        server._managers.clear()
        yield
        server._managers.clear()

    def test_parse_and_check_plan(self, sample_text):
        parsed = server.parse_plan(sample_text)
        assert parsed["document"]["title"] == "Add request tracing"
        assert parsed["sections"]["unclassified"] == []

        checked = server.check_plan("# Draft\n")
        assert checked["is_valid"] is False
        assert "INVALID" in checked["report"]

    def test_tool_workflow_with_explicit_root(self, tmp_path, sample_text):
        root = str(tmp_path)
        plan_id = server.import_plan(sample_text, root=root)["plan_id"]
        run_id = server.start_run(plan_id, root=root)["run_id"]

        result = server.transition(plan_id, run_id, "1.1.1", "in_progress", "alice", root=root)

        assert result["state"] == "in_progress"
        assert server.list_plans(root=root)["count"] == 1
        assert server.node_state(plan_id, run_id, "1", root=root)["state"] == "in_progress"

    def test_root_from_environment(self, tmp_path, monkeypatch, sample_text):
        monkeypatch.setenv("PLANTRACK_PROJECT_ROOT", str(tmp_path))
        get_settings.cache_clear()

        plan_id = server.import_plan(sample_text)["plan_id"]

        assert (tmp_path / ".plantrack" / "plans" / f"{plan_id}.md").exists()

    def test_missing_root_is_rejected(self, tmp_path):
        with pytest.raises(ValueError, match="does not exist"):
            server.list_plans(root=str(tmp_path / "absent"))

    def test_root_detected_from_marker(self, tmp_path, monkeypatch):
        (tmp_path / ".plantrack").mkdir()
        nested = tmp_path / "src" / "pkg"
        nested.mkdir(parents=True)
        monkeypatch.chdir(nested)

        assert server._resolve_root(None) == tmp_path.resolve()

    def test_workflow_guide(self):
        guide = server.get_workflow_guide()
        assert [step["step"] for step in guide["steps"]] == [1, 2, 3, 4, 5]
