"""Plan workflow management for PlanTrack.

``PlanManager`` ties the pure core (sectionizer, outline parser, validator,
renderer) to stored plans and live execution trackers. Every public method
returns a JSON-ready dictionary; failures are logged and reported as
``{"error", "suggestion", "next_suggested_step"}`` payloads.
"""

from __future__ import annotations

import logging
import threading
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

from .config import get_settings
from .models import NodeStatus
from .outline import ParseResult, parse_document
from .plantrack_logging import (
    log_error_with_context,
    log_operation,
    log_performance,
    log_plan_imported,
    log_plan_validated,
    log_run_started,
)
from .renderer import render_document, render_history, render_progress, render_validation_report
from .tracker import ExecutionTracker, InvalidDocument, InvalidTransition, PlanTrackError
from .validator import merge_diagnostics, validate
from .workspace import Workspace

logger = logging.getLogger("plantrack.manager")


class PlanManager:
    """Manages stored plans and their tracked runs."""

    def __init__(self, root: Path | str, storage_dir: Optional[str] = None):
        self.workspace = Workspace(root, storage_dir=storage_dir)
        self.settings = get_settings()
        self._trackers: Dict[Tuple[str, str], ExecutionTracker] = {}
        self._run_locks: Dict[Tuple[str, str], threading.Lock] = {}
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def _parse(self, plan_id: str) -> ParseResult:
        return parse_document(self.workspace.load_plan_text(plan_id))

    @log_performance("import_plan")
    def import_plan(
        self,
        text: str,
        plan_id: Optional[str] = None,
        lenient: Optional[bool] = None,
        replace: bool = False,
    ) -> Dict[str, Any]:
        """Parse, validate and store a plan document.

        Re-using an existing ``plan_id`` requires ``replace=True`` and is
        refused while the plan has recorded runs.
        """
        try:
            if not text or not text.strip():
                raise ValueError("Plan text cannot be empty")
            lenient = self.settings.lenient_numbering if lenient is None else lenient

            with log_operation("import_plan", text_length=len(text)):
                parsed = parse_document(text)
                result = validate(parsed.document, lenient=lenient)
                stored_id = self.workspace.save_plan(
                    text, title=parsed.document.title, plan_id=plan_id, replace=replace
                )
                self._evict(stored_id)
                log_plan_imported(stored_id, parsed.document.title, is_valid=result.is_valid)

            diagnostics = merge_diagnostics(parsed.diagnostics, result.diagnostics)
            return {
                "plan_id": stored_id,
                "title": parsed.document.title,
                "is_valid": result.is_valid,
                "diagnostics": [d.to_dict() for d in diagnostics],
                "steps": len(parsed.document.steps),
                "actions": len(parsed.document.all_actions()),
                "next_suggested_step": "start_run" if result.is_valid else "import_plan",
                "message": (
                    f"Plan stored as '{stored_id}'."
                    if result.is_valid
                    else f"Plan stored as '{stored_id}' but has fatal diagnostics; fix them before starting a run."
                ),
            }
        except Exception as e:
            log_error_with_context(e, {"operation": "import_plan", "plan_id": plan_id})
            return {
                "error": f"Failed to import plan: {e}",
                "suggestion": (
                    "Choose a new plan_id or pass replace=True for a plan without runs"
                    if isinstance(e, FileExistsError)
                    else "Provide the full plan markdown including the title and 'Execution Steps' section"
                ),
                "next_suggested_step": "import_plan",
            }

    def list_plans(self) -> Dict[str, Any]:
        plans = self.workspace.list_plans()
        return {
            "plans": plans,
            "count": len(plans),
            "message": f"Found {len(plans)} plans" if plans else "No plans imported yet. Use import_plan first.",
        }

    def get_plan(self, plan_id: str) -> Dict[str, Any]:
        try:
            parsed = self._parse(plan_id)
            return {
                "plan_id": plan_id,
                "document": parsed.document.to_dict(),
                "diagnostics": [d.to_dict() for d in parsed.diagnostics],
            }
        except Exception as e:
            return self._failure("get_plan", e, f"Check that plan '{plan_id}' exists", "list_plans")

    def validate_plan(self, plan_id: str, lenient: Optional[bool] = None) -> Dict[str, Any]:
        try:
            lenient = self.settings.lenient_numbering if lenient is None else lenient
            parsed = self._parse(plan_id)
            result = validate(parsed.document, lenient=lenient)
            log_plan_validated(plan_id, result.is_valid, diagnostics=len(result.diagnostics))
            diagnostics = merge_diagnostics(parsed.diagnostics, result.diagnostics)
            return {
                "plan_id": plan_id,
                "is_valid": result.is_valid,
                "diagnostics": [d.to_dict() for d in diagnostics],
                "report": render_validation_report(result, parsed.document.title),
            }
        except Exception as e:
            return self._failure("validate_plan", e, f"Check that plan '{plan_id}' exists", "list_plans")

    def render_plan(self, plan_id: str) -> Dict[str, Any]:
        """Normalised markdown for a stored plan."""
        try:
            parsed = self._parse(plan_id)
            return {"plan_id": plan_id, "markdown": render_document(parsed.document)}
        except Exception as e:
            return self._failure("render_plan", e, f"Check that plan '{plan_id}' exists", "list_plans")

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _tracker(self, plan_id: str, run_id: str) -> ExecutionTracker:
        key = (plan_id, run_id)
        with self._lock:
            tracker = self._trackers.get(key)
            if tracker is None:
                data = self.workspace.load_run(plan_id, run_id)
                tracker = ExecutionTracker.from_dict(self._parse(plan_id).document, data)
                self._trackers[key] = tracker
            return tracker

    def _run_lock(self, plan_id: str, run_id: str) -> threading.Lock:
        with self._lock:
            return self._run_locks.setdefault((plan_id, run_id), threading.Lock())

    def _evict(self, plan_id: str) -> None:
        with self._lock:
            for key in [key for key in self._trackers if key[0] == plan_id]:
                del self._trackers[key]

    def _persist(self, tracker: ExecutionTracker) -> None:
        self.workspace.save_run(tracker.plan_id, tracker.run_id, tracker.to_dict())

    @log_performance("start_run")
    def start_run(self, plan_id: str, run_id: Optional[str] = None, ordered: Optional[bool] = None) -> Dict[str, Any]:
        """Create a tracker for a stored plan."""
        try:
            parsed = self._parse(plan_id)
            run_id = run_id or self.workspace.next_run_id(plan_id)
            ordered = self.settings.ordered if ordered is None else ordered
            with self._run_lock(plan_id, run_id):
                if self.workspace.run_exists(plan_id, run_id):
                    raise ValueError(f"Run '{run_id}' already exists for plan '{plan_id}'")
                tracker = ExecutionTracker(
                    parsed.document,
                    ordered=ordered,
                    skipped_counts_as_done=self.settings.skipped_counts_as_done,
                    plan_id=plan_id,
                    run_id=run_id,
                )
                self._persist(tracker)
                with self._lock:
                    self._trackers[(plan_id, run_id)] = tracker
            log_run_started(plan_id, run_id, ordered)
            return {
                "plan_id": plan_id,
                "run_id": run_id,
                "ordered": ordered,
                "next_actions": tracker.next_actionable(),
                "next_suggested_step": "transition",
                "message": f"Run '{run_id}' started for plan '{plan_id}'.",
            }
        except InvalidDocument as e:
            log_error_with_context(e, {"operation": "start_run", "plan_id": plan_id})
            return {
                "error": str(e),
                "diagnostics": [d.to_dict() for d in e.diagnostics],
                "suggestion": "Fix the fatal diagnostics and import the plan again",
                "next_suggested_step": "validate_plan",
            }
        except Exception as e:
            return self._failure("start_run", e, f"Check that plan '{plan_id}' exists", "list_plans")

    def list_runs(self, plan_id: str) -> Dict[str, Any]:
        try:
            runs = self.workspace.list_runs(plan_id)
            return {"plan_id": plan_id, "runs": runs, "count": len(runs)}
        except Exception as e:
            return self._failure("list_runs", e, "Check the plan id", "list_plans")

    def transition(
        self,
        plan_id: str,
        run_id: str,
        node_path: str,
        to_state: str,
        actor: str,
        note: str = "",
    ) -> Dict[str, Any]:
        return self._mutate(
            "transition",
            plan_id,
            run_id,
            lambda tracker: tracker.transition(node_path, to_state, actor, note),
        )

    def block(self, plan_id: str, run_id: str, node_path: str, reason: str, actor: str) -> Dict[str, Any]:
        return self._mutate(
            "block", plan_id, run_id, lambda tracker: tracker.block(node_path, reason, actor)
        )

    def unblock(self, plan_id: str, run_id: str, node_path: str, actor: str, note: str = "") -> Dict[str, Any]:
        return self._mutate(
            "unblock", plan_id, run_id, lambda tracker: tracker.unblock(node_path, actor, note)
        )

    @log_performance("tracker_mutation")
    def _mutate(self, operation: str, plan_id: str, run_id: str, change) -> Dict[str, Any]:
        try:
            tracker = self._tracker(plan_id, run_id)
            # Held until the snapshot is on disk so saves land in commit order.
            with self._run_lock(plan_id, run_id):
                before = len(tracker.history())
                record = change(tracker)
                self._persist(tracker)
                committed = tracker.history()[before:]
            return {
                "plan_id": plan_id,
                "run_id": run_id,
                "node_path": record.node_path,
                "state": tracker.get_state(record.node_path).value,
                "changes": [r.to_dict() for r in committed],
                "completion_ratio": tracker.completion_ratio(),
                "next_actions": tracker.next_actionable(),
            }
        except InvalidTransition as e:
            logger.info(f"Rejected {operation} on {plan_id}/{run_id}: {e}")
            return {
                "error": str(e),
                "invalid_transition": e.to_dict(),
                "suggestion": "Check the node's current state and the ordering rules",
                "next_suggested_step": "node_state",
            }
        except Exception as e:
            return self._failure(
                operation, e, f"Check that run '{run_id}' of plan '{plan_id}' exists", "list_runs"
            )

    def node_state(self, plan_id: str, run_id: str, node_path: str) -> Dict[str, Any]:
        try:
            tracker = self._tracker(plan_id, run_id)
            state = tracker.get_state(node_path)
            payload = {"plan_id": plan_id, "run_id": run_id, "node_path": node_path, "state": state.value}
            if state is NodeStatus.BLOCKED:
                payload["reason"] = tracker.block_reason(node_path)
            return payload
        except Exception as e:
            return self._failure("node_state", e, "Check the run and node path", "run_history")

    def run_history(self, plan_id: str, run_id: str) -> Dict[str, Any]:
        try:
            tracker = self._tracker(plan_id, run_id)
            history = tracker.history()
            return {
                "plan_id": plan_id,
                "run_id": run_id,
                "history": [record.to_dict() for record in history],
                "text": render_history(history),
            }
        except Exception as e:
            return self._failure("run_history", e, "Check the run id", "list_runs")

    def next_actions(self, plan_id: str, run_id: str) -> Dict[str, Any]:
        try:
            tracker = self._tracker(plan_id, run_id)
            ready = tracker.next_actionable()
            nodes = dict(tracker.document.iter_nodes())
            return {
                "plan_id": plan_id,
                "run_id": run_id,
                "actions": [{"path": path, "text": nodes[path].text} for path in ready],
                "blocked": [{"path": path, "reason": reason} for path, reason in tracker.blocked()],
                "completion_ratio": tracker.completion_ratio(),
            }
        except Exception as e:
            return self._failure("next_actions", e, "Check the run id", "list_runs")

    def progress_report(self, plan_id: str, run_id: Optional[str] = None) -> Dict[str, Any]:
        try:
            if run_id is None:
                document = self._parse(plan_id).document
                return {"plan_id": plan_id, "run_id": None, "report": render_progress(document)}
            tracker = self._tracker(plan_id, run_id)
            return {
                "plan_id": plan_id,
                "run_id": run_id,
                "completion_ratio": tracker.completion_ratio(),
                "report": render_progress(
                    tracker.document,
                    tracker.snapshot(),
                    skipped_counts_as_done=tracker.skipped_counts_as_done,
                ),
            }
        except Exception as e:
            return self._failure("progress_report", e, "Check the plan and run ids", "list_plans")

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _failure(self, operation: str, error: Exception, suggestion: str, next_step: str) -> Dict[str, Any]:
        if isinstance(error, (FileNotFoundError, PlanTrackError, ValueError)):
            logger.warning(f"{operation} failed: {error}")
        else:
            log_error_with_context(error, {"operation": operation})
        return {
            "error": f"Failed to {operation.replace('_', ' ')}: {error}",
            "suggestion": suggestion,
            "next_suggested_step": next_step,
        }
