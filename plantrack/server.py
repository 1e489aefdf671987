"""MCP server exposing plan tracking tools."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import Any, Dict, List, Optional

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.resources import TextResource

from .config import get_settings
from .manager import PlanManager
from .outline import parse_document
from .plantrack_logging import setup_logging
from .renderer import render_validation_report
from .validator import merge_diagnostics, validate

mcp = FastMCP("plantrack")

SERVER_ROOT = Path(__file__).resolve().parent
PLANS_RESOURCE_URI = "plantrack://plans"

_managers: Dict[Path, PlanManager] = {}
_managers_lock = threading.Lock()


def _candidate_bases() -> List[Path]:
    cwd = Path.cwd().resolve()
    bases: List[Path] = [cwd]
    bases.extend(cwd.parents)
    for base in (SERVER_ROOT, *SERVER_ROOT.parents):
        if base not in bases:
            bases.append(base)
    return bases


def _locate_workspace_root() -> Optional[Path]:
    marker = get_settings().storage_dir
    for base in _candidate_bases():
        if (base / marker).is_dir():
            return base
    return None


def _resolve_root(root: Optional[str]) -> Path:
    if root:
        resolved = Path(root).expanduser().resolve()
        if not resolved.exists():
            raise ValueError(f"Provided root '{root}' does not exist.")
        return resolved

    env_root = get_settings().project_root
    if env_root:
        env_path = Path(env_root).expanduser().resolve()
        if not env_path.exists():
            raise ValueError(
                f"Environment variable PLANTRACK_PROJECT_ROOT points to '{env_root}', which does not exist."
            )
        return env_path

    detected_root = _locate_workspace_root()
    if detected_root:
        return detected_root

    raise ValueError(
        "Unable to determine project root automatically. Provide the 'root' argument when calling the tool "
        "or set the PLANTRACK_PROJECT_ROOT environment variable."
    )


def _text_resource(text: str) -> TextResource:
    return TextResource(uri=PLANS_RESOURCE_URI, name="plans", text=text, mime_type="text/plain")


def _manager(root: Optional[str]) -> PlanManager:
    resolved = _resolve_root(root)
    with _managers_lock:
        manager = _managers.get(resolved)
        if manager is None:
            manager = PlanManager(resolved)
            _managers[resolved] = manager
        return manager


# ----------------------------------------------------------------------
# Stateless tools
# ----------------------------------------------------------------------


@mcp.tool()
def parse_plan(text: str) -> Dict[str, Any]:
    """Parse plan markdown and return its step outline without storing anything."""
    parsed = parse_document(text)
    return {
        "document": parsed.document.to_dict(),
        "diagnostics": [d.to_dict() for d in parsed.diagnostics],
        "sections": parsed.sections.to_dict() if parsed.sections else {},
    }


@mcp.tool()
def check_plan(text: str, lenient: bool = False) -> Dict[str, Any]:
    """Validate plan markdown and report every structural problem found."""
    parsed = parse_document(text)
    result = validate(parsed.document, lenient=lenient)
    return {
        "is_valid": result.is_valid,
        "diagnostics": [d.to_dict() for d in merge_diagnostics(parsed.diagnostics, result.diagnostics)],
        "report": render_validation_report(result, parsed.document.title),
    }


# ----------------------------------------------------------------------
# Plans
# ----------------------------------------------------------------------


@mcp.tool()
def import_plan(
    text: str,
    plan_id: Optional[str] = None,
    replace: bool = False,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 1: Store a plan document in the workspace.
    Returns the plan id used by every other tool together with the
    parser and validator diagnostics. An existing plan id is only
    overwritten with replace=True and only while it has no runs."""
    return _manager(root).import_plan(text, plan_id=plan_id, replace=replace)


@mcp.tool()
def list_plans(root: Optional[str] = None) -> Dict[str, Any]:
    """Enumerate plans stored in the workspace."""
    return _manager(root).list_plans()


@mcp.resource(PLANS_RESOURCE_URI)
def resource_plans():
    """Resource view listing stored plans and their runs."""
    try:
        manager = _manager(None)
    except ValueError:
        return _text_resource(
            "No project root detected. Launch tools with a 'root' argument or set PLANTRACK_PROJECT_ROOT."
        )

    plans = manager.list_plans()["plans"]
    if not plans:
        return _text_resource("No plans have been imported yet.")

    lines = ["PlanTrack Plans"]
    for plan in plans:
        lines.append("")
        lines.append(f"- {plan['plan_id']}: {plan['title']}")
        lines.append(f"  Plan: {plan['plan_path']}")
        if plan["runs"]:
            lines.append(f"  Runs: {', '.join(plan['runs'])}")
    return _text_resource("\n".join(lines))


@mcp.tool()
def get_plan(plan_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Return the parsed step outline of a stored plan."""
    return _manager(root).get_plan(plan_id)


@mcp.tool()
def validate_plan(plan_id: str, lenient: Optional[bool] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """STEP 2: Validate a stored plan. Runs can only start on valid plans."""
    return _manager(root).validate_plan(plan_id, lenient=lenient)


@mcp.tool()
def render_plan(plan_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Return the stored plan re-serialised as normalised markdown."""
    return _manager(root).render_plan(plan_id)


# ----------------------------------------------------------------------
# Runs
# ----------------------------------------------------------------------


@mcp.tool()
def start_run(
    plan_id: str,
    run_id: Optional[str] = None,
    ordered: Optional[bool] = None,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 3: Start tracking an execution of a valid plan.
    In ordered mode no action of step N may start before earlier steps finish."""
    return _manager(root).start_run(plan_id, run_id=run_id, ordered=ordered)


@mcp.tool()
def list_runs(plan_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """List recorded runs of a plan."""
    return _manager(root).list_runs(plan_id)


@mcp.tool()
def transition(
    plan_id: str,
    run_id: str,
    node_path: str,
    to_state: str,
    actor: str,
    note: str = "",
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """STEP 4: Move a step, sub-step or action to a new state.
    Node paths look like "2", "2.1" or "2.1.3"; direct actions of a step use "2.0.1".
    States: in_progress, done, skipped (use block/unblock for blocked)."""
    return _manager(root).transition(plan_id, run_id, node_path, to_state, actor, note)


@mcp.tool()
def block(
    plan_id: str,
    run_id: str,
    node_path: str,
    reason: str,
    actor: str,
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Mark a node blocked. A reason is required."""
    return _manager(root).block(plan_id, run_id, node_path, reason, actor)


@mcp.tool()
def unblock(
    plan_id: str,
    run_id: str,
    node_path: str,
    actor: str,
    note: str = "",
    root: Optional[str] = None,
) -> Dict[str, Any]:
    """Release a blocked node; it resumes as in_progress."""
    return _manager(root).unblock(plan_id, run_id, node_path, actor, note)


@mcp.tool()
def node_state(plan_id: str, run_id: str, node_path: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Return the current state of one node."""
    return _manager(root).node_state(plan_id, run_id, node_path)


@mcp.tool()
def run_history(plan_id: str, run_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """Return the append-only change history of a run."""
    return _manager(root).run_history(plan_id, run_id)


@mcp.tool()
def next_actions(plan_id: str, run_id: str, root: Optional[str] = None) -> Dict[str, Any]:
    """List the actions that can be started right now, plus blocked nodes."""
    return _manager(root).next_actions(plan_id, run_id)


@mcp.tool()
def progress_report(plan_id: str, run_id: Optional[str] = None, root: Optional[str] = None) -> Dict[str, Any]:
    """Per-step completion and blocked items for a run (or the bare plan)."""
    return _manager(root).progress_report(plan_id, run_id=run_id)


@mcp.tool()
def get_workflow_guide() -> Dict[str, Any]:
    """Get guidance on the recommended PlanTrack workflow."""
    return {
        "workflow_overview": "Import a plan, validate it, then track a run through to completion",
        "steps": [
            {
                "step": 1,
                "tool": "import_plan",
                "description": "Store plan markdown in the workspace",
                "purpose": "Obtain a plan id and the parser diagnostics",
            },
            {
                "step": 2,
                "tool": "validate_plan",
                "description": "Check structural rules",
                "purpose": "Runs can only start on plans without fatal diagnostics",
            },
            {
                "step": 3,
                "tool": "start_run",
                "description": "Create an execution tracker for the plan",
                "purpose": "Every node starts pending",
            },
            {
                "step": 4,
                "tools": ["next_actions", "transition", "block", "unblock"],
                "description": "Work through actions, recording each state change",
                "purpose": "Steps and sub-steps roll up automatically as their actions finish",
            },
            {
                "step": 5,
                "tools": ["progress_report", "run_history"],
                "description": "Review completion and the audit trail",
                "purpose": "See per-step completion, blocked items and who changed what",
            },
        ],
        "tips": [
            "Use parse_plan or check_plan to inspect markdown before storing it",
            "Block with a reason instead of leaving actions silently stalled",
            "Skipping a step or sub-step skips its open actions as well",
        ],
    }


def main() -> None:
    settings = get_settings()
    setup_logging(settings.log_level, settings.log_file)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
