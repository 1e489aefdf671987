"""Workspace storage for PlanTrack.

Keeps imported plan text and tracker snapshots under a storage directory
inside a project root::

    <root>/.plantrack/plans/<plan_id>.md
    <root>/.plantrack/plans/<plan_id>.json     (metadata)
    <root>/.plantrack/runs/<plan_id>/<run_id>.json
"""

from __future__ import annotations

import json
import logging
import re
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from .config import get_settings
from .plantrack_logging import log_error_with_context, observability_hooks

logger = logging.getLogger("plantrack.workspace")


class Workspace:
    """Manage stored plans and run snapshots within a project root."""

    def __init__(self, root: Path | str, storage_dir: Optional[str] = None):
        try:
            self.root = Path(root).expanduser().resolve()
            self.base_dir = self.root / (storage_dir or get_settings().storage_dir)
            self.plans_dir = self.base_dir / "plans"
            self.runs_dir = self.base_dir / "runs"

            try:
                self.plans_dir.mkdir(parents=True, exist_ok=True)
                self.runs_dir.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error(f"Failed to create workspace directories: {e}")
                raise RuntimeError(f"Could not initialize workspace at {self.root}: {e}") from e

            logger.debug(f"Workspace initialized at {self.root}")
            observability_hooks.log_workflow_event("workspace_initialized", root=str(self.root))
        except Exception as e:
            log_error_with_context(e, {"operation": "workspace_init", "root": str(root)})
            raise

    # ------------------------------------------------------------------
    # Identifiers
    # ------------------------------------------------------------------

    _PLAN_ID_PATTERN = re.compile(r"^(\d{3})-")
    _RUN_ID_PATTERN = re.compile(r"^run-(\d{3,})$")
    _ID_PATTERN = re.compile(r"[a-z0-9][a-z0-9._-]*")

    def _check_id(self, value: str, kind: str) -> str:
        if not isinstance(value, str) or not self._ID_PATTERN.fullmatch(value):
            raise ValueError(
                f"Invalid {kind} id '{value}': use lowercase letters, digits, '.', '_' or '-'."
            )
        return value

    def _contained(self, path: Path) -> Path:
        if not path.resolve().is_relative_to(self.base_dir.resolve()):
            raise ValueError(f"Path {path} is outside the workspace storage at {self.base_dir}.")
        return path

    def _slugify(self, value: str) -> str:
        slug = re.sub(r"[^a-z0-9]+", "-", value.lower()).strip("-")
        return slug[:60].rstrip("-") or "plan"

    def _next_plan_number(self) -> int:
        highest = 0
        for path in self.plans_dir.glob("*.md"):
            match = self._PLAN_ID_PATTERN.match(path.stem)
            if match:
                highest = max(highest, int(match.group(1)))
        return highest + 1

    def _plan_identifier(self, title: str, plan_id: Optional[str]) -> str:
        if plan_id:
            return self._slugify(plan_id)
        slug = self._slugify(title)
        number = self._next_plan_number()
        candidate = f"{number:03d}-{slug}"
        while self._plan_path(candidate).exists():
            number += 1
            candidate = f"{number:03d}-{slug}"
        return candidate

    def next_run_id(self, plan_id: str) -> str:
        highest = 0
        for run_id in self.list_runs(plan_id):
            match = self._RUN_ID_PATTERN.match(run_id)
            if match:
                highest = max(highest, int(match.group(1)))
        return f"run-{highest + 1:03d}"

    # ------------------------------------------------------------------
    # Plans
    # ------------------------------------------------------------------

    def _plan_path(self, plan_id: str) -> Path:
        return self._contained(self.plans_dir / f"{self._check_id(plan_id, 'plan')}.md")

    def _plan_meta_path(self, plan_id: str) -> Path:
        return self._contained(self.plans_dir / f"{self._check_id(plan_id, 'plan')}.json")

    def plan_exists(self, plan_id: str) -> bool:
        return self._plan_path(plan_id).exists()

    def save_plan(self, text: str, *, title: str = "", plan_id: Optional[str] = None, replace: bool = False) -> str:
        """Store plan text; returns the plan id it was stored under.

        An existing plan is only overwritten with ``replace=True``, and never
        once runs have been recorded against it.
        """
        identifier = self._plan_identifier(title, plan_id)
        if self.plan_exists(identifier):
            if not replace:
                raise FileExistsError(f"Plan '{identifier}' already exists; pass replace=True to overwrite it.")
            runs = self.list_runs(identifier)
            if runs:
                raise ValueError(
                    f"Plan '{identifier}' has recorded runs ({', '.join(runs)}) and cannot be replaced."
                )
        self._plan_path(identifier).write_text(text, encoding="utf-8")
        meta = {
            "plan_id": identifier,
            "title": title,
            "imported_at": datetime.now(timezone.utc).isoformat(timespec="seconds"),
        }
        self._plan_meta_path(identifier).write_text(json.dumps(meta, indent=2), encoding="utf-8")
        logger.info(f"Stored plan '{identifier}' at {self._plan_path(identifier)}")
        return identifier

    def load_plan_text(self, plan_id: str) -> str:
        path = self._plan_path(plan_id)
        if not path.exists():
            raise FileNotFoundError(f"No plan '{plan_id}' in workspace {self.root}.")
        return path.read_text(encoding="utf-8")

    def list_plans(self) -> List[Dict[str, Any]]:
        plans = []
        for path in sorted(self.plans_dir.glob("*.md")):
            plan_id = path.stem
            if not self._ID_PATTERN.fullmatch(plan_id):
                logger.warning(f"Ignoring plan file with an invalid id: {path}")
                continue
            meta_path = self._plan_meta_path(plan_id)
            meta = json.loads(meta_path.read_text(encoding="utf-8")) if meta_path.exists() else {}
            plans.append(
                {
                    "plan_id": plan_id,
                    "title": meta.get("title", plan_id),
                    "imported_at": meta.get("imported_at"),
                    "plan_path": str(path),
                    "runs": self.list_runs(plan_id),
                }
            )
        return plans

    # ------------------------------------------------------------------
    # Runs
    # ------------------------------------------------------------------

    def _run_dir(self, plan_id: str) -> Path:
        return self._contained(self.runs_dir / self._check_id(plan_id, "plan"))

    def _run_path(self, plan_id: str, run_id: str) -> Path:
        return self._contained(self._run_dir(plan_id) / f"{self._check_id(run_id, 'run')}.json")

    def run_exists(self, plan_id: str, run_id: str) -> bool:
        return self._run_path(plan_id, run_id).exists()

    def list_runs(self, plan_id: str) -> List[str]:
        run_dir = self._run_dir(plan_id)
        if not run_dir.exists():
            return []
        return sorted(path.stem for path in run_dir.glob("*.json"))

    def save_run(self, plan_id: str, run_id: str, data: Dict[str, Any]) -> Path:
        """Write a run snapshot atomically."""
        path = self._run_path(plan_id, run_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(f"{path.name}.{uuid.uuid4().hex}.tmp")
        tmp_path.write_text(json.dumps(data, indent=2), encoding="utf-8")
        tmp_path.replace(path)
        return path

    def load_run(self, plan_id: str, run_id: str) -> Dict[str, Any]:
        path = self._run_path(plan_id, run_id)
        if not path.exists():
            raise FileNotFoundError(f"No run '{run_id}' recorded for plan '{plan_id}'.")
        return json.loads(path.read_text(encoding="utf-8"))
