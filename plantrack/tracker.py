"""Execution tracking over a validated plan document.

The tracker never touches the Document. It keeps a status per node path
(``"2"``, ``"2.1"``, ``"2.1.3"``, direct actions ``"2.0.1"``) and an
append-only history of every committed change.

Rules:

- Pending -> InProgress, InProgress -> Done, Pending/InProgress -> Skipped.
- Pending/InProgress -> Blocked only through ``block`` with a reason;
  ``unblock`` resumes the node as InProgress. A node blocked before it
  started must pass the start rules to resume.
- In ordered mode nothing under step N may start while an earlier step is
  not Done or Skipped.
- Nothing may start under a blocked ancestor.
- A step or sub-step is Done only once every descendant is Done or Skipped.
  Composite nodes are rolled up automatically in the same commit as the
  change that settles them; skipping a composite skips its open descendants.

Mutations are serialised by one lock per tracker and are all-or-nothing:
a rejected request raises ``InvalidTransition`` and commits nothing.
Readers see the last committed state dictionary without taking the lock.
"""

from __future__ import annotations

import logging
import threading
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, Union

from .models import (
    Diagnostic,
    Document,
    HistoryRecord,
    NodeStatus,
    TrackerSnapshot,
)
from .plantrack_logging import log_node_transition
from .validator import validate

logger = logging.getLogger("plantrack.tracker")

StatusLike = Union[NodeStatus, str]

_ALLOWED_SOURCES: Dict[NodeStatus, Tuple[NodeStatus, ...]] = {
    NodeStatus.IN_PROGRESS: (NodeStatus.PENDING,),
    NodeStatus.DONE: (NodeStatus.IN_PROGRESS,),
    NodeStatus.BLOCKED: (NodeStatus.PENDING, NodeStatus.IN_PROGRESS),
    NodeStatus.SKIPPED: (NodeStatus.PENDING, NodeStatus.IN_PROGRESS),
}

_STARTED = (NodeStatus.IN_PROGRESS, NodeStatus.DONE)


class PlanTrackError(Exception):
    """Base class for tracker errors."""


class InvalidDocument(PlanTrackError):
    """Raised when a tracker is requested for a document with fatal diagnostics."""

    def __init__(self, diagnostics: Sequence[Diagnostic]):
        self.diagnostics = tuple(diagnostics)
        codes = ", ".join(sorted({d.code for d in self.diagnostics}))
        super().__init__(f"Document has fatal diagnostics ({codes}); it cannot be tracked.")


class UnknownNode(PlanTrackError, LookupError):
    """Raised for a node path that names nothing in the document."""

    def __init__(self, node_path: str):
        self.node_path = node_path
        super().__init__(f"No step, sub-step or action at path '{node_path}'.")


class InvalidTransition(PlanTrackError):
    """A requested state change that violates the source-state or ordering rules."""

    def __init__(self, node_path: str, current: NodeStatus, requested: NodeStatus, reason: str = ""):
        self.node_path = node_path
        self.current = current
        self.requested = requested
        self.reason = reason
        message = f"Cannot move '{node_path}' from {current.value} to {requested.value}"
        if reason:
            message = f"{message}: {reason}"
        super().__init__(message)

    def to_dict(self) -> Dict[str, str]:
        return {
            "node_path": self.node_path,
            "current": self.current.value,
            "requested": self.requested.value,
            "reason": self.reason,
        }


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class _Staging:
    """Working copy of tracker state for one mutation."""

    def __init__(self, tracker: "ExecutionTracker", actor: str):
        self.tracker = tracker
        self.actor = actor
        self.states = dict(tracker._states)
        self.reasons = dict(tracker._block_reasons)
        self.blocked_from = dict(tracker._blocked_from)
        self.records: List[HistoryRecord] = []

    def set(self, path: str, to_state: NodeStatus, note: str = "") -> None:
        record = HistoryRecord(
            timestamp=self.tracker._timestamp(),
            node_path=path,
            from_state=self.states[path],
            to_state=to_state,
            actor=self.actor,
            note=note,
        )
        self.states[path] = to_state
        self.records.append(record)


class ExecutionTracker:
    """Mutable status overlay for one execution of a plan."""

    def __init__(
        self,
        document: Document,
        *,
        ordered: bool = True,
        skipped_counts_as_done: bool = True,
        clock: Optional[Callable[[], datetime]] = None,
        plan_id: Optional[str] = None,
        run_id: Optional[str] = None,
    ):
        result = validate(document, lenient=False)
        if not result.is_valid:
            raise InvalidDocument(result.fatal)

        self.document = document
        self.ordered = ordered
        self.skipped_counts_as_done = skipped_counts_as_done
        self.plan_id = plan_id
        self.run_id = run_id
        self._clock = clock or _utc_now
        self._lock = threading.Lock()

        self._order: List[str] = []
        self._kind: Dict[str, str] = {}
        self._step_of: Dict[str, int] = {}
        self._ancestors: Dict[str, Tuple[str, ...]] = {}
        self._descendants: Dict[str, Tuple[str, ...]] = {}
        self._actions_under: Dict[str, Tuple[str, ...]] = {}
        self._index_document()

        self._states: Dict[str, NodeStatus] = {path: NodeStatus.PENDING for path in self._order}
        self._block_reasons: Dict[str, str] = {}
        self._blocked_from: Dict[str, NodeStatus] = {}
        self._history: List[HistoryRecord] = []

    # ------------------------------------------------------------------
    # Structure
    # ------------------------------------------------------------------

    def _index_document(self) -> None:
        for step in self.document.steps:
            step_path = step.path
            step_descendants: List[str] = []
            step_actions: List[str] = []
            self._register(step_path, "step", step.index, ())

            for action in step.actions:
                self._register(action.path, "action", step.index, (step_path,))
                step_descendants.append(action.path)
                step_actions.append(action.path)

            for sub_step in step.sub_steps:
                self._register(sub_step.path, "sub_step", step.index, (step_path,))
                step_descendants.append(sub_step.path)
                sub_actions = []
                for action in sub_step.actions:
                    self._register(action.path, "action", step.index, (sub_step.path, step_path))
                    sub_actions.append(action.path)
                self._descendants[sub_step.path] = tuple(sub_actions)
                self._actions_under[sub_step.path] = tuple(sub_actions)
                step_descendants.extend(sub_actions)
                step_actions.extend(sub_actions)

            self._descendants[step_path] = tuple(step_descendants)
            self._actions_under[step_path] = tuple(step_actions)

    def _register(self, path: str, kind: str, step_index: int, ancestors: Tuple[str, ...]) -> None:
        self._order.append(path)
        self._kind[path] = kind
        self._step_of[path] = step_index
        self._ancestors[path] = ancestors

    def _require(self, node_path: str) -> str:
        path = str(node_path).strip()
        if path not in self._kind:
            raise UnknownNode(path)
        return path

    def node_paths(self) -> List[str]:
        """Every tracked path in document order."""
        return list(self._order)

    def kind_of(self, node_path: str) -> str:
        return self._kind[self._require(node_path)]

    def _timestamp(self) -> str:
        return self._clock().isoformat()

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_state(self, node_path: str) -> NodeStatus:
        """Current committed status of a node."""
        path = self._require(node_path)
        return self._states[path]

    def block_reason(self, node_path: str) -> Optional[str]:
        return self._block_reasons.get(self._require(node_path))

    def blocked(self) -> List[Tuple[str, str]]:
        """``(path, reason)`` for every blocked node, in document order."""
        reasons = self._block_reasons
        return [(path, reasons[path]) for path in self._order if path in reasons]

    def history(self) -> Tuple[HistoryRecord, ...]:
        return tuple(self._history)

    def completion_ratio(self, skipped_counts_as_done: Optional[bool] = None) -> float:
        """Finished actions over all actions, in [0, 1]."""
        if skipped_counts_as_done is None:
            skipped_counts_as_done = self.skipped_counts_as_done
        states = self._states
        actions = [path for path in self._order if self._kind[path] == "action"]
        if not actions:
            return 0.0
        finished = (NodeStatus.DONE, NodeStatus.SKIPPED) if skipped_counts_as_done else (NodeStatus.DONE,)
        done = sum(1 for path in actions if states[path] in finished)
        return done / len(actions)

    def next_actionable(self) -> List[str]:
        """Pending actions that could be started right now."""
        states = self._states
        ready = []
        for path in self._order:
            if self._kind[path] != "action" or states[path] is not NodeStatus.PENDING:
                continue
            if self._start_blocker(states, path) is None:
                ready.append(path)
        return ready

    def snapshot(self) -> TrackerSnapshot:
        return TrackerSnapshot(
            states=dict(self._states),
            block_reasons=dict(self._block_reasons),
            history=tuple(self._history),
            ordered=self.ordered,
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def transition(self, node_path: str, to_state: StatusLike, actor: str, note: str = "") -> HistoryRecord:
        """Move a node to ``to_state``; returns the record of that change.

        Raises ``InvalidTransition`` when the move is not allowed, in which
        case nothing is committed.
        """
        requested = NodeStatus.parse(to_state)
        if requested is NodeStatus.BLOCKED:
            return self.block(node_path, note, actor)

        path = self._require(node_path)
        with self._lock:
            staging = _Staging(self, actor)
            self._apply(staging, path, requested, note)
            self._settle(staging, path)
            self._commit(staging)
        self._publish(staging.records)
        return staging.records[0]

    def block(self, node_path: str, reason: str, actor: str) -> HistoryRecord:
        """Mark a node Blocked; ``reason`` is mandatory."""
        path = self._require(node_path)
        with self._lock:
            staging = _Staging(self, actor)
            current = staging.states[path]
            if not reason or not reason.strip():
                raise InvalidTransition(path, current, NodeStatus.BLOCKED, "a reason is required")
            if current not in _ALLOWED_SOURCES[NodeStatus.BLOCKED]:
                raise InvalidTransition(path, current, NodeStatus.BLOCKED, "only pending or in-progress nodes can be blocked")
            staging.set(path, NodeStatus.BLOCKED, reason.strip())
            staging.reasons[path] = reason.strip()
            staging.blocked_from[path] = current
            self._commit(staging)
        self._publish(staging.records)
        return staging.records[0]

    def unblock(self, node_path: str, actor: str, note: str = "") -> HistoryRecord:
        """Release a blocked node; it resumes as InProgress.

        A node blocked before it started is held to the start rules, so
        unblocking it under a blocked ancestor or ahead of an unfinished
        earlier step raises ``InvalidTransition``.
        """
        path = self._require(node_path)
        with self._lock:
            staging = _Staging(self, actor)
            current = staging.states[path]
            if current is not NodeStatus.BLOCKED:
                raise InvalidTransition(path, current, NodeStatus.IN_PROGRESS, "node is not blocked")
            staging.reasons.pop(path, None)
            if staging.blocked_from.pop(path, NodeStatus.PENDING) is NodeStatus.PENDING:
                blocker = self._start_blocker(staging.states, path)
                if blocker:
                    raise InvalidTransition(path, current, NodeStatus.IN_PROGRESS, blocker)
            staging.set(path, NodeStatus.IN_PROGRESS, note or "unblocked")
            self._settle(staging, path)
            self._commit(staging)
        self._publish(staging.records)
        return staging.records[0]

    # ------------------------------------------------------------------
    # Rule engine
    # ------------------------------------------------------------------

    def _start_blocker(self, states: Dict[str, NodeStatus], path: str) -> Optional[str]:
        """Why ``path`` may not start now, or None."""
        for ancestor in self._ancestors[path]:
            if states[ancestor] is NodeStatus.BLOCKED:
                return f"ancestor '{ancestor}' is blocked"
        if self.ordered:
            for earlier in range(1, self._step_of[path]):
                if not states[str(earlier)].is_terminal:
                    return f"step {earlier} is not finished (ordered execution)"
        return None

    def _apply(self, staging: _Staging, path: str, requested: NodeStatus, note: str) -> None:
        current = staging.states[path]
        sources = _ALLOWED_SOURCES.get(requested, ())
        if current not in sources:
            if current is NodeStatus.BLOCKED:
                reason = "blocked nodes must be unblocked first"
            elif requested is NodeStatus.PENDING:
                reason = "nodes never return to pending"
            else:
                allowed = " or ".join(s.value for s in sources)
                reason = f"{requested.value} is only reachable from {allowed}"
            raise InvalidTransition(path, current, requested, reason)

        if requested is NodeStatus.IN_PROGRESS:
            blocker = self._start_blocker(staging.states, path)
            if blocker:
                raise InvalidTransition(path, current, requested, blocker)
            staging.set(path, requested, note)
            return

        if requested is NodeStatus.DONE:
            for descendant in self._descendants.get(path, ()):
                if not staging.states[descendant].is_terminal:
                    raise InvalidTransition(
                        path, current, requested, f"descendant '{descendant}' is {staging.states[descendant].value}"
                    )
            staging.set(path, requested, note)
            return

        # Skipped: close the node and its open descendants together.
        staging.set(path, requested, note)
        for descendant in self._descendants.get(path, ()):
            state = staging.states[descendant]
            if state is NodeStatus.BLOCKED:
                raise InvalidTransition(descendant, state, requested, f"blocked while skipping '{path}'")
            if not state.is_terminal:
                staging.set(descendant, NodeStatus.SKIPPED, f"skipped with '{path}'")

    def _settle(self, staging: _Staging, path: str) -> None:
        """Roll composite nodes up after a change at ``path``."""
        candidates = list(self._ancestors[path])
        if self._kind[path] != "action":
            candidates.insert(0, path)
        states = staging.states
        note = f"rolled up from {path}"
        for composite in candidates:
            state = states[composite]
            if state in (NodeStatus.DONE, NodeStatus.SKIPPED, NodeStatus.BLOCKED):
                continue
            descendants = self._descendants[composite]
            actions = self._actions_under[composite]
            if actions and all(states[d].is_terminal for d in descendants):
                if all(states[a] is NodeStatus.SKIPPED for a in actions):
                    staging.set(composite, NodeStatus.SKIPPED, note)
                else:
                    if state is NodeStatus.PENDING:
                        staging.set(composite, NodeStatus.IN_PROGRESS, note)
                    staging.set(composite, NodeStatus.DONE, note)
            elif state is NodeStatus.PENDING and any(states[d] in _STARTED for d in descendants):
                staging.set(composite, NodeStatus.IN_PROGRESS, note)

    def _commit(self, staging: _Staging) -> None:
        # Rebinding whole dicts keeps lock-free readers on a consistent version.
        self._block_reasons = staging.reasons
        self._blocked_from = staging.blocked_from
        self._states = staging.states
        self._history.extend(staging.records)

    def _publish(self, records: Sequence[HistoryRecord]) -> None:
        for record in records:
            logger.info(
                "%s: %s -> %s by %s",
                record.node_path,
                record.from_state.value,
                record.to_state.value,
                record.actor,
            )
            log_node_transition(record, plan_id=self.plan_id, run_id=self.run_id)

    # ------------------------------------------------------------------
    # Persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            states = self._states
            history = list(self._history)
        return {
            "plan_title": self.document.title,
            "plan_id": self.plan_id,
            "run_id": self.run_id,
            "ordered": self.ordered,
            "skipped_counts_as_done": self.skipped_counts_as_done,
            "states": {path: state.value for path, state in states.items()},
            "history": [record.to_dict() for record in history],
        }

    @classmethod
    def from_dict(
        cls,
        document: Document,
        data: Dict[str, Any],
        *,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> "ExecutionTracker":
        """Rebuild a tracker by replaying a saved history over ``document``."""
        tracker = cls(
            document,
            ordered=data.get("ordered", True),
            skipped_counts_as_done=data.get("skipped_counts_as_done", True),
            clock=clock,
            plan_id=data.get("plan_id"),
            run_id=data.get("run_id"),
        )
        for raw in data.get("history", []):
            record = HistoryRecord.from_dict(raw)
            path = tracker._require(record.node_path)
            if tracker._states[path] is not record.from_state:
                raise PlanTrackError(
                    f"Saved history does not match the plan at '{path}': "
                    f"expected {record.from_state.value}, found {tracker._states[path].value}."
                )
            tracker._states[path] = record.to_state
            if record.to_state is NodeStatus.BLOCKED:
                tracker._block_reasons[path] = record.note
                tracker._blocked_from[path] = record.from_state
            elif record.from_state is NodeStatus.BLOCKED:
                tracker._block_reasons.pop(path, None)
                tracker._blocked_from.pop(path, None)
            tracker._history.append(record)
        return tracker
