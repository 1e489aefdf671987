"""Data models for PlanTrack.

This module contains the immutable plan tree produced by the parser
(Document -> Step -> SubStep -> Action), the diagnostics reported by the
parser and validator, and the status / history types used by the
execution tracker.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Iterator, Optional, Tuple, Union


class Severity(str, Enum):
    """Severity of a structural diagnostic."""

    WARNING = "warning"
    FATAL = "fatal"


class PathKind(str, Enum):
    """Heuristic classification of a bolded reference in an action."""

    FILE = "file"
    DIRECTORY = "directory"
    COMMAND = "command"
    UNKNOWN = "unknown"


class NodeStatus(str, Enum):
    """Execution state of a step, sub-step or action."""

    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    DONE = "done"
    BLOCKED = "blocked"
    SKIPPED = "skipped"

    @property
    def is_terminal(self) -> bool:
        return self in (NodeStatus.DONE, NodeStatus.SKIPPED)

    @classmethod
    def parse(cls, value: Union[str, "NodeStatus"]) -> "NodeStatus":
        """Accept enum members, values ("in_progress") or names ("InProgress")."""
        if isinstance(value, NodeStatus):
            return value
        key = str(value).strip().lower().replace("-", "_").replace(" ", "_")
        if key == "inprogress":
            key = "in_progress"
        return cls(key)


@dataclass(frozen=True, slots=True)
class Diagnostic:
    """A structural finding reported by the sectionizer, parser or validator."""

    code: str
    severity: Severity
    message: str
    node_path: Optional[str] = None
    line: Optional[int] = None

    @property
    def is_fatal(self) -> bool:
        return self.severity is Severity.FATAL

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "code": self.code,
            "severity": self.severity.value,
            "message": self.message,
            "node_path": self.node_path,
            "line": self.line,
        }

    def __str__(self) -> str:
        where = f" [{self.node_path}]" if self.node_path else ""
        at = f" (line {self.line})" if self.line else ""
        return f"{self.severity.value.upper()} {self.code}{where}: {self.message}{at}"


@dataclass(frozen=True, slots=True)
class PathReference:
    """A bolded path-like token found in an action's text."""

    raw: str
    kind: PathKind = PathKind.UNKNOWN

    def to_dict(self) -> Dict[str, str]:
        return {"raw": self.raw, "kind": self.kind.value}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PathReference":
        return cls(raw=data["raw"], kind=PathKind(data.get("kind", "unknown")))


@dataclass(frozen=True, slots=True)
class Action:
    """A single bullet inside a step or sub-step."""

    path: str
    text: str
    references: Tuple[PathReference, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "text": self.text,
            "references": [ref.to_dict() for ref in self.references],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Action":
        return cls(
            path=data["path"],
            text=data["text"],
            references=tuple(PathReference.from_dict(r) for r in data.get("references", [])),
        )


@dataclass(frozen=True, slots=True)
class SubStep:
    """A numbered sub-step ("1.2: ...") owning its actions.

    ``label`` is the numbering exactly as written by the author, ``path`` is
    the re-indexed position used for tracking.
    """

    path: str
    label: str
    title: str
    description: str = ""
    actions: Tuple[Action, ...] = ()

    @property
    def ordinal(self) -> int:
        return int(self.path.rsplit(".", 1)[1])

    @property
    def label_parent(self) -> Optional[int]:
        """Step number component of the label, or None for a malformed label."""
        head, sep, _ = self.label.partition(".")
        if not sep or not head.isdigit():
            return None
        return int(head)

    @property
    def label_ordinal(self) -> Optional[int]:
        _, sep, tail = self.label.partition(".")
        if not sep or not tail.isdigit():
            return None
        return int(tail)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "label": self.label,
            "title": self.title,
            "description": self.description,
            "actions": [action.to_dict() for action in self.actions],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SubStep":
        return cls(
            path=data["path"],
            label=data.get("label", data["path"]),
            title=data.get("title", ""),
            description=data.get("description", ""),
            actions=tuple(Action.from_dict(a) for a in data.get("actions", [])),
        )


@dataclass(frozen=True, slots=True)
class Step:
    """A top-level step of the execution outline.

    A step may carry actions directly (bullets before any sub-step heading),
    sub-steps, or both. Direct actions live under sub-step ordinal 0, so the
    second direct action of step 3 has path ``"3.0.2"``.
    """

    index: int
    title: str
    description: str = ""
    sub_steps: Tuple[SubStep, ...] = ()
    actions: Tuple[Action, ...] = ()
    number: Optional[int] = None

    @property
    def path(self) -> str:
        return str(self.index)

    @property
    def layout(self) -> str:
        if self.sub_steps and self.actions:
            return "mixed"
        if self.sub_steps:
            return "sub_steps"
        if self.actions:
            return "direct"
        return "empty"

    def all_actions(self) -> Tuple[Action, ...]:
        """Direct actions followed by every sub-step's actions."""
        collected = list(self.actions)
        for sub_step in self.sub_steps:
            collected.extend(sub_step.actions)
        return tuple(collected)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "index": self.index,
            "number": self.number,
            "title": self.title,
            "description": self.description,
            "layout": self.layout,
            "actions": [action.to_dict() for action in self.actions],
            "sub_steps": [sub_step.to_dict() for sub_step in self.sub_steps],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Step":
        return cls(
            index=int(data["index"]),
            number=data.get("number"),
            title=data.get("title", ""),
            description=data.get("description", ""),
            actions=tuple(Action.from_dict(a) for a in data.get("actions", [])),
            sub_steps=tuple(SubStep.from_dict(s) for s in data.get("sub_steps", [])),
        )


@dataclass(frozen=True, slots=True)
class TestingItem:
    """One entry of the manual testing checklist."""

    __test__ = False  # not a pytest test class

    text: str

    def to_dict(self) -> Dict[str, str]:
        return {"text": self.text}


PlanNode = Union[Step, SubStep, Action]


@dataclass(frozen=True, slots=True)
class Document:
    """Root of a parsed plan. Immutable once constructed."""

    title: str
    tagline: str = ""
    summary_bullets: Tuple[str, ...] = ()
    steps: Tuple[Step, ...] = ()
    testing_items: Tuple[TestingItem, ...] = ()

    @property
    def testing_bullets(self) -> Tuple[str, ...]:
        return tuple(item.text for item in self.testing_items)

    def iter_nodes(self) -> Iterator[Tuple[str, PlanNode]]:
        """Yield ``(path, node)`` for every step, sub-step and action, depth first."""
        for step in self.steps:
            yield step.path, step
            for action in step.actions:
                yield action.path, action
            for sub_step in step.sub_steps:
                yield sub_step.path, sub_step
                for action in sub_step.actions:
                    yield action.path, action

    def find(self, path: str) -> Optional[PlanNode]:
        for node_path, node in self.iter_nodes():
            if node_path == path:
                return node
        return None

    def all_actions(self) -> Tuple[Action, ...]:
        collected = []
        for step in self.steps:
            collected.extend(step.all_actions())
        return tuple(collected)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "title": self.title,
            "tagline": self.tagline,
            "summary_bullets": list(self.summary_bullets),
            "steps": [step.to_dict() for step in self.steps],
            "testing_bullets": list(self.testing_bullets),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Document":
        """Create from dictionary representation."""
        return cls(
            title=data.get("title", ""),
            tagline=data.get("tagline", ""),
            summary_bullets=tuple(data.get("summary_bullets", [])),
            steps=tuple(Step.from_dict(s) for s in data.get("steps", [])),
            testing_items=tuple(TestingItem(text=t) for t in data.get("testing_bullets", [])),
        )


@dataclass(frozen=True, slots=True)
class HistoryRecord:
    """One committed state change. Records are never rewritten."""

    timestamp: str
    node_path: str
    from_state: NodeStatus
    to_state: NodeStatus
    actor: str
    note: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {
            "timestamp": self.timestamp,
            "node_path": self.node_path,
            "from_state": self.from_state.value,
            "to_state": self.to_state.value,
            "actor": self.actor,
            "note": self.note,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "HistoryRecord":
        return cls(
            timestamp=data["timestamp"],
            node_path=data["node_path"],
            from_state=NodeStatus.parse(data["from_state"]),
            to_state=NodeStatus.parse(data["to_state"]),
            actor=data.get("actor", ""),
            note=data.get("note", ""),
        )


@dataclass(frozen=True, slots=True)
class ValidationResult:
    """Outcome of validating a Document."""

    is_valid: bool
    diagnostics: Tuple[Diagnostic, ...] = ()

    @property
    def fatal(self) -> Tuple[Diagnostic, ...]:
        return tuple(d for d in self.diagnostics if d.is_fatal)

    @property
    def warnings(self) -> Tuple[Diagnostic, ...]:
        return tuple(d for d in self.diagnostics if not d.is_fatal)

    def codes(self) -> Tuple[str, ...]:
        return tuple(d.code for d in self.diagnostics)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "is_valid": self.is_valid,
            "diagnostics": [d.to_dict() for d in self.diagnostics],
        }


@dataclass(frozen=True, slots=True)
class TrackerSnapshot:
    """Point-in-time copy of a tracker's committed state."""

    states: Dict[str, NodeStatus] = field(default_factory=dict)
    block_reasons: Dict[str, str] = field(default_factory=dict)
    history: Tuple[HistoryRecord, ...] = ()
    ordered: bool = True

    def state_of(self, path: str) -> NodeStatus:
        return self.states.get(path, NodeStatus.PENDING)
