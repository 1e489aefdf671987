"""PlanTrack: parse markdown execution plans and track their progress."""

from .manager import PlanManager
from .models import (
    Action,
    Diagnostic,
    Document,
    HistoryRecord,
    NodeStatus,
    PathKind,
    PathReference,
    Severity,
    Step,
    SubStep,
    TestingItem,
    TrackerSnapshot,
    ValidationResult,
)
from .outline import ParseResult, parse_document
from .renderer import (
    render_diff,
    render_document,
    render_history,
    render_progress,
    render_validation_report,
)
from .sectionizer import split_sections
from .tracker import (
    ExecutionTracker,
    InvalidDocument,
    InvalidTransition,
    PlanTrackError,
    UnknownNode,
)
from .validator import validate
from .workspace import Workspace

__all__ = [
    "Action",
    "Diagnostic",
    "Document",
    "ExecutionTracker",
    "HistoryRecord",
    "InvalidDocument",
    "InvalidTransition",
    "NodeStatus",
    "ParseResult",
    "PathKind",
    "PathReference",
    "PlanManager",
    "PlanTrackError",
    "Severity",
    "Step",
    "SubStep",
    "TestingItem",
    "TrackerSnapshot",
    "UnknownNode",
    "ValidationResult",
    "Workspace",
    "parse_document",
    "render_diff",
    "render_document",
    "render_history",
    "render_progress",
    "render_validation_report",
    "split_sections",
    "validate",
]
