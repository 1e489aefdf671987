"""Text projections of plans and tracker state.

All functions here are pure: they read a Document and optionally a
TrackerSnapshot and return text.
"""

from __future__ import annotations

from typing import Iterable, List, Optional, Sequence, Tuple

from .models import (
    Document,
    HistoryRecord,
    NodeStatus,
    Step,
    SubStep,
    TrackerSnapshot,
    ValidationResult,
)
from .sectionizer import SECTION_HEADINGS, STEPS, SUMMARY, TESTING


def _percent(done: int, total: int) -> str:
    if total == 0:
        return "0%"
    return f"{round(100 * done / total)}%"


def _finished_states(skipped_counts_as_done: bool) -> Tuple[NodeStatus, ...]:
    if skipped_counts_as_done:
        return (NodeStatus.DONE, NodeStatus.SKIPPED)
    return (NodeStatus.DONE,)


def count_finished(
    paths: Iterable[str],
    snapshot: Optional[TrackerSnapshot],
    skipped_counts_as_done: bool = True,
) -> Tuple[int, int]:
    """``(finished, total)`` over the given action paths."""
    paths = list(paths)
    if snapshot is None:
        return 0, len(paths)
    finished = _finished_states(skipped_counts_as_done)
    return sum(1 for p in paths if snapshot.state_of(p) in finished), len(paths)


def render_progress(
    document: Document,
    snapshot: Optional[TrackerSnapshot] = None,
    *,
    skipped_counts_as_done: bool = True,
) -> str:
    """Per-step completion, blocked nodes and overall completion."""
    state_of = snapshot.state_of if snapshot else (lambda _path: NodeStatus.PENDING)
    all_paths = [a.path for a in document.all_actions()]
    done, total = count_finished(all_paths, snapshot, skipped_counts_as_done)

    lines = [f"# Progress: {document.title or '(untitled plan)'}", ""]
    lines.append(f"Overall: {_percent(done, total)} ({done}/{total} actions)")
    if snapshot is not None:
        lines.append(f"Mode: {'ordered' if snapshot.ordered else 'unordered'}")
    lines.append("")

    for step in document.steps:
        step_done, step_total = count_finished(
            (a.path for a in step.all_actions()), snapshot, skipped_counts_as_done
        )
        lines.append(
            f"Step {step.index}: {step.title} - {_percent(step_done, step_total)} "
            f"({step_done}/{step_total}) [{state_of(step.path).value}]"
        )
        if step.actions:
            direct_done, direct_total = count_finished(
                (a.path for a in step.actions), snapshot, skipped_counts_as_done
            )
            lines.append(f"  direct actions - {direct_done}/{direct_total}")
        for sub_step in step.sub_steps:
            sub_done, sub_total = count_finished(
                (a.path for a in sub_step.actions), snapshot, skipped_counts_as_done
            )
            lines.append(
                f"  {sub_step.path} {sub_step.title} - {sub_done}/{sub_total} "
                f"[{state_of(sub_step.path).value}]"
            )

    blocked = []
    if snapshot is not None:
        blocked = [
            (path, snapshot.block_reasons.get(path, ""))
            for path, _ in document.iter_nodes()
            if snapshot.state_of(path) is NodeStatus.BLOCKED
        ]
    lines.append("")
    if blocked:
        lines.append("Blocked:")
        for path, reason in blocked:
            lines.append(f"- {path}: {reason}" if reason else f"- {path}")
    else:
        lines.append("Blocked: none")
    return "\n".join(lines) + "\n"


def render_validation_report(result: ValidationResult, title: Optional[str] = None) -> str:
    """One line per diagnostic, fatal first."""
    header = f"Validation of '{title}'" if title else "Validation"
    verdict = "valid" if result.is_valid else "INVALID"
    lines = [
        f"{header}: {verdict} "
        f"({len(result.fatal)} fatal, {len(result.warnings)} warnings)"
    ]
    for diagnostic in list(result.fatal) + list(result.warnings):
        lines.append(f"- {diagnostic}")
    return "\n".join(lines) + "\n"


def render_history(records: Sequence[HistoryRecord]) -> str:
    lines = []
    for record in records:
        line = (
            f"{record.timestamp} {record.node_path} "
            f"{record.from_state.value} -> {record.to_state.value} ({record.actor})"
        )
        if record.note:
            line = f"{line}: {record.note}"
        lines.append(line)
    return "\n".join(lines) + ("\n" if lines else "")


def render_diff(document: Document, before: TrackerSnapshot, after: TrackerSnapshot) -> str:
    """Nodes whose state differs between two snapshots, in document order."""
    lines = []
    for path, _ in document.iter_nodes():
        old, new = before.state_of(path), after.state_of(path)
        if old is not new:
            lines.append(f"{path}: {old.value} -> {new.value}")
    if not lines:
        return "No changes.\n"
    return "\n".join(lines) + "\n"


# ----------------------------------------------------------------------
# Markdown serialisation
# ----------------------------------------------------------------------


def _render_sub_step(sub_step: SubStep, lines: List[str]) -> None:
    lines.append(f"#### {sub_step.label}: {sub_step.title}".rstrip() if sub_step.label else f"#### {sub_step.title}")
    lines.append("")
    if sub_step.description:
        lines.append(sub_step.description)
        lines.append("")
    if sub_step.actions:
        lines.extend(f"- {action.text}" for action in sub_step.actions)
        lines.append("")


def _render_step(step: Step, lines: List[str]) -> None:
    if step.number is None:
        lines.append(f"### {step.title}")
    else:
        lines.append(f"### Step {step.number}: {step.title}".rstrip())
    lines.append("")
    if step.description:
        lines.append(step.description)
        lines.append("")
    if step.actions:
        lines.extend(f"- {action.text}" for action in step.actions)
        lines.append("")
    for sub_step in step.sub_steps:
        _render_sub_step(sub_step, lines)


def render_document(document: Document) -> str:
    """Serialise a Document back to plan markdown.

    Parsing the output yields an equal Document for any valid input.
    """
    lines = [f"# {document.title}", ""]
    if document.tagline:
        lines.extend([document.tagline, ""])

    lines.extend([f"## {SECTION_HEADINGS[SUMMARY]}", ""])
    if document.summary_bullets:
        lines.extend(f"- {bullet}" for bullet in document.summary_bullets)
        lines.append("")

    lines.extend([f"## {SECTION_HEADINGS[STEPS]}", ""])
    for step in document.steps:
        _render_step(step, lines)

    if document.testing_items:
        lines.extend([f"## {SECTION_HEADINGS[TESTING]}", ""])
        lines.extend(f"- {item.text}" for item in document.testing_items)
        lines.append("")

    return "\n".join(lines).rstrip("\n") + "\n"
