"""Structural validation of parsed plan documents.

Each rule yields its own diagnostic code. Violations are returned as data,
never raised:

- V1 (fatal): non-empty title and at least one step.
- V2 (fatal, warning when lenient): step indices and sub-step ordinals are
  contiguous starting at 1.
- V3 (fatal): every sub-step label names its owning step.
- V4 (warning): no duplicate titles among sibling steps or sub-steps.
- V5 (warning): the manual testing plan is present and non-empty.
- V6 (warning): sub-step labels increase strictly within a step.
- V7 (warning): a step carries neither sub-steps nor direct actions.
- V8 (fatal): an action has empty text.
"""

from __future__ import annotations

import logging
import re
from typing import Dict, Iterable, List, Sequence

from .models import Diagnostic, Document, Severity, Step, ValidationResult

logger = logging.getLogger("plantrack.validator")


def _normalize_title(title: str) -> str:
    return re.sub(r"\s+", " ", title).strip().casefold()


def _check_title_and_steps(document: Document) -> List[Diagnostic]:
    issues = []
    if not document.title or not document.title.strip():
        issues.append(Diagnostic("V1", Severity.FATAL, "Document title is empty."))
    if not document.steps:
        issues.append(Diagnostic("V1", Severity.FATAL, "Document has no execution steps."))
    return issues


def _check_numbering(document: Document, lenient: bool) -> List[Diagnostic]:
    severity = Severity.WARNING if lenient else Severity.FATAL
    issues = []
    for expected, step in enumerate(document.steps, start=1):
        if step.index != expected:
            issues.append(
                Diagnostic(
                    "V2",
                    severity,
                    f"Step at position {expected} has index {step.index}; indices must run 1..{len(document.steps)}.",
                    node_path=step.path,
                )
            )
        for ordinal, sub_step in enumerate(step.sub_steps, start=1):
            if sub_step.path != f"{step.index}.{ordinal}":
                issues.append(
                    Diagnostic(
                        "V2",
                        severity,
                        f"Sub-step at position {ordinal} of step {step.index} has path '{sub_step.path}'.",
                        node_path=sub_step.path,
                    )
                )
    return issues


def _check_labels(step: Step) -> List[Diagnostic]:
    issues = []
    previous = None
    for sub_step in step.sub_steps:
        parent = sub_step.label_parent
        if parent is None:
            issues.append(
                Diagnostic(
                    "V3",
                    Severity.FATAL,
                    f"Sub-step '{sub_step.title}' has no '<N>.<M>' label.",
                    node_path=sub_step.path,
                )
            )
            continue
        if parent != step.index:
            issues.append(
                Diagnostic(
                    "V3",
                    Severity.FATAL,
                    f"Sub-step '{sub_step.label}' is nested under step {step.index}.",
                    node_path=sub_step.path,
                )
            )
        ordinal = sub_step.label_ordinal
        if previous is not None and ordinal is not None and ordinal <= previous:
            issues.append(
                Diagnostic(
                    "V6",
                    Severity.WARNING,
                    f"Sub-step '{sub_step.label}' does not follow label ordinal {previous}.",
                    node_path=sub_step.path,
                )
            )
        if ordinal is not None:
            previous = ordinal
    return issues


def _check_duplicates(titles: Iterable[tuple], scope: str) -> List[Diagnostic]:
    issues = []
    seen: Dict[str, str] = {}
    for path, title in titles:
        key = _normalize_title(title)
        if not key:
            continue
        if key in seen:
            issues.append(
                Diagnostic(
                    "V4",
                    Severity.WARNING,
                    f"{scope} title '{title}' duplicates {seen[key]}.",
                    node_path=path,
                )
            )
        else:
            seen[key] = path
    return issues


def _check_step_contents(step: Step) -> List[Diagnostic]:
    issues = []
    if not step.sub_steps and not step.actions:
        issues.append(
            Diagnostic(
                "V7",
                Severity.WARNING,
                f"Step {step.index} has neither sub-steps nor actions.",
                node_path=step.path,
            )
        )
    for action in step.all_actions():
        if not action.text or not action.text.strip():
            issues.append(
                Diagnostic("V8", Severity.FATAL, "Action text is empty.", node_path=action.path)
            )
    return issues


def validate(document: Document, *, lenient: bool = False) -> ValidationResult:
    """Check a document against the structural rules.

    ``lenient`` downgrades numbering problems (V2) to warnings for consumers
    that only inspect or render the plan. Documents headed for an execution
    tracker must be validated strictly.
    """
    diagnostics: List[Diagnostic] = []
    diagnostics.extend(_check_title_and_steps(document))
    diagnostics.extend(_check_numbering(document, lenient))
    for step in document.steps:
        diagnostics.extend(_check_labels(step))
    diagnostics.extend(_check_duplicates(((s.path, s.title) for s in document.steps), "Step"))
    for step in document.steps:
        diagnostics.extend(
            _check_duplicates(((s.path, s.title) for s in step.sub_steps), "Sub-step")
        )
    if not any(item.text.strip() for item in document.testing_items):
        diagnostics.append(
            Diagnostic("V5", Severity.WARNING, "Manual testing plan is missing or empty.")
        )
    for step in document.steps:
        diagnostics.extend(_check_step_contents(step))

    is_valid = not any(d.is_fatal for d in diagnostics)
    logger.debug(
        "Validated plan '%s': valid=%s, %d diagnostics",
        document.title,
        is_valid,
        len(diagnostics),
    )
    return ValidationResult(is_valid=is_valid, diagnostics=tuple(diagnostics))


def merge_diagnostics(*groups: Sequence[Diagnostic]) -> List[Diagnostic]:
    """Concatenate diagnostic groups, dropping exact duplicates."""
    merged: List[Diagnostic] = []
    for group in groups:
        for diagnostic in group:
            if diagnostic not in merged:
                merged.append(diagnostic)
    return merged
