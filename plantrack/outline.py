"""Outline parsing for plan documents.

Turns the "Execution Steps" section into the Step -> SubStep -> Action tree
and assembles the full Document from the sectionizer output. Parsing never
raises on malformed input: problems are reported as diagnostics and the
best partial tree is returned.

Conventions inside "Execution Steps":

- ``### Step N: title`` opens a step,
- ``#### N.M: title`` opens a sub-step of step N,
- every bullet or numbered list line is one action; indented non-bullet
  lines continue the previous action,
- bullets before the first sub-step heading are the step's direct actions,
- other prose is the description of the enclosing step or sub-step,
- fenced code blocks are skipped.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from typing import List, Optional, Tuple

from .models import (
    Action,
    Diagnostic,
    Document,
    PathKind,
    PathReference,
    Severity,
    Step,
    SubStep,
    TestingItem,
)
from .sectionizer import (
    HEADING_PATTERN,
    STEPS,
    SUMMARY,
    TESTING,
    SectionSpan,
    Sections,
    iter_structural_lines,
    split_sections,
)

logger = logging.getLogger("plantrack.parser")

STEP_HEADING_PATTERN = re.compile(
    r"^step\s+(?P<number>\d+)\s*(?:[:.\-–—]\s*(?P<title>.*))?$",
    re.IGNORECASE,
)
SUBSTEP_HEADING_PATTERN = re.compile(
    r"^(?:sub-?\s?step\s+)?(?P<label>\d+\.\d+)\.?\s*(?:[:\-–—]\s*)?(?P<title>.*)$",
    re.IGNORECASE,
)
BULLET_PATTERN = re.compile(
    r"^(?P<indent>\s*)(?:[-*+]|\d+[.)])\s+(?:\[[ xX]\]\s+)?(?P<text>.*)$"
)
EMPHASIS_PATTERN = re.compile(r"(\*\*|__)(?P<inner>.+?)\1")
CODE_SPAN_PATTERN = re.compile(r"^`+(?P<code>[^`]+)`+$")
EXTENSION_PATTERN = re.compile(r"\.[A-Za-z][A-Za-z0-9_-]{0,9}$")


@dataclass(frozen=True, slots=True)
class ParseResult:
    """Document plus every diagnostic raised while building it."""

    document: Document
    diagnostics: Tuple[Diagnostic, ...] = ()
    sections: Optional[Sections] = None

    @property
    def has_fatal(self) -> bool:
        return any(d.is_fatal for d in self.diagnostics)


# ----------------------------------------------------------------------
# Path references
# ----------------------------------------------------------------------


def classify_reference(token: str, code_span: bool = False) -> PathKind:
    """Best-effort guess at what a bolded token names."""
    if token.endswith("/"):
        return PathKind.DIRECTORY
    basename = token.rstrip("/").rsplit("/", 1)[-1]
    if not re.search(r"\s", token) and EXTENSION_PATTERN.search(basename):
        return PathKind.FILE
    if code_span:
        return PathKind.COMMAND
    return PathKind.UNKNOWN


def extract_references(text: str) -> Tuple[PathReference, ...]:
    """Collect bolded runs that look like paths, filenames or shell tokens."""
    references: List[PathReference] = []
    seen = set()
    for match in EMPHASIS_PATTERN.finditer(text):
        inner = match.group("inner").strip()
        code = CODE_SPAN_PATTERN.match(inner)
        code_span = code is not None
        token = (code.group("code") if code else inner).strip().rstrip(":,;")
        if not token:
            continue
        if not code_span:
            if re.search(r"\s", token):
                continue
            basename = token.rstrip("/").rsplit("/", 1)[-1]
            if "/" not in token and not EXTENSION_PATTERN.search(basename):
                continue
        if token in seen:
            continue
        seen.add(token)
        references.append(PathReference(raw=token, kind=classify_reference(token, code_span)))
    return tuple(references)


# ----------------------------------------------------------------------
# Execution steps
# ----------------------------------------------------------------------


@dataclass
class _SubStepDraft:
    label: str
    title: str
    line: int
    description_lines: List[str] = field(default_factory=list)
    actions: List[List] = field(default_factory=list)


@dataclass
class _StepDraft:
    number: Optional[int]
    title: str
    line: int
    description_lines: List[str] = field(default_factory=list)
    actions: List[List] = field(default_factory=list)
    sub_steps: List[_SubStepDraft] = field(default_factory=list)


def _join_description(lines: List[str]) -> str:
    paragraphs: List[str] = []
    current: List[str] = []
    for line in lines:
        if line:
            current.append(line)
        elif current:
            paragraphs.append(" ".join(current))
            current = []
    if current:
        paragraphs.append(" ".join(current))
    return "\n\n".join(paragraphs)


def _build_actions(prefix: str, drafts: List[List]) -> Tuple[Action, ...]:
    actions = []
    for position, (text, _line) in enumerate(drafts, start=1):
        actions.append(
            Action(path=f"{prefix}.{position}", text=text, references=extract_references(text))
        )
    return tuple(actions)


def parse_steps(span: Optional[SectionSpan]) -> Tuple[Tuple[Step, ...], List[Diagnostic]]:
    """Parse the body of the "Execution Steps" section into re-indexed steps."""
    diagnostics: List[Diagnostic] = []
    if span is None:
        return (), diagnostics

    drafts: List[_StepDraft] = []
    current_step: Optional[_StepDraft] = None
    current_sub: Optional[_SubStepDraft] = None
    orphaned = False
    last_action: Optional[List] = None

    for offset, line, in_fence in iter_structural_lines(span.text):
        line_number = span.start_line + offset - 1
        if in_fence:
            continue
        if not line.strip():
            container = current_sub or current_step
            if container is not None:
                container.description_lines.append("")
            continue

        heading = HEADING_PATTERN.match(line)
        if heading:
            level = len(heading.group("hashes"))
            text = heading.group("text").strip()
            last_action = None
            if level == 3:
                match = STEP_HEADING_PATTERN.match(text)
                if match:
                    number = int(match.group("number"))
                    title = (match.group("title") or "").strip()
                else:
                    number, title = None, text
                    diagnostics.append(
                        Diagnostic(
                            "P1",
                            Severity.WARNING,
                            f"Step heading '{text}' does not match 'Step <N>: <title>'.",
                            node_path=str(len(drafts) + 1),
                            line=line_number,
                        )
                    )
                current_step = _StepDraft(number=number, title=title, line=line_number)
                drafts.append(current_step)
                current_sub = None
                orphaned = False
            elif level == 4:
                if current_step is None:
                    diagnostics.append(
                        Diagnostic(
                            "P3",
                            Severity.WARNING,
                            f"Sub-step heading '{text}' appears before any step; dropped.",
                            line=line_number,
                        )
                    )
                    current_sub = None
                    orphaned = True
                    continue
                match = SUBSTEP_HEADING_PATTERN.match(text)
                if match:
                    label, title = match.group("label"), match.group("title").strip()
                else:
                    label, title = "", text
                    diagnostics.append(
                        Diagnostic(
                            "P1",
                            Severity.WARNING,
                            f"Sub-step heading '{text}' does not match '<N>.<M>: <title>'.",
                            node_path=f"{len(drafts)}.{len(current_step.sub_steps) + 1}",
                            line=line_number,
                        )
                    )
                current_sub = _SubStepDraft(label=label, title=title, line=line_number)
                current_step.sub_steps.append(current_sub)
            else:
                diagnostics.append(
                    Diagnostic(
                        "P4",
                        Severity.WARNING,
                        f"Level-{level} heading '{text}' is not part of the step outline; ignored.",
                        line=line_number,
                    )
                )
            continue

        bullet = BULLET_PATTERN.match(line)
        if bullet:
            text = bullet.group("text").strip()
            if not text:
                continue
            container = current_sub or current_step
            if container is None or orphaned:
                diagnostics.append(
                    Diagnostic(
                        "P3",
                        Severity.WARNING,
                        f"Action '{text}' is outside any step; dropped.",
                        line=line_number,
                    )
                )
                last_action = None
                continue
            last_action = [text, line_number]
            container.actions.append(last_action)
            continue

        if last_action is not None and line[:1].isspace():
            last_action[0] = f"{last_action[0]} {line.strip()}"
            continue
        last_action = None
        container = current_sub or current_step
        if container is not None and not orphaned:
            container.description_lines.append(line.strip())

    steps: List[Step] = []
    for index, draft in enumerate(drafts, start=1):
        if draft.number is not None and draft.number != index:
            diagnostics.append(
                Diagnostic(
                    "P2",
                    Severity.WARNING,
                    f"Step {draft.number} is step {index} in document order; re-indexed.",
                    node_path=str(index),
                    line=draft.line,
                )
            )
        sub_steps = []
        for ordinal, sub in enumerate(draft.sub_steps, start=1):
            path = f"{index}.{ordinal}"
            sub_steps.append(
                SubStep(
                    path=path,
                    label=sub.label,
                    title=sub.title,
                    description=_join_description(sub.description_lines),
                    actions=_build_actions(path, sub.actions),
                )
            )
        steps.append(
            Step(
                index=index,
                number=draft.number,
                title=draft.title,
                description=_join_description(draft.description_lines),
                actions=_build_actions(f"{index}.0", draft.actions),
                sub_steps=tuple(sub_steps),
            )
        )
    return tuple(steps), diagnostics


# ----------------------------------------------------------------------
# Flat checklists (summary, manual testing plan)
# ----------------------------------------------------------------------


def collect_items(span: Optional[SectionSpan]) -> List[str]:
    """Read a flat list section; prose paragraphs count as one item each."""
    if span is None:
        return []
    items: List[str] = []
    in_paragraph = False
    in_bullet = False
    for _, line, in_fence in iter_structural_lines(span.text):
        if in_fence:
            continue
        if not line.strip():
            in_paragraph = False
            continue
        if HEADING_PATTERN.match(line):
            in_paragraph = in_bullet = False
            continue
        bullet = BULLET_PATTERN.match(line)
        if bullet:
            text = bullet.group("text").strip()
            if text:
                items.append(text)
                in_bullet = True
            in_paragraph = False
            continue
        if items and (in_paragraph or (in_bullet and line[:1].isspace())):
            items[-1] = f"{items[-1]} {line.strip()}"
            continue
        items.append(line.strip())
        in_paragraph = True
        in_bullet = False
    return items


# ----------------------------------------------------------------------
# Whole document
# ----------------------------------------------------------------------


def parse_document(text: str) -> ParseResult:
    """Parse raw plan text into a Document plus diagnostics."""
    sections = split_sections(text or "")
    steps, step_diagnostics = parse_steps(sections.get(STEPS))
    document = Document(
        title=sections.title,
        tagline=sections.tagline,
        summary_bullets=tuple(collect_items(sections.get(SUMMARY))),
        steps=steps,
        testing_items=tuple(TestingItem(text=item) for item in collect_items(sections.get(TESTING))),
    )
    diagnostics = tuple(sections.diagnostics) + tuple(step_diagnostics)
    logger.debug(
        "Parsed plan '%s': %d steps, %d actions, %d diagnostics",
        document.title,
        len(document.steps),
        len(document.all_actions()),
        len(diagnostics),
    )
    return ParseResult(document=document, diagnostics=diagnostics, sections=sections)
