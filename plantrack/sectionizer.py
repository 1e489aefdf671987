"""Split raw plan text into its top-level sections.

A plan document is recognised by heading conventions only:

- the first level-1 heading is the title,
- the text between the title and the next heading is the tagline,
- level-2 headings open sections, matched against a small keyword set
  after normalisation ("Summary of changes", "Execution Steps",
  "Manual testing plan"),
- anything else is kept in an unclassified bucket and reported as a warning.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from .models import Diagnostic, Severity

HEADING_PATTERN = re.compile(r"^(?P<hashes>#{1,6})\s+(?P<text>.*?)(?:\s+#+)?\s*$")
FENCE_PATTERN = re.compile(r"^\s*(```|~~~)")

SUMMARY = "summary"
STEPS = "steps"
TESTING = "testing"

# Canonical order of the known sections.
SECTION_ORDER = (SUMMARY, STEPS, TESTING)

SECTION_HEADINGS = {
    SUMMARY: "Summary of changes",
    STEPS: "Execution Steps",
    TESTING: "Manual testing plan",
}

_SECTION_KEYWORDS: Dict[str, Tuple[str, ...]] = {
    SUMMARY: ("summary of changes", "summary of change", "change summary", "changes summary", "summary"),
    STEPS: ("execution steps", "execution step", "implementation steps", "execution plan", "steps"),
    TESTING: ("manual testing plan", "manual test plan", "testing plan", "test plan", "manual testing"),
}


def normalize_heading(text: str) -> str:
    """Lowercase, strip markup and punctuation, collapse whitespace."""
    lowered = text.lower()
    lowered = re.sub(r"[^a-z0-9\s]", " ", lowered)
    return re.sub(r"\s+", " ", lowered).strip()


def classify_heading(text: str) -> Optional[str]:
    """Return the section role a level-2 heading names, if any."""
    normalized = normalize_heading(text)
    if not normalized:
        return None
    for role, keywords in _SECTION_KEYWORDS.items():
        for keyword in keywords:
            if normalized == keyword:
                return role
    for role, keywords in _SECTION_KEYWORDS.items():
        # Only multi-word phrases match by containment.
        for keyword in keywords:
            if " " in keyword and keyword in normalized:
                return role
    return None


@dataclass(frozen=True, slots=True)
class SectionSpan:
    """Raw body of one section and where it starts in the source."""

    heading: str
    text: str
    start_line: int

    def lines(self) -> List[str]:
        return self.text.split("\n") if self.text else []


@dataclass(slots=True)
class Sections:
    """Output of the sectionizer."""

    title: str = ""
    title_line: Optional[int] = None
    tagline: str = ""
    known: Dict[str, SectionSpan] = field(default_factory=dict)
    unclassified: List[SectionSpan] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)

    def get(self, role: str) -> Optional[SectionSpan]:
        return self.known.get(role)

    def to_dict(self) -> Dict[str, object]:
        return {
            "title": self.title,
            "tagline": self.tagline,
            "sections": {role: span.heading for role, span in self.known.items()},
            "unclassified": [span.heading for span in self.unclassified],
        }


def iter_structural_lines(text: str):
    """Yield ``(line_number, line, in_fence)`` with fenced code blocks flagged."""
    in_fence = False
    fence_marker = ""
    for number, line in enumerate(text.splitlines(), start=1):
        fence = FENCE_PATTERN.match(line)
        if fence:
            marker = fence.group(1)
            if not in_fence:
                in_fence, fence_marker = True, marker
                yield number, line, True
                continue
            if marker == fence_marker:
                in_fence = False
                yield number, line, True
                continue
        yield number, line, in_fence


def split_sections(text: str) -> Sections:
    """Split a raw document into title, tagline and labelled section spans."""
    result = Sections()
    tagline_lines: List[str] = []
    collecting_tagline = False

    current_heading: Optional[str] = None
    current_start = 0
    current_lines: List[str] = []
    spans: List[SectionSpan] = []

    def close_current() -> None:
        if current_heading is not None:
            body = "\n".join(current_lines).rstrip()
            spans.append(SectionSpan(heading=current_heading, text=body, start_line=current_start))

    for number, line, in_fence in iter_structural_lines(text):
        heading = None if in_fence else HEADING_PATTERN.match(line)
        if heading:
            level = len(heading.group("hashes"))
            heading_text = heading.group("text").strip()

            if level == 1 and result.title_line is None:
                close_current()
                current_heading = None
                current_lines = []
                result.title = heading_text
                result.title_line = number
                collecting_tagline = True
                continue

            if level <= 2:
                collecting_tagline = False
                close_current()
                current_heading = heading_text
                current_start = number + 1
                current_lines = []
                continue

        if collecting_tagline and current_heading is None:
            if heading:
                collecting_tagline = False
            elif line.strip():
                tagline_lines.append(line.strip())
                continue
            else:
                continue

        if current_heading is not None:
            current_lines.append(line)

    close_current()
    result.tagline = " ".join(tagline_lines)

    if result.title_line is None:
        result.diagnostics.append(
            Diagnostic("L1", Severity.WARNING, "Document has no level-1 title heading.")
        )

    seen_order: List[str] = []
    for span in spans:
        role = classify_heading(span.heading)
        if role is None:
            result.unclassified.append(span)
            result.diagnostics.append(
                Diagnostic(
                    "L3",
                    Severity.WARNING,
                    f"Unrecognized section '{span.heading}' kept as unclassified.",
                    line=span.start_line - 1,
                )
            )
            continue
        if role in result.known:
            result.unclassified.append(span)
            result.diagnostics.append(
                Diagnostic(
                    "L4",
                    Severity.WARNING,
                    f"Duplicate '{SECTION_HEADINGS[role]}' section '{span.heading}' kept as unclassified.",
                    line=span.start_line - 1,
                )
            )
            continue
        if seen_order and SECTION_ORDER.index(role) < SECTION_ORDER.index(seen_order[-1]):
            result.diagnostics.append(
                Diagnostic(
                    "L2",
                    Severity.WARNING,
                    f"Section '{span.heading}' appears after '{SECTION_HEADINGS[seen_order[-1]]}'.",
                    line=span.start_line - 1,
                )
            )
        result.known[role] = span
        seen_order.append(role)

    for role in (SUMMARY, STEPS):
        if role not in result.known:
            result.diagnostics.append(
                Diagnostic(
                    "L1",
                    Severity.WARNING,
                    f"Required section '{SECTION_HEADINGS[role]}' is missing.",
                )
            )

    return result
