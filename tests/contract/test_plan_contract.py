"""
Contract tests for the plan model and execution tracker.

Each test pins one behavioural guarantee that callers of the parser,
validator and tracker rely on.
"""

import random

import pytest

from plantrack.models import Document, NodeStatus
from plantrack.outline import parse_document
from plantrack.renderer import render_document
from plantrack.tracker import ExecutionTracker, InvalidTransition
from plantrack.validator import validate

P, IP, D, B, S = (
    NodeStatus.PENDING,
    NodeStatus.IN_PROGRESS,
    NodeStatus.DONE,
    NodeStatus.BLOCKED,
    NodeStatus.SKIPPED,
)

ALLOWED_MOVES = {
    (P, IP),
    (IP, D),
    (P, S),
    (IP, S),
    (P, B),
    (IP, B),
    (B, IP),
}


class TestNumberingContract:
    """Contract: parsed numbering is gap-free and rendering round-trips."""

    @pytest.fixture
    def renumbered_text(self):
        return (
            "# Renumbered\n\n## Summary\n\n- s\n\n## Execution Steps\n\n"
            "### Step 1: A\n\n#### 1.1: a\n\n- x\n\n"
            "### Step 5: B\n\n- y\n\n"
            "### Step 9: C\n\n- z\n\n"
            "## Manual testing plan\n\n- t\n"
        )

    def test_indices_are_contiguous_from_one(self, sample_document, renumbered_text):
        for document in (sample_document, parse_document(renumbered_text).document):
            assert [step.index for step in document.steps] == list(range(1, len(document.steps) + 1))
            for step in document.steps:
                assert [s.ordinal for s in step.sub_steps] == list(range(1, len(step.sub_steps) + 1))

    def test_render_then_parse_is_identity(self, sample_document):
        assert parse_document(render_document(sample_document)).document == sample_document

    def test_render_then_parse_keeps_author_numbers(self, renumbered_text):
        document = parse_document(renumbered_text).document
        reparsed = parse_document(render_document(document))
        assert reparsed.document == document
        assert [d.code for d in reparsed.diagnostics] == ["P2", "P2"]


class TestValidationContract:
    """Contract: structural rules V1 and V3."""

    def test_zero_steps_fails_with_v1(self):
        for document in (
            Document(title="Empty"),
            parse_document("# Empty\n\n## Summary\n\n- s\n\n## Execution Steps\n").document,
        ):
            result = validate(document)
            assert result.is_valid is False
            assert "V1" in result.codes()

    def test_sub_step_3_1_under_step_2_raises_v3(self):
        text = (
            "# Misnested\n\n## Summary\n\n- s\n\n## Execution Steps\n\n"
            "### Step 1: First\n\n- a\n\n"
            "### Step 2: Second\n\n#### 3.1: Belongs elsewhere\n\n- b\n\n"
            "## Manual testing plan\n\n- t\n"
        )
        result = validate(parse_document(text).document)
        assert result.is_valid is False
        assert [(d.code, d.node_path) for d in result.fatal] == [("V3", "2.1")]


class TestTrackerContract:
    """Contract: tracker state machine, ordering and roll-up."""

    def test_history_only_contains_allowed_moves(self, sample_document):
        rng = random.Random(20260301)
        tracker = ExecutionTracker(sample_document, ordered=True)
        paths = tracker.node_paths()
        requests = [IP, D, S, B, "unblock"]

        for _ in range(400):
            path = rng.choice(paths)
            request = rng.choice(requests)
            try:
                if request == "unblock":
                    tracker.unblock(path, "fuzzer")
                elif request is B:
                    tracker.block(path, "fuzzed", "fuzzer")
                else:
                    tracker.transition(path, request, "fuzzer")
            except InvalidTransition:
                pass

        last_seen = {}
        for record in tracker.history():
            assert (record.from_state, record.to_state) in ALLOWED_MOVES
            assert last_seen.get(record.node_path, P) is record.from_state
            last_seen[record.node_path] = record.to_state
        for path in paths:
            assert tracker.get_state(path) is last_seen.get(path, P)

    def test_ordered_mode_rejects_starting_step_two_early(self, sample_document):
        tracker = ExecutionTracker(sample_document, ordered=True)
        for path in ("1.1.1", "1.1.2"):
            tracker.transition(path, IP, "alice")
            tracker.transition(path, D, "alice")

        with pytest.raises(InvalidTransition):
            tracker.transition("2.1.1", IP, "alice")
        with pytest.raises(InvalidTransition):
            tracker.transition("2.1", IP, "alice")

    def test_completing_step_one_rolls_up(self, sample_document):
        tracker = ExecutionTracker(sample_document)
        for path in ("1.1.1", "1.1.2", "1.2.1"):
            tracker.transition(path, IP, "alice")
            tracker.transition(path, D, "alice")

        assert tracker.get_state("1") is D
        total = len(sample_document.all_actions())
        assert tracker.completion_ratio() == pytest.approx(3 / total)

    def test_blocked_action_cannot_be_marked_done(self, sample_document):
        tracker = ExecutionTracker(sample_document)
        tracker.block("1.1.2", "waiting on API key", "alice")

        with pytest.raises(InvalidTransition):
            tracker.transition("1.1.2", D, "alice", "")
        assert tracker.get_state("1.1.2") is B

    def test_unblocked_action_resumes_in_progress_then_finishes(self, sample_document):
        tracker = ExecutionTracker(sample_document)
        tracker.block("1.1.2", "waiting on API key", "alice")
        tracker.unblock("1.1.2", "alice")
        tracker.transition("1.1.2", D, "alice")

        visited = [r.to_state for r in tracker.history() if r.node_path == "1.1.2"]
        assert visited == [B, IP, D]
