"""Unit tests for structural validation."""

import pytest

from plantrack.models import Action, Diagnostic, Document, Severity, Step, SubStep, TestingItem
from plantrack.outline import parse_document
from plantrack.validator import merge_diagnostics, validate

TESTS = (TestingItem("check it"),)


def _step(index, title="Step", sub_steps=(), actions=None):
    if actions is None and not sub_steps:
        actions = (Action(path=f"{index}.0.1", text="do it"),)
    return Step(index=index, number=index, title=f"{title} {index}", sub_steps=sub_steps, actions=actions or ())


class TestValidate:
    """Test cases for validate."""

    def test_sample_plan_is_clean(self, sample_document):
        result = validate(sample_document)
        assert result.is_valid
        assert result.diagnostics == ()

    def test_empty_title_and_no_steps(self):
        result = validate(Document(title="  ", testing_items=TESTS))
        assert not result.is_valid
        assert [d.code for d in result.fatal] == ["V1", "V1"]

    def test_non_contiguous_step_indices(self):
        document = Document(title="T", steps=(_step(1), _step(3)), testing_items=TESTS)
        result = validate(document)
        assert not result.is_valid
        assert [(d.code, d.node_path) for d in result.fatal] == [("V2", "3")]

    def test_non_contiguous_sub_step_paths(self):
        sub_steps = (
            SubStep(path="1.1", label="1.1", title="a", actions=(Action("1.1.1", "x"),)),
            SubStep(path="1.3", label="1.2", title="b", actions=(Action("1.3.1", "y"),)),
        )
        document = Document(title="T", steps=(_step(1, sub_steps=sub_steps),), testing_items=TESTS)
        assert validate(document).codes() == ("V2",)

    def test_lenient_downgrades_numbering(self):
        document = Document(title="T", steps=(_step(1), _step(3)), testing_items=TESTS)
        result = validate(document, lenient=True)
        assert result.is_valid
        assert [(d.code, d.severity) for d in result.warnings] == [("V2", Severity.WARNING)]

    def test_sub_step_under_wrong_step(self):
        text = (
            "# T\n\n## Summary\n\n- s\n\n## Execution Steps\n\n"
            "### Step 1: One\n\n- a\n\n"
            "### Step 2: Two\n\n#### 3.1: Misplaced\n\n- b\n\n"
            "## Manual testing plan\n\n- t\n"
        )
        result = validate(parse_document(text).document)
        assert not result.is_valid
        assert [(d.code, d.node_path) for d in result.fatal] == [("V3", "2.1")]

    def test_unlabelled_sub_step_is_fatal(self):
        sub_steps = (SubStep(path="1.1", label="", title="loose", actions=(Action("1.1.1", "x"),)),)
        document = Document(title="T", steps=(_step(1, sub_steps=sub_steps),), testing_items=TESTS)
        assert validate(document).codes() == ("V3",)

    def test_duplicate_titles_warn(self):
        sub_steps = (
            SubStep(path="1.1", label="1.1", title="Same", actions=(Action("1.1.1", "x"),)),
            SubStep(path="1.2", label="1.2", title="same ", actions=(Action("1.2.1", "y"),)),
        )
        steps = (
            Step(index=1, title="Build", sub_steps=sub_steps),
            Step(index=2, title="build", actions=(Action("2.0.1", "z"),)),
        )
        result = validate(Document(title="T", steps=steps, testing_items=TESTS))
        assert result.is_valid
        assert sorted((d.code, d.node_path) for d in result.warnings) == [("V4", "1.2"), ("V4", "2")]

    def test_missing_testing_plan_warns(self):
        result = validate(Document(title="T", steps=(_step(1),)))
        assert result.is_valid
        assert result.codes() == ("V5",)

    def test_sub_step_labels_out_of_order(self):
        sub_steps = (
            SubStep(path="1.1", label="1.2", title="a", actions=(Action("1.1.1", "x"),)),
            SubStep(path="1.2", label="1.1", title="b", actions=(Action("1.2.1", "y"),)),
        )
        document = Document(title="T", steps=(_step(1, sub_steps=sub_steps),), testing_items=TESTS)
        result = validate(document)
        assert result.is_valid
        assert [(d.code, d.node_path) for d in result.warnings] == [("V6", "1.2")]

    def test_empty_step_warns(self):
        steps = (_step(1), Step(index=2, title="Placeholder"))
        result = validate(Document(title="T", steps=steps, testing_items=TESTS))
        assert result.is_valid
        assert [(d.code, d.node_path) for d in result.warnings] == [("V7", "2")]

    def test_empty_action_text_is_fatal(self):
        steps = (_step(1, actions=(Action("1.0.1", "   "),)),)
        result = validate(Document(title="T", steps=steps, testing_items=TESTS))
        assert not result.is_valid
        assert [(d.code, d.node_path) for d in result.fatal] == [("V8", "1.0.1")]

    def test_validation_never_raises(self):
        result = validate(Document(title=""))
        assert {d.code for d in result.diagnostics} == {"V1", "V5"}


class TestMergeDiagnostics:
    """Test cases for merge_diagnostics."""

    def test_drops_exact_duplicates_and_keeps_order(self):
        a = Diagnostic("L1", Severity.WARNING, "one")
        b = Diagnostic("V5", Severity.WARNING, "two")
        assert merge_diagnostics([a, b], [b, a]) == [a, b]

    @pytest.mark.parametrize("groups", [(), ([],), ([], [])])
    def test_empty(self, groups):
        assert merge_diagnostics(*groups) == []
