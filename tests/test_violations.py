"""
Tests for Violation Sets
========================

Tests for violations.py - multiset equality and tooling failures.
"""

from verifyforge.violations import (
    ARCHITECTURE_BOUNDARY,
    TOOLING_FAILURE,
    Violation,
    ViolationSet,
)


class TestViolationSet:
    """Equality and construction."""

    def test_order_does_not_matter(self):
        a = ViolationSet.of(("lint", "E501"), ("type", "T1"))
        b = ViolationSet.of(("type", "T1"), ("lint", "E501"))
        assert a == b
        assert hash(a) == hash(b)

    def test_multiplicity_matters(self):
        once = ViolationSet.of(("lint", "E501"))
        twice = ViolationSet.of(("lint", "E501"), ("lint", "E501"))
        assert once != twice

    def test_messages_ignored(self):
        a = ViolationSet([Violation("lint", "E501", "line too long (120)")])
        b = ViolationSet([Violation("lint", "E501", "line too long (121)")])
        assert a == b

    def test_empty(self):
        vs = ViolationSet()
        assert vs.is_empty
        assert not vs
        assert len(vs) == 0
        assert vs == ViolationSet.of()

    def test_keeps_order(self):
        vs = ViolationSet.of(("b", "2"), ("a", "1"))
        assert [v.category for v in vs] == ["b", "a"]

    def test_categories_and_by_category(self):
        vs = ViolationSet.of((ARCHITECTURE_BOUNDARY, "domain->infra"), ("lint", "E1"), ("lint", "E2"))
        assert vs.categories() == {ARCHITECTURE_BOUNDARY, "lint"}
        assert len(vs.by_category("lint")) == 2

    def test_dict_round_trip_preserves_message(self):
        vs = ViolationSet([Violation("lint", "E1", "msg")])
        again = ViolationSet.from_dicts(vs.to_list())
        assert again == vs
        assert list(again)[0].message == "msg"

    def test_merge_concatenates(self):
        merged = ViolationSet.merge([ViolationSet.of(("a", "1")), ViolationSet(), ViolationSet.of(("b", "2"))])
        assert merged == ViolationSet.of(("a", "1"), ("b", "2"))

    def test_not_equal_to_other_types(self):
        assert ViolationSet() != []


class TestToolingFailure:
    """Collaborator crashes as findings."""

    def test_identical_crashes_compare_equal(self):
        a = ViolationSet.tooling_failure(RuntimeError("detekt crashed"))
        b = ViolationSet.tooling_failure(RuntimeError("detekt crashed"))
        assert a == b
        assert a.has_tooling_failure()

    def test_identifier_format(self):
        vs = ViolationSet.tooling_failure(OSError("missing binary"))
        (violation,) = list(vs)
        assert violation.category == TOOLING_FAILURE
        assert violation.identifier == "OSError: missing binary"

    def test_source_prefix(self):
        vs = ViolationSet.tooling_failure(ValueError("x"), source="lint_worker")
        assert list(vs)[0].identifier == "lint_worker: ValueError: x"

    def test_different_errors_differ(self):
        assert ViolationSet.tooling_failure(ValueError("x")) != ViolationSet.tooling_failure(ValueError("y"))

    def test_regular_set_has_no_tooling_failure(self):
        assert not ViolationSet.of(("lint", "E1")).has_tooling_failure()
