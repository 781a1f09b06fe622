"""Tests for dynamic branching patterns."""

import pytest

from tessera.dag.patterns import (
    PatternKind,
    ResolvedInput,
    branch_name,
    cross,
    disambiguate,
    expand,
    head,
    map_,
    parse_pattern,
    sample,
    slice_,
    tail,
)
from tessera.errors import DeclarationError, IndexRangeError, PatternArityError, PatternError


def resolved(**sizes) -> dict[str, ResolvedInput]:
    return {
        name: ResolvedInput(name, tuple(f"{name}{i}" for i in range(size)))
        for name, size in sizes.items()
    }


def rows(specs) -> list[dict]:
    return [{b.variable: b.index for b in spec.bindings} for spec in specs]


# ─── Construction & parsing ───

class TestPatternConstruction:
    def test_map_variables_in_order(self):
        p = map_("a", "b")
        assert p.kind is PatternKind.MAP
        assert p.variables() == ["a", "b"]

    def test_nested_source_round_trip(self):
        p = cross("a", map_("b", "c"))
        assert p.to_source() == "cross(a, map(b, c))"
        assert parse_pattern(p.to_source()) == p

    def test_duplicate_variable_rejected(self):
        with pytest.raises(PatternError, match="more than once"):
            cross("a", "a")

    def test_negative_count_rejected(self):
        with pytest.raises(PatternError):
            head("a", -1)

    def test_parse_keywords(self):
        p = parse_pattern("sample(a, 2, seed=7)")
        assert p.kind is PatternKind.SAMPLE
        assert p.n == 2
        assert p.seed == 7

    def test_parse_slice_index_list(self):
        assert parse_pattern("slice(a, index=[0, 2])").index == (0, 2)

    def test_parse_unknown_combinator(self):
        with pytest.raises(DeclarationError, match="unknown combinator"):
            parse_pattern("zip(a, b)")

    def test_parse_never_evaluates(self):
        with pytest.raises(DeclarationError):
            parse_pattern("head(a, __import__('os').getpid())")

    def test_parse_duplicate_is_declaration_error(self):
        with pytest.raises(DeclarationError):
            parse_pattern("map(a, a)")

    def test_slice_repeated_index_rejected(self):
        with pytest.raises(PatternError, match="more than once"):
            slice_("a", [0, 0])
        with pytest.raises(DeclarationError):
            parse_pattern("cross(slice(a, index=[1, 0, 1]), b)")


# ─── Expansion ───

class TestExpand:
    def test_ref_one_branch_per_slice(self):
        specs = expand("t", parse_pattern("a"), resolved(a=3))
        assert rows(specs) == [{"a": 0}, {"a": 1}, {"a": 2}]
        assert [s.index for s in specs] == [0, 1, 2]

    def test_map_pairs_slices(self):
        specs = expand("t", map_("a", "b"), resolved(a=2, b=2))
        assert rows(specs) == [{"a": 0, "b": 0}, {"a": 1, "b": 1}]

    def test_map_arity_mismatch(self):
        with pytest.raises(PatternArityError) as exc:
            expand("t", map_("a", "b"), resolved(a=2, b=3))
        assert exc.value.sizes == {"a": 2, "b": 3}
        assert exc.value.target == "t"

    def test_cross_cardinality_and_order(self):
        specs = expand("t", cross("a", "b"), resolved(a=2, b=3))
        assert len(specs) == 6
        # first argument varies slowest
        assert rows(specs)[:3] == [{"a": 0, "b": 0}, {"a": 0, "b": 1}, {"a": 0, "b": 2}]

    def test_cross_of_map(self):
        specs = expand("t", cross("a", map_("b", "c")), resolved(a=2, b=2, c=2))
        assert len(specs) == 4
        assert rows(specs)[1] == {"a": 0, "b": 1, "c": 1}

    def test_slice_selects_in_given_order(self):
        specs = expand("t", slice_("a", [2, 0]), resolved(a=3))
        assert rows(specs) == [{"a": 2}, {"a": 0}]

    @pytest.mark.parametrize("index", [3, -1])
    def test_slice_out_of_range(self, index):
        with pytest.raises(IndexRangeError) as exc:
            expand("t", slice_("a", index), resolved(a=3))
        assert exc.value.size == 3

    def test_head_and_tail_clamp(self):
        assert rows(expand("t", head("a", 2), resolved(a=3))) == [{"a": 0}, {"a": 1}]
        assert rows(expand("t", tail("a", 2), resolved(a=3))) == [{"a": 1}, {"a": 2}]
        assert len(expand("t", head("a", 10), resolved(a=3))) == 3
        assert len(expand("t", tail("a", 10), resolved(a=3))) == 3

    def test_head_zero_is_empty(self):
        assert expand("t", head("a", 0), resolved(a=3)) == []

    def test_sample_keeps_partition_order(self):
        specs = expand("t", sample("a", 3, seed=1), resolved(a=10))
        indexes = [r["a"] for r in rows(specs)]
        assert len(indexes) == 3
        assert indexes == sorted(indexes)

    def test_sample_deterministic_for_build_seed(self):
        first = expand("t", sample("a", 4), resolved(a=20), seed=5)
        second = expand("t", sample("a", 4), resolved(a=20), seed=5)
        assert [s.name for s in first] == [s.name for s in second]

    def test_sample_clamps(self):
        assert len(expand("t", sample("a", 10), resolved(a=3))) == 3

    def test_unresolved_input(self):
        with pytest.raises(PatternError, match="not resolved"):
            expand("t", map_("a", "b"), resolved(a=2))


# ─── Branch names ───

class TestBranchNames:
    def test_name_format(self):
        name = branch_name("t", ["s1"])
        assert name.startswith("t_")
        assert len(name) == len("t_") + 16

    def test_names_are_deterministic(self):
        first = expand("t", map_("a", "b"), resolved(a=2, b=2))
        second = expand("t", map_("a", "b"), resolved(a=2, b=2))
        assert [s.name for s in first] == [s.name for s in second]

    def test_names_depend_on_target_and_slices(self):
        assert branch_name("t", ["s1"]) != branch_name("u", ["s1"])
        assert branch_name("t", ["s1"]) != branch_name("t", ["s2"])

    def test_names_unique_within_target(self):
        specs = expand("t", cross("a", "b"), resolved(a=3, b=3))
        assert len({s.name for s in specs}) == 9

    def test_names_unique_over_sliced_map(self):
        specs = expand("t", map_(slice_("a", [2, 0]), head("b", 2)), resolved(a=3, b=3))
        assert len({s.name for s in specs}) == len(specs) == 2

    def test_disambiguate_repeated_ids(self):
        assert disambiguate(["h", "g", "h", "h"]) == ["h", "g", "h-1", "h-2"]
