"""Tests for iteration partition and combine."""

import pytest

from tessera.dag.aggregator import GROUP_KEY, combine, group_by, is_table, partition
from tessera.errors import AggregationError
from tessera.pipeline.types import IterationMode

VECTOR = IterationMode.VECTOR
LIST = IterationMode.LIST
GROUP = IterationMode.GROUP


class TestVector:
    def test_flat_sequence_slices_are_length_one(self):
        assert partition([3, 7], VECTOR) == [[3], [7]]

    def test_table_slices_are_one_row_tables(self):
        table = [{"id": 1}, {"id": 2}]
        assert partition(table, VECTOR) == [[{"id": 1}], [{"id": 2}]]

    def test_scalar_is_single_slice(self):
        assert partition(5, VECTOR) == [[5]]
        assert partition("text", VECTOR) == [["text"]]

    def test_combine_concatenates_in_order(self):
        assert combine([[3], [7]], VECTOR) == [3, 7]

    def test_scalar_branch_values_count_as_length_one(self):
        assert combine([1, [2, 3], 4], VECTOR) == [1, 2, 3, 4]

    def test_partition_then_combine_restores_value(self):
        value = [{"a": 1, "b": "x"}, {"a": 2, "b": "y"}]
        assert combine(partition(value, VECTOR), VECTOR) == value

    def test_none_mixes_freely(self):
        assert combine([[1], [None], [2.5]], VECTOR) == [1, None, 2.5]

    def test_mixed_type_families_fail(self):
        with pytest.raises(AggregationError, match="different types"):
            combine([[1], ["a"]], VECTOR)

    def test_table_with_values_fails(self):
        with pytest.raises(AggregationError, match="tables with non-table"):
            combine([[{"a": 1}], [2]], VECTOR)

    def test_tables_with_different_columns_fail(self):
        with pytest.raises(AggregationError, match="columns"):
            combine([[{"a": 1}], [{"b": 2}]], VECTOR)

    def test_empty_combine(self):
        assert combine([], VECTOR) == []


class TestList:
    def test_partition_elements(self):
        assert partition([1, "a", None], LIST) == [1, "a", None]

    def test_partition_mapping_values(self):
        assert partition({"x": 1, "y": 2}, LIST) == [1, 2]

    def test_combine_never_fails(self):
        assert combine([1, "a", {"k": 2}], LIST) == [1, "a", {"k": 2}]


class TestGroup:
    def test_group_by_numbers_groups_in_sorted_order(self):
        rows = group_by([{"k": "b"}, {"k": "a"}, {"k": "b"}], "k")
        assert [r[GROUP_KEY] for r in rows] == [2, 1, 2]

    def test_partition_by_group_id(self):
        rows = group_by([{"k": "b", "v": 1}, {"k": "a", "v": 2}, {"k": "b", "v": 3}], "k")
        slices = partition(rows, GROUP)
        assert [[r["v"] for r in s] for s in slices] == [[2], [1, 3]]

    def test_missing_group_column(self):
        with pytest.raises(AggregationError, match=GROUP_KEY):
            partition([{"k": 1}], GROUP)

    def test_not_a_table(self):
        with pytest.raises(AggregationError):
            partition([1, 2], GROUP)

    def test_group_by_needs_columns(self):
        with pytest.raises(ValueError):
            group_by([{"k": 1}])


class TestIsTable:
    def test_detection(self):
        assert is_table([{"a": 1}])
        assert not is_table([])
        assert not is_table([1, 2])
        assert not is_table({"a": 1})
