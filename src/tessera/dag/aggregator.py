"""Iteration aggregator — slices values into branch inputs and combines branch outputs.

Tables are lists of row mappings (``[{"id": 1}, {"id": 2}]``).
"""

from __future__ import annotations
from collections.abc import Mapping, Sequence
from typing import Any

from tessera.errors import AggregationError
from tessera.pipeline.types import IterationMode

GROUP_KEY = "tar_group"


def is_table(value: Any) -> bool:
    """A non-empty list/tuple whose items are all row mappings."""
    return (
        isinstance(value, (list, tuple))
        and len(value) > 0
        and all(isinstance(row, Mapping) for row in value)
    )


def _is_sequence(value: Any) -> bool:
    return isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray))


# ─── Partition ───


def partition(value: Any, mode: IterationMode) -> list[Any]:
    """Split a value into the ordered slices its branches will receive."""
    handler = {
        IterationMode.VECTOR: _partition_vector,
        IterationMode.LIST: _partition_list,
        IterationMode.GROUP: _partition_group,
    }.get(IterationMode(mode))

    if not handler:
        raise ValueError(f"Unknown iteration mode: {mode}")

    return handler(value)


def _partition_vector(value: Any) -> list[Any]:
    if _is_sequence(value):
        return [[item] for item in value]
    return [[value]]


def _partition_list(value: Any) -> list[Any]:
    if _is_sequence(value):
        return list(value)
    if isinstance(value, Mapping):
        return list(value.values())
    return [value]


def _partition_group(value: Any) -> list[Any]:
    if not _is_sequence(value) or not all(isinstance(row, Mapping) for row in value):
        raise AggregationError("group iteration needs a table of rows produced by group_by()")
    groups: dict[Any, list] = {}
    for row in value:
        if GROUP_KEY not in row:
            raise AggregationError(
                f"group iteration needs a '{GROUP_KEY}' column; use group_by() upstream"
            )
        groups.setdefault(row[GROUP_KEY], []).append(row)
    return [groups[key] for key in sorted(groups)]


# ─── Combine ───


def combine(slices: list[Any], mode: IterationMode) -> Any:
    """Combine branch values, in branch order, into one value."""
    handler = {
        IterationMode.VECTOR: _combine_vector,
        IterationMode.LIST: list,
        IterationMode.GROUP: _combine_vector,
    }.get(IterationMode(mode))

    if not handler:
        raise ValueError(f"Unknown iteration mode: {mode}")

    return handler(slices)


def _combine_vector(slices: list[Any]) -> list[Any]:
    pieces = [list(s) if _is_sequence(s) else [s] for s in slices]
    kinds = {"table" if is_table(p) else "values" for p in pieces if p}
    if len(kinds) > 1:
        raise AggregationError("Cannot concatenate tables with non-table values")

    combined = [item for piece in pieces for item in piece]
    if kinds == {"table"}:
        _check_columns(combined)
    else:
        _check_types(combined)
    return combined


def _check_columns(rows: list[Mapping]) -> None:
    columns = set(rows[0].keys())
    for i, row in enumerate(rows[1:], start=1):
        if set(row.keys()) != columns:
            raise AggregationError(
                f"Row {i} has columns {sorted(row.keys())}, expected {sorted(columns)}"
            )


def _type_family(value: Any) -> str | None:
    if value is None:
        return None
    if isinstance(value, (bool, int, float)):
        return "numeric"
    if isinstance(value, str):
        return "text"
    if isinstance(value, (bytes, bytearray)):
        return "bytes"
    if isinstance(value, Mapping):
        return "mapping"
    return type(value).__qualname__


def _check_types(values: list[Any]) -> None:
    families = {_type_family(v) for v in values} - {None}
    if len(families) > 1:
        raise AggregationError(
            f"Cannot combine values of different types: {', '.join(sorted(families))}"
        )


# ─── Grouping helper ───


def group_by(rows: list[Mapping], *columns: str) -> list[dict]:
    """Attach a ``tar_group`` id to each row, numbering groups 1..k by sorted key."""
    if not columns:
        raise ValueError("group_by() needs at least one column")
    keys = [tuple(row[c] for c in columns) for row in rows]
    ids = {key: i for i, key in enumerate(sorted(set(keys)), start=1)}
    return [{**row, GROUP_KEY: ids[key]} for row, key in zip(rows, keys)]
