"""Dynamic branching patterns — declaration, parsing and expansion into branches.

A pattern is a small closed expression language over upstream target names::

    map(a, b)                 # element-wise zip, equal sizes required
    cross(a, map(b, c))       # cartesian product
    slice(a, index=[0, 2])    # explicit selection
    head(a, 2) / tail(a, 2)   # first / last n slices (clamped)
    sample(a, 3, seed=1)      # n slices without replacement

Expansion only needs the ordered slice identities of every input, so it runs
once all inputs are built, never before.
"""

from __future__ import annotations
import ast
import hashlib
import itertools
import json
import random
from dataclasses import dataclass, field
from enum import Enum

from tessera.errors import DeclarationError, IndexRangeError, PatternArityError, PatternError


class PatternKind(str, Enum):
    REF = "ref"         # a bare upstream target name
    MAP = "map"         # element-wise zip
    CROSS = "cross"     # cartesian product
    SLICE = "slice"     # explicit index selection
    HEAD = "head"       # first n
    TAIL = "tail"       # last n
    SAMPLE = "sample"   # random subset of n


@dataclass(frozen=True)
class Pattern:
    """One node of a pattern expression tree."""
    kind: PatternKind
    args: tuple["Pattern", ...] = ()
    name: str | None = None
    index: tuple[int, ...] = ()
    n: int | None = None
    seed: int | None = None

    def variables(self) -> list[str]:
        """Upstream target names in the order they appear."""
        if self.kind is PatternKind.REF:
            return [self.name]
        names: list[str] = []
        for arg in self.args:
            names.extend(arg.variables())
        return names

    def to_source(self) -> str:
        """Canonical text form, used for hashing and display."""
        if self.kind is PatternKind.REF:
            return self.name
        inner = ", ".join(arg.to_source() for arg in self.args)
        if self.kind is PatternKind.SLICE:
            inner += f", index={list(self.index)}"
        elif self.kind in (PatternKind.HEAD, PatternKind.TAIL):
            inner += f", n={self.n}"
        elif self.kind is PatternKind.SAMPLE:
            inner += f", n={self.n}"
            if self.seed is not None:
                inner += f", seed={self.seed}"
        return f"{self.kind.value}({inner})"

    def __str__(self) -> str:
        return self.to_source()


# ─── Constructors ───


def _as_pattern(arg: "Pattern | str") -> Pattern:
    if isinstance(arg, Pattern):
        return arg
    if isinstance(arg, str) and arg.isidentifier():
        return Pattern(PatternKind.REF, name=arg)
    raise PatternError(f"Pattern argument must be a target name or pattern, got {arg!r}")


def ref(name: str) -> Pattern:
    return _as_pattern(name)


def map_(*args: "Pattern | str") -> Pattern:
    if not args:
        raise PatternError("map() needs at least one input")
    return validate(Pattern(PatternKind.MAP, args=tuple(_as_pattern(a) for a in args)))


def cross(*args: "Pattern | str") -> Pattern:
    if not args:
        raise PatternError("cross() needs at least one input")
    return validate(Pattern(PatternKind.CROSS, args=tuple(_as_pattern(a) for a in args)))


def slice_(arg: "Pattern | str", index) -> Pattern:
    if isinstance(index, int):
        index = [index]
    index = [int(i) for i in index]
    repeated = sorted({i for i in index if index.count(i) > 1})
    if repeated:
        # Each selected slice must map to exactly one branch
        raise PatternError(f"slice() selects index {repeated[0]} more than once")
    return validate(Pattern(PatternKind.SLICE, args=(_as_pattern(arg),), index=tuple(int(i) for i in index)))


def head(arg: "Pattern | str", n: int) -> Pattern:
    return validate(Pattern(PatternKind.HEAD, args=(_as_pattern(arg),), n=_count(n, "head")))


def tail(arg: "Pattern | str", n: int) -> Pattern:
    return validate(Pattern(PatternKind.TAIL, args=(_as_pattern(arg),), n=_count(n, "tail")))


def sample(arg: "Pattern | str", n: int, seed: int | None = None) -> Pattern:
    return validate(
        Pattern(PatternKind.SAMPLE, args=(_as_pattern(arg),), n=_count(n, "sample"), seed=seed)
    )


def _count(n, combinator: str) -> int:
    if not isinstance(n, int) or isinstance(n, bool) or n < 0:
        raise PatternError(f"{combinator}() needs a non-negative integer n, got {n!r}")
    return n


def validate(pattern: Pattern) -> Pattern:
    """Reject patterns that bind the same upstream name twice."""
    names = pattern.variables()
    duplicates = sorted({n for n in names if names.count(n) > 1})
    if duplicates:
        raise PatternError(
            f"Pattern {pattern.to_source()} uses {', '.join(duplicates)} more than once"
        )
    return pattern


# ─── Parsing ───

_BUILDERS = {
    "map": map_,
    "cross": cross,
    "slice": slice_,
    "head": head,
    "tail": tail,
    "sample": sample,
}


def parse_pattern(source: str) -> Pattern:
    """Parse pattern text such as ``"cross(a, map(b, c))"``.

    The text is read with ``ast`` and never evaluated.
    """
    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError as e:
        raise DeclarationError(f"Invalid pattern {source!r}: {e.msg}") from e
    try:
        return _from_node(tree.body, source)
    except PatternError as e:
        raise DeclarationError(f"Invalid pattern {source!r}: {e}") from e


def _from_node(node: ast.AST, source: str) -> Pattern:
    if isinstance(node, ast.Name):
        return ref(node.id)
    if not (isinstance(node, ast.Call) and isinstance(node.func, ast.Name)):
        raise DeclarationError(f"Invalid pattern {source!r}: unexpected {ast.unparse(node)!r}")

    combinator = node.func.id
    builder = _BUILDERS.get(combinator)
    if builder is None:
        raise DeclarationError(f"Invalid pattern {source!r}: unknown combinator '{combinator}'")

    if combinator in ("map", "cross"):
        if node.keywords:
            raise DeclarationError(f"Invalid pattern {source!r}: {combinator}() takes no keywords")
        return builder(*[_from_node(arg, source) for arg in node.args])

    if not node.args:
        raise DeclarationError(f"Invalid pattern {source!r}: {combinator}() needs an input")
    inner = _from_node(node.args[0], source)
    extra = [_literal(arg, source) for arg in node.args[1:]]
    kwargs = {kw.arg: _literal(kw.value, source) for kw in node.keywords}
    try:
        return builder(inner, *extra, **kwargs)
    except TypeError as e:
        raise DeclarationError(f"Invalid pattern {source!r}: {e}") from e


def _literal(node: ast.AST, source: str):
    try:
        return ast.literal_eval(node)
    except ValueError as e:
        raise DeclarationError(
            f"Invalid pattern {source!r}: {ast.unparse(node)!r} is not a literal"
        ) from e


# ─── Expansion ───


@dataclass(frozen=True)
class ResolvedInput:
    """Ordered slice identities of one built pattern input."""
    name: str
    slice_ids: tuple[str, ...]

    @property
    def size(self) -> int:
        return len(self.slice_ids)


@dataclass(frozen=True)
class Binding:
    variable: str
    index: int
    slice_id: str


@dataclass(frozen=True)
class BranchSpec:
    """A concrete branch of a dynamic target."""
    name: str
    target: str
    index: int
    bindings: tuple[Binding, ...] = field(default_factory=tuple)

    def slice_index(self, variable: str) -> int:
        for binding in self.bindings:
            if binding.variable == variable:
                return binding.index
        raise KeyError(variable)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "target": self.target,
            "index": self.index,
            "bindings": {b.variable: b.index for b in self.bindings},
        }


Row = tuple[tuple[str, int], ...]


def branch_name(target: str, slice_ids: list[str]) -> str:
    """Deterministic branch name from the target and its ordered input slices."""
    payload = json.dumps([target, slice_ids], separators=(",", ":")).encode("utf-8")
    return f"{target}_{hashlib.sha256(payload).hexdigest()[:16]}"


def disambiguate(ids: list[str]) -> list[str]:
    """Suffix repeated identities so every slice identity is unique."""
    seen: dict[str, int] = {}
    result = []
    for slice_id in ids:
        count = seen.get(slice_id, 0)
        seen[slice_id] = count + 1
        result.append(slice_id if count == 0 else f"{slice_id}-{count}")
    return result


def derive_seed(build_seed: int, target: str) -> int:
    digest = hashlib.sha256(f"{build_seed}:{target}".encode("utf-8")).hexdigest()
    return int(digest[:8], 16)


class PatternExpander:
    """Evaluates a pattern bottom-up over resolved input sizes."""

    def __init__(self, target: str, resolved: dict[str, ResolvedInput], seed: int = 0):
        self.target = target
        self.resolved = resolved
        self._rng = random.Random(derive_seed(seed, target))

    def expand(self, pattern: Pattern) -> list[BranchSpec]:
        missing = [name for name in pattern.variables() if name not in self.resolved]
        if missing:
            raise PatternError(
                f"Pattern inputs of '{self.target}' are not resolved: {', '.join(missing)}"
            )

        specs = []
        for i, row in enumerate(self._rows(pattern)):
            bindings = tuple(
                Binding(variable=name, index=idx, slice_id=self.resolved[name].slice_ids[idx])
                for name, idx in row
            )
            specs.append(BranchSpec(
                name=branch_name(self.target, [b.slice_id for b in bindings]),
                target=self.target,
                index=i,
                bindings=bindings,
            ))
        return specs

    def _rows(self, pattern: Pattern) -> list[Row]:
        handler = {
            PatternKind.REF: self._ref,
            PatternKind.MAP: self._map,
            PatternKind.CROSS: self._cross,
            PatternKind.SLICE: self._slice,
            PatternKind.HEAD: self._head,
            PatternKind.TAIL: self._tail,
            PatternKind.SAMPLE: self._sample,
        }.get(pattern.kind)

        if not handler:
            raise PatternError(f"Unknown pattern combinator: {pattern.kind}")

        return handler(pattern)

    def _ref(self, pattern: Pattern) -> list[Row]:
        return [((pattern.name, i),) for i in range(self.resolved[pattern.name].size)]

    def _map(self, pattern: Pattern) -> list[Row]:
        arms = [self._rows(arg) for arg in pattern.args]
        sizes = {arg.to_source(): len(rows) for arg, rows in zip(pattern.args, arms)}
        if len(set(sizes.values())) > 1:
            raise PatternArityError(self.target, sizes)
        return [sum(parts, ()) for parts in zip(*arms)]

    def _cross(self, pattern: Pattern) -> list[Row]:
        arms = [self._rows(arg) for arg in pattern.args]
        return [sum(parts, ()) for parts in itertools.product(*arms)]

    def _slice(self, pattern: Pattern) -> list[Row]:
        rows = self._rows(pattern.args[0])
        selected = []
        for index in pattern.index:
            if index < 0 or index >= len(rows):
                raise IndexRangeError(self.target, index, len(rows))
            selected.append(rows[index])
        return selected

    def _head(self, pattern: Pattern) -> list[Row]:
        return self._rows(pattern.args[0])[:pattern.n]

    def _tail(self, pattern: Pattern) -> list[Row]:
        rows = self._rows(pattern.args[0])
        return rows[len(rows) - min(pattern.n, len(rows)):]

    def _sample(self, pattern: Pattern) -> list[Row]:
        rows = self._rows(pattern.args[0])
        rng = random.Random(pattern.seed) if pattern.seed is not None else self._rng
        chosen = sorted(rng.sample(range(len(rows)), min(pattern.n, len(rows))))
        return [rows[i] for i in chosen]


def expand(
    target: str,
    pattern: Pattern,
    resolved: dict[str, ResolvedInput],
    seed: int = 0,
) -> list[BranchSpec]:
    """Expand a dynamic target's pattern into its ordered branches."""
    return PatternExpander(target, resolved, seed=seed).expand(pattern)
