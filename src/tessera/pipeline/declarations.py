"""Pipeline declarations — the Pipeline container and the target() helper.

Targets can be collected explicitly::

    pipeline = Pipeline([
        Target("x", "2"),
        Target("y", "x + 1"),
    ])

or declared with module-level ``target()`` calls in a pipeline file, which
register into a registry the loader drains after executing the file.
"""

from __future__ import annotations
from typing import TYPE_CHECKING, Any, Iterable, Iterator

from tessera.errors import DeclarationError
from tessera.pipeline.types import Cue, IterationMode, StorageFormat, Target

if TYPE_CHECKING:
    from tessera.core.config import BuildConfig
    from tessera.dag.builder import PipelineGraph
    from tessera.dag.patterns import Pattern

# Targets declared with target() since the registry was last cleared
_target_registry: dict[str, Target] = {}


class Pipeline:
    """An ordered, name-unique collection of targets."""

    def __init__(self, targets: Iterable[Target] = ()):
        self._targets: dict[str, Target] = {}
        for t in targets:
            self.add(t)

    def add(self, target: Target) -> Target:
        if not isinstance(target, Target):
            raise DeclarationError(f"Expected a Target, got {type(target).__name__}")
        if target.name in self._targets:
            raise DeclarationError(f"Duplicate target name: '{target.name}'")
        self._targets[target.name] = target
        return target

    def target(self, name: str, command: str, **options) -> Target:
        """Declare a target directly on this pipeline."""
        return self.add(_make_target(name, command, **options))

    @property
    def targets(self) -> list[Target]:
        return list(self._targets.values())

    @property
    def names(self) -> list[str]:
        return list(self._targets)

    def __getitem__(self, name: str) -> Target:
        return self._targets[name]

    def __contains__(self, name: object) -> bool:
        return name in self._targets

    def __iter__(self) -> Iterator[Target]:
        return iter(self._targets.values())

    def __len__(self) -> int:
        return len(self._targets)

    def __repr__(self) -> str:
        return f"Pipeline({', '.join(self._targets)})"

    def graph(self, env: dict[str, Any] | None = None, config: "BuildConfig | None" = None) -> "PipelineGraph":
        """Build the static dependency graph of this pipeline."""
        from tessera.dag.builder import build_graph

        return build_graph(self.targets, env=env, config=config)


def _make_target(
    name: str,
    command: str,
    pattern: "Pattern | str | None" = None,
    iteration: IterationMode | str = IterationMode.VECTOR,
    format: StorageFormat | str | None = None,
    cue: Cue | None = None,
) -> Target:
    return Target(
        name=name,
        command=command,
        pattern=pattern,
        iteration=iteration,
        format=format,
        cue=cue or Cue(),
    )


def target(
    name: str,
    command: str,
    pattern: "Pattern | str | None" = None,
    iteration: IterationMode | str = IterationMode.VECTOR,
    format: StorageFormat | str | None = None,
    cue: Cue | None = None,
) -> Target:
    """Declare a target in the current pipeline file.

    Args:
        name: Unique identifier of the target
        command: Python source; its final expression is the target's value
        pattern: Dynamic branching pattern, e.g. ``"map(a, b)"``
        iteration: How this target's value is sliced and recombined
        format: Storage format (default from the build configuration)
        cue: Which checks may invalidate the target
    """
    t = _make_target(name, command, pattern=pattern, iteration=iteration, format=format, cue=cue)
    if name in _target_registry:
        raise DeclarationError(f"Duplicate target name: '{name}'")
    _target_registry[name] = t
    return t


def get_registry() -> dict[str, Target]:
    return _target_registry


def clear_registry() -> None:
    _target_registry.clear()
