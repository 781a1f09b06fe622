"""Graph builder — turns a pipeline declaration into a checked dependency graph."""

from __future__ import annotations
import ast
import dataclasses
import inspect
import logging
import textwrap
from dataclasses import dataclass, field
from typing import Any, Iterable

from tessera.core.config import BuildConfig
from tessera.dag.analyzer import find_dependencies
from tessera.dag.resolver import DAGResolver
from tessera.errors import DeclarationError
from tessera.pipeline.types import NodeKind, StorageFormat, Target
from tessera.storage.hashing import hash_text, hash_value

logger = logging.getLogger("tessera.dag")


@dataclass
class PipelineGraph:
    """The static graph of one pipeline declaration, before branch expansion."""
    dag: DAGResolver
    targets: dict[str, Target]
    imports: dict[str, Any] = field(default_factory=dict)
    dependencies: dict[str, list[str]] = field(default_factory=dict)
    import_closures: dict[str, list[str]] = field(default_factory=dict)  # global -> globals it reaches
    env: dict[str, Any] = field(default_factory=dict)  # namespace commands execute in

    def order(self) -> list[str]:
        return self.dag.topological_sort()

    def kind(self, name: str) -> NodeKind:
        return self.dag.nodes[name].kind

    def whole_dependencies(self, name: str) -> list[str]:
        """Dependencies a target reads as whole values (pattern inputs excluded)."""
        target = self.targets[name]
        return [d for d in self.dependencies.get(name, []) if d not in target.pattern_inputs]

    def command_hash(self, name: str) -> str:
        return command_hash(self.targets[name])

    def import_hash(self, name: str) -> str:
        closure = self.import_closures.get(name, [name])
        return hash_value([[n, self.imports[n]] for n in closure])


def command_hash(target: Target) -> str:
    """Hash of the normalized command; formatting and comments do not count."""
    try:
        normalized = ast.dump(ast.parse(textwrap.dedent(target.command)), annotate_fields=False)
    except SyntaxError as e:
        raise DeclarationError(f"Cannot parse command of '{target.name}': {e.msg}") from e
    if target.pattern is not None:
        normalized += f"|pattern={target.pattern.to_source()}|iteration={target.iteration.value}"
    return hash_text(normalized)


def tracked_globals(env: dict[str, Any] | None) -> dict[str, Any]:
    """Public, non-module objects of an environment that a command may reference."""
    from tessera.pipeline.declarations import Pipeline

    tracked = {}
    for name, value in (env or {}).items():
        if name.startswith("_") or inspect.ismodule(value):
            continue
        if isinstance(value, (Target, Pipeline)):
            continue
        tracked[name] = value
    return tracked


def execution_env(env: dict[str, Any] | None) -> dict[str, Any]:
    """The environment minus declarations and dunder names."""
    from tessera.pipeline.declarations import Pipeline

    return {
        name: value for name, value in (env or {}).items()
        if not name.startswith("__") and not isinstance(value, (Target, Pipeline))
    }


def build_graph(
    targets: Iterable[Target],
    env: dict[str, Any] | None = None,
    config: BuildConfig | None = None,
) -> PipelineGraph:
    """Build and validate the static dependency graph.

    Raises DeclarationError for duplicate targets or unknown pattern inputs,
    and CycleError for cyclic dependencies.
    """
    config = config or BuildConfig()
    by_name: dict[str, Target] = {}
    for target in targets:
        if target.name in by_name:
            raise DeclarationError(f"Duplicate target name: '{target.name}'")
        if target.format is None:
            target = dataclasses.replace(target, format=StorageFormat(config.default_format))
        by_name[target.name] = target

    candidates_env = tracked_globals(env) if config.track_globals else {}
    globals_ = {n: v for n, v in candidates_env.items() if n not in by_name}

    dag = DAGResolver()
    dependencies: dict[str, list[str]] = {}
    referenced_imports: set[str] = set()

    for order, (name, target) in enumerate(by_name.items()):
        dag.add_node(name, kind=NodeKind.DYNAMIC if target.is_dynamic else NodeKind.TARGET, order=order)

    for name, target in by_name.items():
        candidates = find_dependencies(target.command)
        deps = [c for c in candidates if c in by_name or c in globals_]

        for input_name in target.pattern_inputs:
            if input_name not in by_name:
                raise DeclarationError(
                    f"Pattern of '{name}' references unknown target '{input_name}'"
                )
            if input_name not in deps:
                deps.append(input_name)

        deps = sorted(deps)
        dependencies[name] = deps
        referenced_imports.update(d for d in deps if d in globals_)
        dag.add_dependencies(name, deps)

    imports, closures = _add_imports(dag, referenced_imports, globals_)

    order = dag.topological_sort()
    logger.debug(f"Built graph: {len(by_name)} targets, {len(imports)} imports, order={order}")
    return PipelineGraph(
        dag=dag, targets=by_name, imports=imports, dependencies=dependencies,
        import_closures=closures, env=execution_env(env),
    )


def _add_imports(
    dag: DAGResolver, roots: set[str], globals_: dict[str, Any]
) -> tuple[dict[str, Any], dict[str, list[str]]]:
    """Register referenced globals and the globals each one reaches through functions.

    Globals never depend on each other in the graph, so helpers may recurse
    into one another freely. A change anywhere in a global's closure changes
    its fingerprint instead.
    """
    reads: dict[str, list[str]] = {}
    queue = sorted(roots)
    while queue:
        name = queue.pop(0)
        if name in reads:
            continue
        value = globals_[name]
        reads[name] = []
        if inspect.isfunction(value):
            reads[name] = sorted(d for d in find_dependencies(value) if d in globals_ and d != name)
            queue.extend(reads[name])

    imports = {name: globals_[name] for name in sorted(reads)}
    for name in imports:
        dag.add_node(name, kind=NodeKind.IMPORT, order=0)
    return imports, {name: _closure(name, reads) for name in imports}


def _closure(root: str, reads: dict[str, list[str]]) -> list[str]:
    seen = {root}
    stack = [root]
    while stack:
        for dep in reads[stack.pop()]:
            if dep not in seen:
                seen.add(dep)
                stack.append(dep)
    return sorted(seen)
