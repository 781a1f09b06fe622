"""Command executor — runs one node's command against its loaded dependencies."""

from __future__ import annotations
import ast
import textwrap
import traceback
import warnings
from datetime import datetime, timezone
from typing import Any

from tessera.pipeline.types import NodeState


class ExecutionResult:
    def __init__(self):
        self.status: str = NodeState.PENDING.value
        self.started_at: datetime | None = None
        self.finished_at: datetime | None = None
        self.duration_ms: int | None = None
        self.value: Any = None
        self.error: str | None = None
        self.warnings: list[str] = []

    @property
    def ok(self) -> bool:
        return self.status == NodeState.DONE.value

    def to_dict(self) -> dict:
        return {
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "error": self.error,
            "warnings": self.warnings,
        }


def compile_command(name: str, command: str):
    """Compile a command into (statements, final expression); either may be None.

    The value of a command is its final expression statement, or None if it
    ends with any other statement.
    """
    tree = ast.parse(textwrap.dedent(command), filename=f"<{name}>")
    body = tree.body
    final = None
    if body and isinstance(body[-1], ast.Expr):
        final = ast.Expression(body=body[-1].value)
        body = body[:-1]
    statements = compile(ast.Module(body=body, type_ignores=[]), f"<{name}>", "exec") if body else None
    expression = compile(final, f"<{name}>", "eval") if final is not None else None
    return statements, expression


def build_namespace(env: dict[str, Any], dependencies: dict[str, Any]) -> dict[str, Any]:
    """Namespace a command runs in: tracked globals, dependency values and helpers."""
    namespace: dict[str, Any] = dict(env)
    namespace.update(dependencies)

    def readd(name):
        if isinstance(name, str):
            if name not in dependencies:
                raise NameError(f"readd(): '{name}' is not a dependency of this command")
            return dependencies[name]
        return name

    def loadd(*names: str) -> None:
        for name in names:
            namespace[name] = readd(name)

    namespace.setdefault("readd", readd)
    namespace.setdefault("loadd", loadd)
    namespace.setdefault("ignore", lambda value: value)
    return namespace


def execute_command(
    name: str,
    command: str,
    env: dict[str, Any] | None = None,
    dependencies: dict[str, Any] | None = None,
) -> ExecutionResult:
    """Execute a command and return structured results. Never raises."""
    result = ExecutionResult()
    result.started_at = datetime.now(tz=timezone.utc)
    result.status = NodeState.RUNNING.value

    try:
        with warnings.catch_warnings(record=True) as caught:
            warnings.simplefilter("always")
            statements, expression = compile_command(name, command)
            namespace = build_namespace(env or {}, dependencies or {})
            if statements is not None:
                exec(statements, namespace)
            result.value = eval(expression, namespace) if expression is not None else None
        result.warnings = [f"{w.category.__name__}: {w.message}" for w in caught]
        result.status = NodeState.DONE.value

    except Exception as e:
        result.status = NodeState.ERRORED.value
        result.error = f"{type(e).__name__}: {str(e)}\n{traceback.format_exc()}"

    finally:
        result.finished_at = datetime.now(tz=timezone.utc)
        result.duration_ms = int(
            (result.finished_at - result.started_at).total_seconds() * 1000
        )

    return result
