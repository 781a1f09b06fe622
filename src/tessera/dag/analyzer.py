"""Static dependency discovery for target commands and tracked functions.

Walks the command's AST and collects every free name it reads. Names bound
inside the command are excluded: at the command's top level a name only
counts as bound after the statement that binds it, so ``x = x + 1`` still
depends on ``x``. Nested functions, lambdas and comprehensions are their own
scopes.
"""

from __future__ import annotations
import ast
import inspect
import textwrap
from typing import Callable

from tessera.errors import DeclarationError

# Calls whose string arguments name targets
READ_CALLS = frozenset({"readd", "loadd"})
# Calls whose arguments are hidden from dependency detection
IGNORE_CALLS = frozenset({"ignore"})


class _Scope:
    def __init__(self, bound: set[str] | None = None, ordered: bool = False):
        self.bound = set(bound or ())
        self.ordered = ordered
        self.free: set[str] = set()


class DependencyVisitor(ast.NodeVisitor):
    """Collects free names of a block of Python source."""

    def __init__(self):
        self._scopes: list[_Scope] = [_Scope(ordered=True)]

    @property
    def free(self) -> set[str]:
        return self._scopes[0].free

    # ─── Scope bookkeeping ───

    def _load(self, name: str) -> None:
        scope = self._scopes[-1]
        if name not in scope.bound:
            scope.free.add(name)

    def _bind(self, name: str) -> None:
        self._scopes[-1].bound.add(name)

    def _visit_scope(self, nodes: list[ast.AST], bound: set[str]) -> None:
        """Analyze nodes in a fresh unordered scope and bubble its free names up."""
        scope = _Scope(bound=bound | _collect_bindings(nodes))
        self._scopes.append(scope)
        for node in nodes:
            self.visit(node)
        self._scopes.pop()
        for name in scope.free:
            self._load(name)

    # ─── Names ───

    def visit_Name(self, node: ast.Name) -> None:
        if isinstance(node.ctx, ast.Load):
            self._load(node.id)
        else:
            self._bind(node.id)

    def visit_Assign(self, node: ast.Assign) -> None:
        self.visit(node.value)
        for target in node.targets:
            self.visit(target)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:
        if node.value is not None:
            self.visit(node.value)
        self.visit(node.annotation)
        self.visit(node.target)

    def visit_AugAssign(self, node: ast.AugAssign) -> None:
        self.visit(node.value)
        if isinstance(node.target, ast.Name):
            self._load(node.target.id)
            self._bind(node.target.id)
        else:
            self.visit(node.target)

    def visit_NamedExpr(self, node: ast.NamedExpr) -> None:
        self.visit(node.value)
        self._bind(node.target.id)

    def visit_For(self, node: ast.For) -> None:
        self.visit(node.iter)
        self.visit(node.target)
        for stmt in node.body + node.orelse:
            self.visit(stmt)

    visit_AsyncFor = visit_For

    def visit_With(self, node: ast.With) -> None:
        for item in node.items:
            self.visit(item.context_expr)
            if item.optional_vars is not None:
                self.visit(item.optional_vars)
        for stmt in node.body:
            self.visit(stmt)

    visit_AsyncWith = visit_With

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.type is not None:
            self.visit(node.type)
        if node.name:
            self._bind(node.name)
        for stmt in node.body:
            self.visit(stmt)

    def visit_Import(self, node: ast.Import) -> None:
        for alias in node.names:
            self._bind((alias.asname or alias.name).split(".")[0])

    def visit_ImportFrom(self, node: ast.ImportFrom) -> None:
        for alias in node.names:
            self._bind(alias.asname or alias.name)

    def visit_Global(self, node: ast.Global) -> None:
        pass

    visit_Nonlocal = visit_Global

    # ─── Nested scopes ───

    def visit_FunctionDef(self, node: ast.FunctionDef) -> None:
        for decorator in node.decorator_list:
            self.visit(decorator)
        self._visit_defaults(node.args)
        self._bind(node.name)
        self._visit_scope(node.body, _argument_names(node.args) | {node.name})

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_Lambda(self, node: ast.Lambda) -> None:
        self._visit_defaults(node.args)
        self._visit_scope([node.body], _argument_names(node.args))

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        for expr in node.bases + node.decorator_list:
            self.visit(expr)
        for kw in node.keywords:
            self.visit(kw.value)
        self._bind(node.name)
        self._visit_scope(node.body, {node.name})

    def _visit_comprehension(self, node, elements: list[ast.AST]) -> None:
        # The first iterable is evaluated in the enclosing scope
        generators = node.generators
        self.visit(generators[0].iter)
        bound: set[str] = set()
        for gen in generators:
            bound |= _target_names(gen.target)
        nodes: list[ast.AST] = []
        for i, gen in enumerate(generators):
            if i > 0:
                nodes.append(gen.iter)
            nodes.extend(gen.ifs)
        self._visit_scope(nodes + elements, bound)

    def visit_ListComp(self, node: ast.ListComp) -> None:
        self._visit_comprehension(node, [node.elt])

    visit_SetComp = visit_ListComp
    visit_GeneratorExp = visit_ListComp

    def visit_DictComp(self, node: ast.DictComp) -> None:
        self._visit_comprehension(node, [node.key, node.value])

    def _visit_defaults(self, args: ast.arguments) -> None:
        for default in args.defaults + [d for d in args.kw_defaults if d is not None]:
            self.visit(default)

    # ─── Special calls ───

    def visit_Call(self, node: ast.Call) -> None:
        func = node.func
        if isinstance(func, ast.Name) and func.id in IGNORE_CALLS:
            return
        if isinstance(func, ast.Name) and func.id in READ_CALLS:
            for arg in node.args:
                if isinstance(arg, ast.Constant) and isinstance(arg.value, str):
                    self._load(arg.value)
        self.generic_visit(node)


def _argument_names(args: ast.arguments) -> set[str]:
    names = {a.arg for a in args.posonlyargs + args.args + args.kwonlyargs}
    if args.vararg:
        names.add(args.vararg.arg)
    if args.kwarg:
        names.add(args.kwarg.arg)
    return names


def _target_names(target: ast.AST) -> set[str]:
    return {n.id for n in ast.walk(target) if isinstance(n, ast.Name)}


def _collect_bindings(nodes: list[ast.AST]) -> set[str]:
    """Names bound anywhere in a function-like scope (not descending into nested scopes)."""
    bound: set[str] = set()
    stack = list(nodes)
    while stack:
        node = stack.pop()
        if isinstance(node, ast.Name) and isinstance(node.ctx, (ast.Store, ast.Del)):
            bound.add(node.id)
        elif isinstance(node, (ast.FunctionDef, ast.AsyncFunctionDef, ast.ClassDef)):
            bound.add(node.name)
            continue
        elif isinstance(node, (ast.Lambda, ast.ListComp, ast.SetComp, ast.GeneratorExp, ast.DictComp)):
            continue
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            for alias in node.names:
                bound.add((alias.asname or alias.name).split(".")[0])
        elif isinstance(node, ast.ExceptHandler) and node.name:
            bound.add(node.name)
        elif isinstance(node, ast.NamedExpr):
            bound.add(node.target.id)
        stack.extend(ast.iter_child_nodes(node))
    return bound


def find_dependencies(command: str | Callable) -> set[str]:
    """Return the candidate names a command (or a function) references.

    The result is a superset of the real dependencies; the graph builder
    keeps only the names that are targets or tracked globals.
    """
    if callable(command):
        return _function_dependencies(command)

    try:
        tree = ast.parse(textwrap.dedent(command))
    except SyntaxError as e:
        raise DeclarationError(f"Cannot parse command {command!r}: {e.msg}") from e

    visitor = DependencyVisitor()
    for stmt in tree.body:
        visitor.visit(stmt)
    return visitor.free


def _function_dependencies(func: Callable) -> set[str]:
    try:
        source = textwrap.dedent(inspect.getsource(func))
    except (OSError, TypeError):
        # Builtins and C extensions carry no analyzable source
        return set()

    name = getattr(func, "__name__", None)
    try:
        tree = ast.parse(source)
    except SyntaxError:
        # A lambda inside a larger expression yields an unparsable fragment
        return _code_names(getattr(func, "__code__", None)) - {name}

    visitor = DependencyVisitor()
    for stmt in tree.body:
        visitor.visit(stmt)
    return visitor.free - {name}


def _code_names(code) -> set[str]:
    """Global and attribute names a code object (and its nested code) loads."""
    if code is None:
        return set()
    names = set(code.co_names)
    for const in code.co_consts:
        if inspect.iscode(const):
            names |= _code_names(const)
    return names
