"""DAG runner — incremental execution of a pipeline graph with dynamic branching.

The runner is the coordinator: it walks the graph in dependency order, asks
the fingerprint store whether each node is current, dispatches stale nodes to
the worker pool and commits their results. Dynamic targets are expanded into
branches once their pattern inputs are built; the branches are spliced into
the graph and scheduled like any other node.
"""

from __future__ import annotations
import asyncio
import copy
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from tessera.core.config import BuildConfig
from tessera.dag.aggregator import combine, partition
from tessera.dag.builder import PipelineGraph
from tessera.dag.patterns import BranchSpec, ResolvedInput, disambiguate, expand
from tessera.errors import BuildError, StoreIOError
from tessera.models.fingerprint import FingerprintRecord
from tessera.repositories.progress_repo import ProgressRepository
from tessera.pipeline.progress import ProgressTracker, TERMINAL_STATES
from tessera.pipeline.types import CueMode, ErrorTag, NodeKind, NodeState
from tessera.storage.fingerprints import FingerprintStore
from tessera.storage.hashing import hash_value
from tessera.storage.results import stored_form
from tessera.workers.pool import WorkerPool

logger = logging.getLogger("tessera.dag")


def _first_line(text: str | None) -> str | None:
    if not text:
        return None
    return text.strip().splitlines()[0]


@dataclass
class BuildResult:
    """Result of a full build."""
    build_id: str
    status: str = "pending"  # pending | running | success | failed | cancelled
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int | None = None
    ran: list[str] = field(default_factory=list)
    up_to_date: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)  # node → error
    skipped: list[str] = field(default_factory=list)      # dependents of failed nodes
    halted: list[str] = field(default_factory=list)       # never started after fail-fast/cancel
    branches: dict[str, list[str]] = field(default_factory=dict)
    execution_order: list[str] = field(default_factory=list)
    progress: list[dict] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "build_id": self.build_id,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "duration_ms": self.duration_ms,
            "ran": self.ran,
            "up_to_date": self.up_to_date,
            "failed": self.failed,
            "skipped": self.skipped,
            "halted": self.halted,
            "branches": self.branches,
            "execution_order": self.execution_order,
        }

    def raise_for_status(self) -> "BuildResult":
        if self.failed:
            raise BuildError(self.failed, self.skipped)
        return self


@dataclass
class _Outcome:
    state: NodeState
    fingerprint: str | None = None
    ran: bool = False
    value: Any = None
    has_value: bool = False
    record: FingerprintRecord | None = None
    specs: list[BranchSpec] | None = None
    children: list[str] | None = None
    tag: str | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)


class DAGRunner:
    """Executes a pipeline graph incrementally with dependency resolution and parallelism."""

    def __init__(
        self,
        graph: PipelineGraph,
        store: FingerprintStore,
        pool: WorkerPool | None = None,
        config: BuildConfig | None = None,
        env: dict[str, Any] | None = None,
    ):
        """
        Args:
            graph: The static graph from build_graph()
            store: Fingerprint store (records plus result store)
            pool: Worker pool; defaults to one local worker with config.max_workers slots
            config: Immutable build options
            env: Namespace commands run in; defaults to the pipeline environment
        """
        self.graph = graph
        self.store = store
        self.config = config or BuildConfig()
        self.pool = pool or WorkerPool.local(max_concurrent=self.config.max_workers)
        self.env = env if env is not None else graph.env
        self._tasks: dict[asyncio.Task, str] = {}
        self._cancelled = False
        self._tracker: ProgressTracker | None = None
        self._records: dict[str, FingerprintRecord] = {}

    # ─── Public API ───

    async def run(self, targets: list[str] | None = None) -> BuildResult:
        """Build the given targets (default: all) and everything they need."""
        unknown = [t for t in targets or [] if t not in self.graph.targets]
        if unknown:
            raise KeyError(f"Unknown target(s): {', '.join(unknown)}")

        self._reset(targets)
        result = self._result
        result.status = "running"
        result.started_at = datetime.now(tz=timezone.utc)
        logger.info(f"Build {result.build_id}: {len(self.graph.targets)} targets")

        try:
            await self._loop()
        except asyncio.CancelledError:
            await self._abort()
            self._finalize_result()
            raise

        self._finalize_result()
        await self._persist_progress()
        if self._fatal is not None:
            raise self._fatal
        return result

    def cancel(self) -> None:
        """Abort the build: running nodes become Cancelled and nothing new is dispatched."""
        self._cancelled = True
        for task in list(self._tasks):
            task.cancel()

    @property
    def tracker(self) -> ProgressTracker:
        return self._tracker

    async def outdated(self) -> list[str]:
        """Targets a build would run, judged from records only (nothing executes)."""
        outdated: set[str] = set()
        fingerprints: dict[str, str] = {}

        for name in self.graph.order():
            if self.graph.kind(name) is NodeKind.IMPORT:
                fingerprints[name] = self.graph.import_hash(name)
                continue

            target = self.graph.targets[name]
            deps = self.graph.dependencies[name]
            if self._propagates(target.cue, deps, ran=outdated):
                outdated.add(name)
                continue

            record = await self.store.get(name)
            current = await self.store.is_up_to_date(
                name,
                self.graph.command_hash(name),
                {d: fingerprints.get(d) for d in deps},
                target.format,
                target.cue,
                record=record,
            )
            if current and target.is_dynamic:
                current = await self._dynamic_record_current(name, record)
            if current:
                fingerprints[name] = record.data_hash
            else:
                outdated.add(name)

        return [n for n in self.graph.order() if n in outdated]

    # ─── Build state ───

    def _reset(self, targets: list[str] | None) -> None:
        build_id = str(uuid.uuid4())
        self.dag = self.graph.dag.get_subgraph(targets or list(self.graph.dag.nodes))
        self._result = BuildResult(build_id=build_id)
        self._tracker = ProgressTracker(build_id)
        self._fingerprints: dict[str, str] = {}
        self._ran: set[str] = set()
        self._values: dict[str, Any] = {}
        self._records: dict[str, FingerprintRecord] = {}
        self._children: dict[str, list[str]] = {}
        self._specs: dict[str, BranchSpec] = {}
        self._slices: dict[str, list[Any]] = {}
        self._tasks = {}
        self._halted = False
        self._cancelled = False
        self._fatal: Exception | None = None
        self._order: list[str] | None = None
        for name in self.dag.topological_sort():
            node = self.dag.nodes[name]
            self._tracker.register(name, node.kind, node.parent)

    def _topological(self) -> list[str]:
        if self._order is None:
            self._order = self.dag.topological_sort()
        return self._order

    def _state(self, name: str) -> NodeState:
        return self._tracker.state(name)

    def _upstream_done(self, name: str) -> bool:
        return all(self._state(u) is NodeState.DONE for u in self.dag.nodes[name].upstream)

    # ─── Coordinator loop ───

    async def _loop(self) -> None:
        while True:
            if not self._halted:
                self._schedule()
            if not self._tasks:
                break
            done, _ = await asyncio.wait(self._tasks, return_when=asyncio.FIRST_COMPLETED)
            for task in sorted(done, key=lambda t: self._tasks[t]):
                name = self._tasks.pop(task)
                self._collect(name, task)

    def _schedule(self) -> None:
        """Start every node whose dependencies are all done."""
        running = set(self._tasks.values())
        progressed = True
        while progressed and not self._halted:
            progressed = False
            for name in self._topological():
                if self._halted:
                    break
                if name in running:
                    continue
                state = self._state(name)
                if state is NodeState.PENDING and self._upstream_done(name):
                    if self.dag.nodes[name].kind is NodeKind.IMPORT:
                        self._fingerprints[name] = self.graph.import_hash(name)
                        self._tracker.transition(name, NodeState.UP_TO_DATE)
                        self._tracker.transition(name, NodeState.DONE)
                        progressed = True
                        continue
                    self._result.execution_order.append(name)
                    self._start(name, self._process(name))
                    running.add(name)
                elif state is NodeState.EXPANDING and self._upstream_done(name):
                    self._start(name, self._finalize_dynamic(name))
                    running.add(name)

    def _start(self, name: str, coro) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks[task] = name

    def _collect(self, name: str, task: asyncio.Task) -> None:
        if task.cancelled():
            self._fail(name, ErrorTag.CANCELLED.value, "Cancelled")
            self._halted = True
            return

        exc = task.exception()
        if exc is None:
            self._apply(name, task.result())
            return
        if isinstance(exc, StoreIOError):
            logger.error(f"{name}: {exc}")
            self._apply(name, _Outcome(NodeState.ERRORED, tag=ErrorTag.STORE_IO_ERROR.value, error=str(exc)))
            return

        # Pattern and aggregation errors (and anything unexpected) end the build
        logger.error(f"{name}: {type(exc).__name__}: {exc}")
        self._fail(name, type(exc).__name__, f"{type(exc).__name__}: {exc}")
        if self._fatal is None:
            self._fatal = exc
        self._halted = True

    def _apply(self, name: str, outcome: _Outcome) -> None:
        if outcome.state is NodeState.ERRORED:
            self._fail(name, outcome.tag, outcome.error, outcome.warnings)
            if not self.config.keep_going or self._cancelled:
                self._halted = True
            return

        if outcome.state is NodeState.EXPANDING:
            self._splice(name, outcome.specs)
            return

        self._fingerprints[name] = outcome.fingerprint
        if outcome.record is not None:
            self._records[name] = outcome.record
        if outcome.has_value:
            self._values[name] = outcome.value
        if outcome.children is not None:
            self._adopt(name, outcome.children)
        if outcome.ran:
            self._ran.add(name)
        (self._result.ran if outcome.ran else self._result.up_to_date).append(name)
        self._tracker.transition(name, NodeState.DONE, warnings=outcome.warnings)

    def _fail(self, name: str, tag: str | None, error: str | None, warnings: list[str] | None = None) -> None:
        """Mark a node errored and every transitive dependent as skipped."""
        self._tracker.transition(name, NodeState.ERRORED, tag=tag, error=error, warnings=warnings)
        self._result.failed[name] = _first_line(error) or tag or "failed"

        owner = self.dag.nodes[name].parent
        downstream = self.dag.get_downstream(name)
        for dependent in self._topological():
            if dependent not in downstream:
                continue
            if self._state(dependent) in TERMINAL_STATES or self._state(dependent) is NodeState.RUNNING:
                continue
            dep_tag = ErrorTag.BRANCH_FAILED if dependent == owner else ErrorTag.DEPENDENCY_FAILED
            self._tracker.transition(
                dependent, NodeState.ERRORED, tag=dep_tag.value, error=f"Upstream '{name}' failed"
            )
            self._result.skipped.append(dependent)
            logger.info(f"Skipping {dependent} — upstream dependency {name} failed")

    async def _abort(self) -> None:
        self.cancel()
        if self._tasks:
            await asyncio.wait(self._tasks)
        for task, name in list(self._tasks.items()):
            self._collect(name, task)
        self._tasks.clear()

    def _finalize_result(self) -> None:
        result = self._result
        result.finished_at = datetime.now(tz=timezone.utc)
        result.duration_ms = int((result.finished_at - result.started_at).total_seconds() * 1000)
        result.halted = [
            t.name for t in self._tracker.traces()
            if t.state not in TERMINAL_STATES
        ]
        result.progress = self._tracker.snapshot()

        if self._cancelled:
            result.status = "cancelled"
        elif result.failed or result.halted:
            result.status = "failed"
        else:
            result.status = "success"
        logger.info(
            f"Build {result.build_id} {result.status}: ran={len(result.ran)} "
            f"up_to_date={len(result.up_to_date)} failed={len(result.failed)} "
            f"skipped={len(result.skipped)} ({result.duration_ms}ms)"
        )

    async def _persist_progress(self) -> None:
        """Save the progress snapshot for `tessera progress`.

        Progress rows are observability data only. A database failure here is
        logged and never changes the build status; the fingerprint records are
        already committed.
        """
        rows = self._tracker.to_rows()
        try:
            async with self.store.session() as session:
                await ProgressRepository(session).add_many(rows)
        except SQLAlchemyError as e:
            logger.error(f"Could not save progress of build {self._result.build_id}: {e}")

    # ─── Node processing ───

    async def _process(self, name: str) -> _Outcome:
        kind = self.dag.nodes[name].kind
        if kind is NodeKind.BRANCH:
            return await self._process_branch(self._specs[name])
        if kind is NodeKind.DYNAMIC:
            return await self._process_dynamic(name)
        return await self._process_target(name)

    def _dependency_fingerprints(self, names: list[str]) -> dict[str, str]:
        return {d: self._fingerprints[d] for d in names}

    def _propagates(self, cue, upstream: list[str], ran: set[str] | None = None) -> bool:
        """Staleness propagation: an upstream that ran makes this node stale."""
        if cue.mode is not CueMode.THOROUGH or not cue.depend:
            return False
        ran = self._ran if ran is None else ran
        return any(u in ran for u in upstream)

    async def _process_target(self, name: str) -> _Outcome:
        target = self.graph.targets[name]
        deps = self.graph.dependencies[name]
        command_hash = self.graph.command_hash(name)
        fingerprints = self._dependency_fingerprints(deps)

        record = await self.store.get(name)
        current = not self._propagates(target.cue, deps) and await self.store.is_up_to_date(
            name, command_hash, fingerprints, target.format, target.cue, record=record
        )
        if current:
            self._tracker.transition(name, NodeState.UP_TO_DATE)
            return _Outcome(NodeState.DONE, fingerprint=record.data_hash, record=record)

        self._tracker.transition(name, NodeState.STALE)
        values = await self._load_dependencies(deps)
        return await self._execute(
            name, target, values, command_hash, fingerprints, kind=NodeKind.TARGET
        )

    async def _execute(
        self,
        name: str,
        target,
        values: dict[str, Any],
        command_hash: str,
        fingerprints: dict[str, str],
        kind: NodeKind,
        parent: str | None = None,
    ) -> _Outcome:
        """Run a command on a worker and commit its value."""
        self._tracker.transition(name, NodeState.READY)
        self._tracker.transition(name, NodeState.RUNNING)
        # Committed values are shared; each command gets its own copy
        values = copy.deepcopy(values)
        result = await self.pool.dispatch(name, target.command, env=self.env, dependencies=values)

        if not result.ok:
            logger.error(f"{name} failed: {_first_line(result.error)}")
            await self._record_error(name, result.error, kind, parent, command_hash, fingerprints, result)
            return _Outcome(
                NodeState.ERRORED,
                tag=ErrorTag.COMMAND_ERROR.value,
                error=result.error,
                warnings=result.warnings,
            )

        try:
            value = stored_form(result.value, target.format)
            record = await self.store.commit(
                name,
                value,
                target.format,
                command_hash,
                fingerprints,
                build_id=self._result.build_id,
                kind=kind,
                parent=parent,
                seed=self.config.seed,
                duration_ms=result.duration_ms,
                warnings="\n".join(result.warnings) or None,
            )
        except StoreIOError as e:
            logger.error(f"{name}: {e}")
            return _Outcome(NodeState.ERRORED, tag=ErrorTag.STORE_IO_ERROR.value, error=str(e))

        return _Outcome(
            NodeState.DONE,
            fingerprint=record.data_hash,
            ran=True,
            value=value,
            has_value=True,
            record=record,
            warnings=result.warnings,
        )

    async def _record_error(self, name, error, kind, parent, command_hash, fingerprints, result) -> None:
        try:
            await self.store.record_error(
                name,
                error or "failed",
                build_id=self._result.build_id,
                kind=kind,
                parent=parent,
                command_hash=command_hash,
                dependencies=fingerprints,
                duration_ms=result.duration_ms,
                warnings="\n".join(result.warnings) or None,
            )
        except StoreIOError as e:
            logger.error(f"Could not record failure of {name}: {e}")

    # ─── Dynamic targets ───

    async def _process_dynamic(self, name: str) -> _Outcome:
        target = self.graph.targets[name]
        deps = self.graph.dependencies[name]
        command_hash = self.graph.command_hash(name)
        fingerprints = self._dependency_fingerprints(deps)

        record = await self.store.get(name)
        current = not self._propagates(target.cue, deps) and await self.store.is_up_to_date(
            name, command_hash, fingerprints, target.format, target.cue, record=record
        )
        if current:
            current = await self._dynamic_record_current(name, record)
        if current:
            self._tracker.transition(name, NodeState.UP_TO_DATE)
            return _Outcome(
                NodeState.DONE,
                fingerprint=record.data_hash,
                record=record,
                children=list(record.children or []),
            )

        self._tracker.transition(name, NodeState.STALE)
        self._tracker.transition(name, NodeState.EXPANDING)
        resolved = {}
        for input_name in target.pattern_inputs:
            resolved[input_name] = await self._resolve_input(input_name)
        specs = expand(name, target.pattern, resolved, seed=self.config.seed)
        logger.info(f"Expanded {name} into {len(specs)} branches")
        return _Outcome(NodeState.EXPANDING, specs=specs)

    async def _dynamic_record_current(self, name: str, record: FingerprintRecord) -> bool:
        """A dynamic record is current only if its seed matches and every branch record is intact."""
        if record.seed != self.config.seed:
            return False
        children = list(record.children or [])
        child_records = await self.store.get_many(children)
        target = self.graph.targets[name]
        for child in children:
            child_record = child_records.get(child)
            if child_record is None or not child_record.is_valid:
                return False
            if target.cue.file and not await self.store.data_intact(child_record):
                return False
        self._records.update(child_records)
        return True

    async def _resolve_input(self, name: str) -> ResolvedInput:
        """Slice identities of a pattern input: branch names, or slice content hashes."""
        if self.graph.kind(name) is NodeKind.DYNAMIC:
            return ResolvedInput(name, tuple(self._children[name]))
        value = await self._value(name)
        slices = partition(value, self.graph.targets[name].iteration)
        self._slices[name] = slices
        return ResolvedInput(name, tuple(disambiguate([hash_value(s) for s in slices])))

    def _splice(self, name: str, specs: list[BranchSpec]) -> None:
        """Insert freshly expanded branches into the graph."""
        target = self.graph.targets[name]
        whole = self.graph.whole_dependencies(name)
        branch_upstream = {}
        for spec in specs:
            upstream = [
                b.slice_id if self.graph.kind(b.variable) is NodeKind.DYNAMIC else b.variable
                for b in spec.bindings
            ]
            branch_upstream[spec.name] = upstream + whole
            self._specs[spec.name] = spec

        self.dag.add_branches(name, specs, branch_upstream)
        for spec in specs:
            self._tracker.register(spec.name, NodeKind.BRANCH, parent=name)
        self._children[name] = [spec.name for spec in specs]
        self._result.branches[name] = self._children[name]
        self._order = None
        logger.debug(f"Spliced {len(specs)} branches of {name} ({target.pattern})")

    def _adopt(self, name: str, children: list[str]) -> None:
        """Register the recorded branches of an up-to-date dynamic target as done."""
        specs = [BranchSpec(name=child, target=name, index=i) for i, child in enumerate(children)]
        self.dag.add_branches(name, specs, {})
        for child in children:
            self._tracker.register(child, NodeKind.BRANCH, parent=name)
            self._tracker.transition(child, NodeState.UP_TO_DATE)
            self._tracker.transition(child, NodeState.DONE)
            self._fingerprints[child] = self._records[child].data_hash
            self._result.up_to_date.append(child)
        self._children[name] = list(children)
        self._result.branches[name] = list(children)
        self._order = None

    async def _process_branch(self, spec: BranchSpec) -> _Outcome:
        owner = self.graph.targets[spec.target]
        whole = self.graph.whole_dependencies(spec.target)
        command_hash = self.graph.command_hash(spec.target)

        fingerprints: dict[str, str] = {}
        dynamic_slices = []
        for b in spec.bindings:
            if self.graph.kind(b.variable) is NodeKind.DYNAMIC:
                fingerprints[b.variable] = self._fingerprints[b.slice_id]
                dynamic_slices.append(b.slice_id)
            else:
                fingerprints[b.variable] = b.slice_id
        fingerprints.update(self._dependency_fingerprints(whole))

        record = await self.store.get(spec.name)
        current = not self._propagates(owner.cue, dynamic_slices + whole) and await self.store.is_up_to_date(
            spec.name, command_hash, fingerprints, owner.format, owner.cue, record=record
        )
        if current:
            self._tracker.transition(spec.name, NodeState.UP_TO_DATE)
            return _Outcome(NodeState.DONE, fingerprint=record.data_hash, record=record)

        self._tracker.transition(spec.name, NodeState.STALE)
        values: dict[str, Any] = {}
        for b in spec.bindings:
            if self.graph.kind(b.variable) is NodeKind.DYNAMIC:
                values[b.variable] = await self._value(b.slice_id)
            else:
                values[b.variable] = self._slices[b.variable][b.index]
        values.update(await self._load_dependencies(whole))

        return await self._execute(
            spec.name, owner, values, command_hash, fingerprints,
            kind=NodeKind.BRANCH, parent=spec.target,
        )

    async def _finalize_dynamic(self, name: str) -> _Outcome:
        """Commit a dynamic target once all of its branches are done."""
        target = self.graph.targets[name]
        children = self._children.get(name, [])
        pairs = [(child, self._fingerprints[child]) for child in children]
        try:
            previous = await self.store.get(name)
            record = await self.store.commit_dynamic(
                name,
                pairs,
                target.format,
                self.graph.command_hash(name),
                self._dependency_fingerprints(self.graph.dependencies[name]),
                build_id=self._result.build_id,
                seed=self.config.seed,
            )
        except StoreIOError as e:
            return _Outcome(NodeState.ERRORED, tag=ErrorTag.STORE_IO_ERROR.value, error=str(e))
        # A new branch set counts as a run even if every branch was reused
        ran = (
            any(child in self._ran for child in children)
            or previous is None
            or previous.data_hash != record.data_hash
        )
        return _Outcome(NodeState.DONE, fingerprint=record.data_hash, ran=ran, record=record)

    # ─── Values ───

    async def _value(self, name: str) -> Any:
        """Value of a built target or branch; dynamic targets are combined."""
        if name in self._values:
            return self._values[name]

        if name in self.graph.targets and self.graph.kind(name) is NodeKind.DYNAMIC:
            parts = [await self._value(child) for child in self._children[name]]
            value = combine(parts, self.graph.targets[name].iteration)
        else:
            record = self._records.get(name) or await self.store.get(name)
            if record is None:
                raise StoreIOError(f"No stored value for '{name}'")
            value = await self.store.load(record)
        self._values[name] = value
        return value

    async def _load_dependencies(self, names: list[str]) -> dict[str, Any]:
        values = {}
        for name in names:
            if self.graph.kind(name) is NodeKind.IMPORT:
                continue
            values[name] = await self._value(name)
        return values
