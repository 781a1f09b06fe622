"""Build service — business logic behind the CLI: builds, reads and inspection."""

from __future__ import annotations
import logging
from pathlib import Path
from typing import Any

from tessera.core.config import BuildConfig, TesseraSettings, get_settings
from tessera.core.database import Database
from tessera.dag.aggregator import combine
from tessera.dag.builder import PipelineGraph, build_graph
from tessera.dag.runner import BuildResult, DAGRunner
from tessera.pipeline.declarations import Pipeline
from tessera.pipeline.loader import load_pipeline_from_file
from tessera.pipeline.types import NodeKind
from tessera.repositories.progress_repo import ProgressRepository
from tessera.storage.fingerprints import FingerprintStore
from tessera.storage.results import FileResultStore, ResultStore
from tessera.workers.pool import WorkerPool

logger = logging.getLogger("tessera.services.build")


class BuildService:
    """One pipeline bound to a store: make, outdated, read, branches, meta, progress."""

    def __init__(
        self,
        pipeline: Pipeline,
        env: dict[str, Any] | None = None,
        settings: TesseraSettings | None = None,
        config: BuildConfig | None = None,
        db: Database | None = None,
        results: ResultStore | None = None,
        pool: WorkerPool | None = None,
    ):
        self.settings = settings or get_settings()
        self.config = config or BuildConfig.from_settings(self.settings)
        self.pipeline = pipeline
        self.env = env or {}
        self.db = db or Database(self.settings.resolved_database_url())
        self.results = results or FileResultStore(self.settings.store_dir)
        self.store = FingerprintStore(self.db, self.results)
        self.pool = pool
        self._graph: PipelineGraph | None = None

    @classmethod
    def from_file(cls, path: str | Path, **kwargs) -> "BuildService":
        pipeline, env = load_pipeline_from_file(path)
        return cls(pipeline, env=env, **kwargs)

    async def open(self) -> "BuildService":
        await self.db.create_tables()
        return self

    async def close(self) -> None:
        await self.db.dispose()

    async def __aenter__(self):
        return await self.open()

    async def __aexit__(self, *args):
        await self.close()

    @property
    def graph(self) -> PipelineGraph:
        if self._graph is None:
            self._graph = build_graph(self.pipeline.targets, env=self.env, config=self.config)
        return self._graph

    def runner(self) -> DAGRunner:
        return DAGRunner(self.graph, self.store, pool=self.pool, config=self.config)

    # ─── Builds ───

    async def make(self, targets: list[str] | None = None) -> BuildResult:
        return await self.runner().run(targets)

    async def outdated(self) -> list[str]:
        return await self.runner().outdated()

    # ─── Reads ───

    async def branches(self, name: str) -> list[str]:
        """Branch names of a built dynamic target, in branch order."""
        record = await self.store.get(name)
        if record is None or record.kind != NodeKind.DYNAMIC.value:
            raise KeyError(f"'{name}' is not a built dynamic target")
        return list(record.children or [])

    async def read_target(self, name: str, branch: int | str | None = None) -> Any:
        """Stored value of a target.

        For a dynamic target, ``branch`` selects one branch by ordinal or by
        branch name; without it the branches are recombined by the target's
        iteration mode.
        """
        record = await self.store.get(name)
        if record is None:
            raise KeyError(f"'{name}' has not been built")

        if record.kind == NodeKind.DYNAMIC.value:
            children = list(record.children or [])
            if branch is None:
                parts = [await self._load(child) for child in children]
                return combine(parts, self._iteration(name))
            if isinstance(branch, int):
                if not 0 <= branch < len(children):
                    raise KeyError(f"'{name}' has {len(children)} branches, no branch {branch}")
                return await self._load(children[branch])
            if branch not in children:
                raise KeyError(f"'{branch}' is not a branch of '{name}'")
            return await self._load(branch)

        if branch is not None:
            raise KeyError(f"'{name}' is not a dynamic target")
        return await self.store.load(record)

    async def _load(self, name: str) -> Any:
        record = await self.store.get(name)
        if record is None:
            raise KeyError(f"'{name}' has not been built")
        return await self.store.load(record)

    def _iteration(self, name: str):
        return self.graph.targets[name].iteration

    # ─── Inspection ───

    async def meta(self, names: list[str] | None = None) -> list[dict]:
        """Fingerprint records, optionally restricted to some names."""
        records = await self.store.list_all()
        if names:
            records = [r for r in records if r.name in names or r.parent in names]
        return [r.to_dict() for r in records]

    async def progress(self, build_id: str | None = None) -> list[dict]:
        """Per-node progress of a build (default: the latest)."""
        async with self.store.session() as session:
            repo = ProgressRepository(session)
            build_id = build_id or await repo.last_build_id()
            if build_id is None:
                return []
            return [row.to_dict() for row in await repo.list_by_build(build_id)]

    async def forget(self, names: list[str]) -> int:
        """Invalidate targets so the next build reruns them."""
        return await self.store.forget(names)
