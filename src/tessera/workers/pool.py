"""Worker pool — manages local and remote workers, dispatches node commands."""

from __future__ import annotations
import asyncio
import logging
from typing import Any

from tessera.daemon.executor import ExecutionResult
from tessera.pipeline.types import NodeState
from tessera.workers.local import LocalWorker
from tessera.workers.remote import RemoteWorker

logger = logging.getLogger("tessera.workers.pool")


class WorkerPool:
    """Manages a pool of local and remote workers.

    Single-machine mode:
        pool = WorkerPool()
        pool.add_local(max_concurrent=4)
        # All commands run locally with 4-way concurrency

    Distributed mode:
        pool = WorkerPool()
        pool.add_local(max_concurrent=2)  # Coordinator also does work
        pool.add_remote("worker-1", "http://w1:8500", api_key="...")
        # Commands dispatched to the least-loaded worker
    """

    def __init__(self):
        self._local_workers: list[LocalWorker] = []
        self._remote_workers: list[RemoteWorker] = []
        self._dispatch_lock = asyncio.Lock()

    @classmethod
    def local(cls, max_concurrent: int = 4) -> "WorkerPool":
        pool = cls()
        pool.add_local(max_concurrent=max_concurrent)
        return pool

    def add_local(self, worker_id: str = "local-0", max_concurrent: int = 4) -> LocalWorker:
        """Add a local worker."""
        worker = LocalWorker(worker_id=worker_id, max_concurrent=max_concurrent)
        self._local_workers.append(worker)
        logger.info(f"Added local worker: {worker_id} (max={max_concurrent})")
        return worker

    def add_remote(
        self,
        worker_id: str,
        host: str,
        api_key: str,
        max_concurrent: int = 4,
        **kwargs,
    ) -> RemoteWorker:
        """Add a remote worker."""
        worker = RemoteWorker(
            worker_id=worker_id,
            host=host,
            api_key=api_key,
            max_concurrent=max_concurrent,
            **kwargs,
        )
        self._remote_workers.append(worker)
        logger.info(f"Added remote worker: {worker_id} at {host} (max={max_concurrent})")
        return worker

    @property
    def all_workers(self) -> list[LocalWorker | RemoteWorker]:
        return self._local_workers + self._remote_workers

    @property
    def total_capacity(self) -> int:
        return sum(w.capacity for w in self.all_workers if w.status != "offline")

    @property
    def max_concurrent(self) -> int:
        return sum(w.max_concurrent for w in self.all_workers if w.status != "offline")

    @property
    def total_load(self) -> int:
        return sum(w.current_load for w in self.all_workers)

    def _select_worker(self, prefer_local: bool = True) -> LocalWorker | RemoteWorker | None:
        """Select the best worker for a command (least-loaded with capacity).

        With prefer_local=True: tries local workers first, falls back to remote
        if no local capacity. With prefer_local=False: picks globally least-loaded.
        """
        local_candidates = [
            (w, w.current_load) for w in self._local_workers if w.capacity > 0
        ]
        remote_candidates = [
            (w, w.current_load) for w in self._remote_workers
            if w.status != "offline" and w.capacity > 0
        ]

        if prefer_local and local_candidates:
            local_candidates.sort(key=lambda x: x[1])
            return local_candidates[0][0]

        all_candidates = local_candidates + remote_candidates
        if not all_candidates:
            # Everything is saturated: queue on the least-loaded local worker
            if self._local_workers:
                return min(self._local_workers, key=lambda w: w.current_load)
            return None

        all_candidates.sort(key=lambda x: x[1])
        return all_candidates[0][0]

    async def dispatch(
        self,
        node: str,
        command: str,
        env: dict[str, Any] | None = None,
        dependencies: dict[str, Any] | None = None,
        prefer_local: bool = True,
    ) -> ExecutionResult:
        """Dispatch a command to the best available worker."""
        async with self._dispatch_lock:
            worker = self._select_worker(prefer_local=prefer_local)

        if worker is None:
            result = ExecutionResult()
            result.status = NodeState.ERRORED.value
            result.error = "No workers available — all at capacity"
            logger.warning(f"No capacity for {node}")
            return result

        worker_type = "local" if isinstance(worker, LocalWorker) else "remote"
        logger.debug(f"Dispatching {node} to {worker.worker_id} ({worker_type})")

        return await worker.execute(node=node, command=command, env=env, dependencies=dependencies)

    async def broadcast_heartbeat(self) -> list[dict]:
        """Check health of all workers."""
        results = []
        for w in self._remote_workers:
            results.append(await w.heartbeat())
        for w in self._local_workers:
            results.append(w.info())
        return results

    async def connect_remotes(self) -> None:
        """Connect all remote workers; unreachable ones stay offline."""
        for w in self._remote_workers:
            try:
                await w.connect()
            except ConnectionError as e:
                logger.error(f"Failed to connect to {w.worker_id}: {e}")

    async def disconnect_remotes(self) -> None:
        """Disconnect all remote workers."""
        for w in self._remote_workers:
            await w.disconnect()

    def info(self) -> dict:
        return {
            "workers": [w.info() for w in self.all_workers],
            "total_capacity": self.total_capacity,
            "total_load": self.total_load,
            "local_count": len(self._local_workers),
            "remote_count": len(self._remote_workers),
        }
