"""Local worker — executes commands in threads of the coordinator process."""

from __future__ import annotations
import asyncio
import logging
from typing import Any

from tessera.daemon.executor import execute_command, ExecutionResult

logger = logging.getLogger("tessera.workers.local")


class LocalWorker:
    """Runs commands locally off the coordinator's event loop.

    For single-machine builds:
    - Each command runs in a worker thread via asyncio.to_thread
    - Concurrency controlled via semaphore
    - Dependency values are passed in memory, no serialization
    """

    def __init__(self, worker_id: str = "local-0", max_concurrent: int = 4):
        self.worker_id = worker_id
        self.max_concurrent = max_concurrent
        self._semaphore = asyncio.Semaphore(max_concurrent)
        self._active: dict[str, asyncio.Task] = {}  # node → task
        self._status = "idle"

    @property
    def status(self) -> str:
        if self._active:
            return "busy"
        return self._status

    @property
    def current_load(self) -> int:
        return len(self._active)

    @property
    def capacity(self) -> int:
        return self.max_concurrent - self.current_load

    async def execute(
        self,
        node: str,
        command: str,
        env: dict[str, Any] | None = None,
        dependencies: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        """Execute a command with concurrency control."""
        async with self._semaphore:
            self._active[node] = asyncio.current_task()
            try:
                logger.info(f"[{self.worker_id}] Running {node}")
                result = await asyncio.to_thread(execute_command, node, command, env, dependencies)
                logger.info(f"[{self.worker_id}] Finished {node}: {result.status}")
                return result
            finally:
                self._active.pop(node, None)

    async def cancel(self, node: str) -> bool:
        """Cancel a running command; its thread finishes but the result is dropped."""
        task = self._active.get(node)
        if task:
            task.cancel()
            self._active.pop(node, None)
            return True
        return False

    def info(self) -> dict:
        return {
            "worker_id": self.worker_id,
            "type": "local",
            "status": self.status,
            "max_concurrent": self.max_concurrent,
            "current_load": self.current_load,
            "active": list(self._active.keys()),
        }
