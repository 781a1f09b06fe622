"""Remote worker — delegates command execution to a Tessera worker daemon."""

from __future__ import annotations
import logging
from datetime import datetime, timezone
from typing import Any

import httpx

from tessera.daemon.executor import ExecutionResult
from tessera.pipeline.types import NodeState
from tessera.schemas.execute import ExecuteRequest, ExecuteResponse, decode_value, encode_value, split_env

logger = logging.getLogger("tessera.workers.remote")


class RemoteWorker:
    """Delegates command execution to a remote `tessera worker` daemon.

    For distributed builds:
    - Each remote worker is a stateless HTTP service
    - The coordinator ships the command plus its loaded dependency values
    - Workers never talk to each other; results come back to the coordinator
    - Workers report status via heartbeat
    """

    def __init__(
        self,
        worker_id: str,
        host: str,
        api_key: str,
        max_concurrent: int = 4,
        timeout: float = 30.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.worker_id = worker_id
        self.host = host.rstrip("/")
        self.api_key = api_key
        self.max_concurrent = max_concurrent
        self._timeout = timeout
        self._transport = transport
        self._status = "idle"
        self._current_load = 0
        self._last_heartbeat: datetime | None = None
        self._client: httpx.AsyncClient | None = None

    async def connect(self) -> None:
        self._client = httpx.AsyncClient(
            base_url=self.host,
            headers={"Authorization": f"Bearer {self.api_key}"},
            timeout=self._timeout,
            transport=self._transport,
        )
        # Verify connectivity
        try:
            resp = await self._client.get("/health")
            resp.raise_for_status()
            self._status = "idle"
            self._last_heartbeat = datetime.now(tz=timezone.utc)
            logger.info(f"[{self.worker_id}] Connected to {self.host}")
        except Exception as e:
            self._status = "offline"
            raise ConnectionError(f"Cannot reach worker at {self.host}: {e}")

    async def disconnect(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None
            self._status = "offline"

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, *args):
        await self.disconnect()

    async def execute(
        self,
        node: str,
        command: str,
        env: dict[str, Any] | None = None,
        dependencies: dict[str, Any] | None = None,
    ) -> ExecutionResult:
        """Execute a command on the remote worker."""
        if not self._client:
            raise RuntimeError(f"Worker {self.worker_id} not connected")

        self._current_load += 1
        self._status = "busy"

        result = ExecutionResult()
        try:
            values, modules = split_env(env or {})
            request = ExecuteRequest(
                node=node,
                command=command,
                env=encode_value(values),
                modules=modules,
                dependencies=encode_value(dependencies or {}),
            )
            resp = await self._client.post("/api/v1/execute", json=request.model_dump())
            resp.raise_for_status()
            data = ExecuteResponse.model_validate(resp.json())

            result.status = data.status
            result.error = data.error
            result.warnings = data.warnings
            result.started_at = data.started_at
            result.finished_at = data.finished_at
            result.duration_ms = data.duration_ms
            if data.value is not None:
                result.value = decode_value(data.value)

            logger.info(f"[{self.worker_id}] {node}: {result.status}")
            return result

        except httpx.HTTPStatusError as e:
            result.status = NodeState.ERRORED.value
            result.error = f"Remote worker error: {e.response.status_code} — {e.response.text}"
            return result
        except Exception as e:
            result.status = NodeState.ERRORED.value
            result.error = f"Remote worker unreachable: {e}"
            return result
        finally:
            self._current_load -= 1
            if self._current_load <= 0:
                self._current_load = 0
                self._status = "idle"

    async def heartbeat(self) -> dict:
        """Check worker health and get current status."""
        if not self._client:
            return {"status": "offline", "worker_id": self.worker_id}

        try:
            resp = await self._client.get("/health")
            resp.raise_for_status()
            data = resp.json()
            self._last_heartbeat = datetime.now(tz=timezone.utc)
            self._status = "idle" if self._current_load == 0 else "busy"
            return {
                "status": self._status,
                "worker_id": self.worker_id,
                "host": self.host,
                "version": data.get("version"),
                "last_heartbeat": self._last_heartbeat.isoformat(),
            }
        except Exception:
            self._status = "offline"
            return {"status": "offline", "worker_id": self.worker_id}

    @property
    def status(self) -> str:
        return self._status

    @property
    def current_load(self) -> int:
        return self._current_load

    @property
    def capacity(self) -> int:
        return max(0, self.max_concurrent - self._current_load)

    def info(self) -> dict:
        return {
            "worker_id": self.worker_id,
            "type": "remote",
            "host": self.host,
            "status": self._status,
            "max_concurrent": self.max_concurrent,
            "current_load": self._current_load,
            "last_heartbeat": self._last_heartbeat.isoformat() if self._last_heartbeat else None,
        }
