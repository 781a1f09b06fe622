"""Tests for worker pool, local workers, and remote workers."""

import asyncio
import math

import httpx
import pytest

from tessera.daemon.main import create_app
from tessera.workers.local import LocalWorker
from tessera.workers.pool import WorkerPool
from tessera.workers.remote import RemoteWorker


SLOW_COMMAND = """
import time
time.sleep(0.2)
x
"""


# ─── Local Worker ───

class TestLocalWorker:
    @pytest.mark.asyncio
    async def test_init(self):
        w = LocalWorker(worker_id="test-0", max_concurrent=2)
        assert w.worker_id == "test-0"
        assert w.max_concurrent == 2
        assert w.status == "idle"
        assert w.current_load == 0
        assert w.capacity == 2

    @pytest.mark.asyncio
    async def test_execute_simple(self):
        w = LocalWorker(max_concurrent=2)
        result = await w.execute("y", "x + 1", dependencies={"x": 41})
        assert result.ok
        assert result.value == 42

    @pytest.mark.asyncio
    async def test_execute_failure(self):
        w = LocalWorker()
        result = await w.execute("fail", "raise ValueError('boom')")
        assert result.status == "errored"
        assert "boom" in result.error

    @pytest.mark.asyncio
    async def test_concurrency_limit(self):
        w = LocalWorker(max_concurrent=2)
        peak = 0

        async def watch():
            nonlocal peak
            for _ in range(40):
                peak = max(peak, w.current_load)
                await asyncio.sleep(0.01)

        runs = [w.execute(f"n{i}", SLOW_COMMAND, dependencies={"x": i}) for i in range(4)]
        results, _ = await asyncio.gather(asyncio.gather(*runs), watch())
        assert [r.value for r in results] == [0, 1, 2, 3]
        assert peak == 2

    @pytest.mark.asyncio
    async def test_info(self):
        info = LocalWorker(worker_id="w").info()
        assert info["type"] == "local"
        assert info["active"] == []


# ─── Worker Pool ───

class TestWorkerPool:
    @pytest.mark.asyncio
    async def test_local_pool(self):
        pool = WorkerPool.local(max_concurrent=3)
        assert pool.max_concurrent == 3
        assert pool.total_capacity == 3
        result = await pool.dispatch("t", "2 * 21")
        assert result.value == 42

    @pytest.mark.asyncio
    async def test_saturated_pool_queues(self):
        pool = WorkerPool.local(max_concurrent=1)
        runs = [pool.dispatch(f"n{i}", SLOW_COMMAND, dependencies={"x": i}) for i in range(3)]
        results = await asyncio.gather(*runs)
        assert all(r.ok for r in results)

    @pytest.mark.asyncio
    async def test_empty_pool(self):
        result = await WorkerPool().dispatch("t", "1")
        assert result.status == "errored"
        assert "No workers available" in result.error

    @pytest.mark.asyncio
    async def test_info(self):
        pool = WorkerPool.local(max_concurrent=2)
        pool.add_remote("r", "http://nowhere:8500", api_key="k")
        info = pool.info()
        assert info["local_count"] == 1
        assert info["remote_count"] == 1


# ─── Remote Worker ───

@pytest.fixture
def remote_transport(settings):
    return httpx.ASGITransport(app=create_app(settings))


class TestRemoteWorker:
    @pytest.mark.asyncio
    async def test_execute_round_trip(self, remote_transport):
        async with RemoteWorker("r", "http://worker", api_key="test_key", transport=remote_transport) as w:
            result = await w.execute("y", "x + 1", dependencies={"x": 1})
        assert result.ok
        assert result.value == 2
        assert result.duration_ms is not None

    @pytest.mark.asyncio
    async def test_modules_sent_by_name(self, remote_transport):
        async with RemoteWorker("r", "http://worker", api_key="test_key", transport=remote_transport) as w:
            result = await w.execute("t", "m.floor(x)", env={"m": math}, dependencies={"x": 2.7})
        assert result.value == 2

    @pytest.mark.asyncio
    async def test_command_failure(self, remote_transport):
        async with RemoteWorker("r", "http://worker", api_key="test_key", transport=remote_transport) as w:
            result = await w.execute("t", "1 / 0")
        assert result.status == "errored"
        assert "ZeroDivisionError" in result.error

    @pytest.mark.asyncio
    async def test_bad_api_key(self, remote_transport):
        async with RemoteWorker("r", "http://worker", api_key="wrong", transport=remote_transport) as w:
            result = await w.execute("t", "1")
        assert result.status == "errored"
        assert "401" in result.error

    @pytest.mark.asyncio
    async def test_not_connected(self):
        w = RemoteWorker("r", "http://worker", api_key="k")
        with pytest.raises(RuntimeError):
            await w.execute("t", "1")

    @pytest.mark.asyncio
    async def test_heartbeat(self, remote_transport):
        async with RemoteWorker("r", "http://worker", api_key="test_key", transport=remote_transport) as w:
            beat = await w.heartbeat()
        assert beat["status"] == "idle"
        assert beat["version"]
        assert w.status == "offline"

    @pytest.mark.asyncio
    async def test_pool_dispatches_to_remote(self, remote_transport):
        pool = WorkerPool()
        pool.add_remote("r", "http://worker", api_key="test_key", transport=remote_transport)
        await pool.connect_remotes()
        try:
            result = await pool.dispatch("t", "x * 3", dependencies={"x": 5}, prefer_local=False)
        finally:
            await pool.disconnect_remotes()
        assert result.value == 15
