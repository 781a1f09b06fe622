"""Shared test fixtures for Tessera tests."""

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport

from tessera.core.config import BuildConfig, TesseraSettings
from tessera.core.database import Database
from tessera.daemon.main import create_app
from tessera.dag.builder import build_graph
from tessera.dag.runner import DAGRunner
from tessera.storage.fingerprints import FingerprintStore
from tessera.storage.results import FileResultStore, MemoryResultStore


@pytest_asyncio.fixture(scope="function")
async def db():
    """Fresh in-memory SQLite database per test."""
    database = Database("sqlite+aiosqlite://")
    await database.create_tables()
    yield database
    await database.drop_tables()
    await database.dispose()


@pytest.fixture
def memory_results():
    return MemoryResultStore()


@pytest.fixture
def file_results(tmp_path):
    return FileResultStore(tmp_path / "store")


@pytest_asyncio.fixture(scope="function")
async def store(db, memory_results) -> FingerprintStore:
    return FingerprintStore(db, memory_results)


@pytest_asyncio.fixture(scope="function")
async def file_store(db, file_results) -> FingerprintStore:
    return FingerprintStore(db, file_results)


@pytest.fixture
def make_runner(store):
    """Build a runner over the shared store from a list of targets."""
    def _make(targets, env=None, config=None, **kwargs):
        config = config or BuildConfig(max_workers=2)
        graph = build_graph(targets, env=env, config=config)
        return DAGRunner(graph, kwargs.pop("store", store), config=config, **kwargs)
    return _make


# ─── Worker daemon ───


@pytest.fixture
def settings(tmp_path):
    return TesseraSettings(store_dir=str(tmp_path / ".tessera"), api_key="test_key", max_workers=2)


@pytest.fixture
def app(settings):
    return create_app(settings)


@pytest_asyncio.fixture(scope="function")
async def client(app):
    """Async HTTP client pointed at the worker daemon."""
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport,
        base_url="http://test",
        headers={"Authorization": "Bearer test_key"},
    ) as c:
        yield c


@pytest_asyncio.fixture(scope="function")
async def unauthed_client(app):
    """Async HTTP client without auth."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as c:
        yield c




# ─── Sample pipeline files ───

SCENARIO_PIPELINE_CODE = '''
from tessera import target

OFFSET = 1


def scale(value):
    return value * 10


target("x", "2")
target("y", "x + OFFSET")
target("fixed", "[3, 7]")
target("cycling", "[9, 2]")
target("pairs", "[{'fixed': fixed[0], 'cycling': cycling[0]}]", pattern="map(fixed, cycling)")
target("scaled", "scale(fixed[0])", pattern="fixed")
target("total", "sum(scaled)")
'''

EXPLICIT_PIPELINE_CODE = '''
from tessera import Pipeline, Target

pipeline = Pipeline([
    Target("a", "1"),
    Target("b", "a * 2"),
])
'''

FAILING_PIPELINE_CODE = '''
from tessera import target

target("ok", "1")
target("broken", "raise ValueError('Intentional failure')")
target("after", "broken + ok")
'''


@pytest.fixture
def scenario_file(tmp_path):
    path = tmp_path / "scenario_pipeline.py"
    path.write_text(SCENARIO_PIPELINE_CODE)
    return path


@pytest.fixture
def explicit_file(tmp_path):
    path = tmp_path / "explicit_pipeline.py"
    path.write_text(EXPLICIT_PIPELINE_CODE)
    return path


@pytest.fixture
def failing_file(tmp_path):
    path = tmp_path / "failing_pipeline.py"
    path.write_text(FAILING_PIPELINE_CODE)
    return path
