"""Tests for the build service: builds against a file-backed store, reads and inspection."""

import pytest
import pytest_asyncio

from tessera.core.config import BuildConfig
from tessera.services.build_service import BuildService


@pytest_asyncio.fixture
async def built(scenario_file, settings):
    """Scenario pipeline built once into a store under tmp_path."""
    async with BuildService.from_file(scenario_file, settings=settings) as service:
        result = await service.make()
        assert result.status == "success"
        yield service


class TestMake:
    @pytest.mark.asyncio
    async def test_scenario_values(self, built):
        assert await built.read_target("y") == 3
        assert await built.read_target("total") == 100

    @pytest.mark.asyncio
    async def test_rebuild_from_fresh_service_is_up_to_date(self, built, scenario_file, settings):
        async with BuildService.from_file(scenario_file, settings=settings) as again:
            result = await again.make()
            assert result.ran == []
            assert await again.outdated() == []

    @pytest.mark.asyncio
    async def test_changed_file_rebuilds_only_dependents(self, built, scenario_file, settings):
        scenario_file.write_text(scenario_file.read_text().replace('target("x", "2")', 'target("x", "5")'))
        async with BuildService.from_file(scenario_file, settings=settings) as again:
            assert await again.outdated() == ["x", "y"]
            result = await again.make()
            assert result.ran == ["x", "y"]
            assert await again.read_target("y") == 6

    @pytest.mark.asyncio
    async def test_config_from_settings(self, scenario_file, settings):
        service = BuildService.from_file(scenario_file, settings=settings)
        assert service.config == BuildConfig.from_settings(settings)
        assert service.config.max_workers == 2


class TestReads:
    @pytest.mark.asyncio
    async def test_dynamic_target_combined(self, built):
        assert await built.read_target("pairs") == [
            {"fixed": 3, "cycling": 9},
            {"fixed": 7, "cycling": 2},
        ]

    @pytest.mark.asyncio
    async def test_branch_by_ordinal_and_name_agree(self, built):
        names = await built.branches("pairs")
        assert len(names) == 2
        for i, name in enumerate(names):
            assert await built.read_target("pairs", branch=i) == await built.read_target("pairs", branch=name)
        assert await built.read_target("pairs", branch=1) == [{"fixed": 7, "cycling": 2}]

    @pytest.mark.asyncio
    async def test_branch_ordinal_out_of_range(self, built):
        with pytest.raises(KeyError):
            await built.read_target("pairs", branch=2)

    @pytest.mark.asyncio
    async def test_unknown_branch_name(self, built):
        with pytest.raises(KeyError):
            await built.read_target("pairs", branch="pairs_0000000000000000")

    @pytest.mark.asyncio
    async def test_branch_of_static_target(self, built):
        with pytest.raises(KeyError):
            await built.read_target("y", branch=0)

    @pytest.mark.asyncio
    async def test_unbuilt_target(self, built):
        with pytest.raises(KeyError):
            await built.read_target("nope")

    @pytest.mark.asyncio
    async def test_branches_of_static_target(self, built):
        with pytest.raises(KeyError):
            await built.branches("y")


class TestInspection:
    @pytest.mark.asyncio
    async def test_meta_includes_branches(self, built):
        records = await built.meta(["pairs"])
        kinds = sorted(r["kind"] for r in records)
        assert kinds == ["branch", "branch", "dynamic"]
        assert all(r["error"] is None for r in records)

    @pytest.mark.asyncio
    async def test_progress_of_latest_build(self, built):
        rows = await built.progress()
        names = {r["name"] for r in rows}
        assert {"x", "y", "pairs", "total"} <= names
        assert "OFFSET" not in names
        assert all(r["state"] == "done" for r in rows)

    @pytest.mark.asyncio
    async def test_progress_of_unknown_build(self, built):
        assert await built.progress("no-such-build") == []

    @pytest.mark.asyncio
    async def test_forget(self, built):
        assert await built.forget(["y"]) == 1
        assert await built.outdated() == ["y"]
