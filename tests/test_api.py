"""Tests for the worker daemon endpoints."""

import pytest
from httpx import AsyncClient, ASGITransport

from tessera.schemas.execute import ExecuteRequest, decode_value, encode_value


class TestHealth:
    @pytest.mark.asyncio
    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert "version" in data
        assert data["worker"]["max_concurrent"] == 2


class TestAuth:
    @pytest.mark.asyncio
    async def test_no_auth_rejected(self, unauthed_client):
        resp = await unauthed_client.get("/api/v1/worker")
        assert resp.status_code in (401, 403)

    @pytest.mark.asyncio
    async def test_bad_auth_rejected(self, app):
        transport = ASGITransport(app=app)
        async with AsyncClient(
            transport=transport,
            base_url="http://test",
            headers={"Authorization": "Bearer wrong_key"},
        ) as c:
            resp = await c.get("/api/v1/worker")
            assert resp.status_code == 401

    @pytest.mark.asyncio
    async def test_valid_auth(self, client):
        resp = await client.get("/api/v1/worker")
        assert resp.status_code == 200
        assert resp.json()["type"] == "local"


class TestExecute:
    @pytest.mark.asyncio
    async def test_execute_success(self, client):
        request = ExecuteRequest(
            node="y",
            command="helper(x)",
            env=encode_value({"helper": abs}),
            dependencies=encode_value({"x": -3}),
        )
        resp = await client.post("/api/v1/execute", json=request.model_dump())
        assert resp.status_code == 200
        data = resp.json()
        assert data["node"] == "y"
        assert data["status"] == "done"
        assert decode_value(data["value"]) == 3

    @pytest.mark.asyncio
    async def test_execute_failure(self, client):
        request = ExecuteRequest(node="t", command="raise ValueError('Intentional failure')")
        resp = await client.post("/api/v1/execute", json=request.model_dump())
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "errored"
        assert data["value"] is None
        assert "Intentional failure" in data["error"]

    @pytest.mark.asyncio
    async def test_unpicklable_result(self, client):
        request = ExecuteRequest(node="t", command="(lambda: 1)")
        resp = await client.post("/api/v1/execute", json=request.model_dump())
        data = resp.json()
        assert data["status"] == "errored"
        assert "Cannot send value" in data["error"]

    @pytest.mark.asyncio
    async def test_undecodable_payload(self, client):
        resp = await client.post(
            "/api/v1/execute",
            json={"node": "t", "command": "1", "dependencies": "not-a-pickle"},
        )
        assert resp.status_code == 400

    @pytest.mark.asyncio
    async def test_unknown_module(self, client):
        request = ExecuteRequest(node="t", command="1", modules={"m": "no_such_module_here"})
        resp = await client.post("/api/v1/execute", json=request.model_dump())
        assert resp.status_code == 400
