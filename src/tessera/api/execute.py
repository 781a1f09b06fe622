"""Execute API endpoints — run one node's command on this worker."""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from tessera.core.auth import verify_api_key
from tessera.pipeline.types import NodeState
from tessera.schemas.execute import (
    ExecuteRequest,
    ExecuteResponse,
    decode_value,
    encode_value,
    import_modules,
)

logger = logging.getLogger("tessera.api")

router = APIRouter(tags=["execute"])


@router.post("/execute", response_model=ExecuteResponse)
async def execute(
    data: ExecuteRequest,
    request: Request,
    _: str = Depends(verify_api_key),
):
    """Run a command against the shipped dependency values and return its value."""
    worker = request.app.state.worker
    try:
        env = decode_value(data.env)
        env.update(import_modules(data.modules))
        dependencies = decode_value(data.dependencies)
    except Exception as e:
        raise HTTPException(400, f"Cannot decode payload of {data.node}: {type(e).__name__}: {e}")

    result = await worker.execute(data.node, data.command, env=env, dependencies=dependencies)

    value = None
    if result.ok:
        try:
            value = encode_value(result.value)
        except Exception as e:
            result.status = NodeState.ERRORED.value
            result.error = f"Cannot send value of {data.node}: {type(e).__name__}: {e}"

    return ExecuteResponse(
        node=data.node,
        status=result.status,
        value=value,
        error=result.error,
        warnings=result.warnings,
        started_at=result.started_at,
        finished_at=result.finished_at,
        duration_ms=result.duration_ms,
    )


@router.get("/worker")
async def worker_info(request: Request, _: str = Depends(verify_api_key)):
    """Load and capacity of this worker."""
    return request.app.state.worker.info()
