"""Pydantic schemas for remote command execution.

Values travel as base64-encoded pickles, so the worker must be able to
import whatever the pickled globals and values reference.
"""

import base64
import importlib
import pickle
import types
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


def encode_value(value: Any) -> str:
    return base64.b64encode(pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)).decode("ascii")


def decode_value(data: str) -> Any:
    return pickle.loads(base64.b64decode(data.encode("ascii")))


def split_env(env: dict[str, Any]) -> tuple[dict[str, Any], dict[str, str]]:
    """Separate module globals (sent by import name) from picklable values."""
    values, modules = {}, {}
    for name, value in env.items():
        if isinstance(value, types.ModuleType):
            modules[name] = value.__name__
        else:
            values[name] = value
    return values, modules


def import_modules(modules: dict[str, str]) -> dict[str, Any]:
    return {alias: importlib.import_module(module) for alias, module in modules.items()}


class ExecuteRequest(BaseModel):
    node: str
    command: str
    env: str = Field(default_factory=lambda: encode_value({}))
    modules: dict[str, str] = Field(default_factory=dict)  # alias → importable module
    dependencies: str = Field(default_factory=lambda: encode_value({}))


class ExecuteResponse(BaseModel):
    node: str
    status: str
    value: str | None = None
    error: str | None = None
    warnings: list[str] = Field(default_factory=list)
    started_at: datetime | None = None
    finished_at: datetime | None = None
    duration_ms: int | None = None
