"""Content hashing — canonical serialization so equal values hash equally."""

from __future__ import annotations
import dataclasses
import hashlib
import inspect
import json
import math
import pickle
from enum import Enum
from pathlib import Path
from typing import Any

CHUNK = 1024 * 1024 * 8  # 8MB streaming chunks


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path) -> str:
    """Stream a file and return its hex digest."""
    h = hashlib.sha256()
    with open(path, "rb") as f:
        while True:
            b = f.read(CHUNK)
            if not b:
                break
            h.update(b)
    return h.hexdigest()


def canonical_json(obj) -> bytes:
    """Canonical JSON: UTF-8, sorted keys, no whitespace."""
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def combine_hashes(*ids: str) -> str:
    """Combine several digests deterministically."""
    return sha256_bytes("|".join(ids).encode("utf-8"))


def _encode(value: Any, seen: set[int]) -> Any:
    """Map a value onto a tagged, JSON-serializable tree that ignores identity."""
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return ["int", str(value)]
    if isinstance(value, float):
        if math.isnan(value):
            return ["float", "nan"]
        return ["float", repr(value)]
    if isinstance(value, (bytes, bytearray)):
        return ["bytes", bytes(value).hex()]
    if isinstance(value, Enum):
        return ["enum", type(value).__qualname__, _encode(value.value, seen)]
    if isinstance(value, Path):
        return ["path", value.as_posix()]

    if id(value) in seen:
        raise ValueError("Cannot hash a self-referencing value")
    seen = seen | {id(value)}

    if isinstance(value, (list, tuple)):
        tag = "list" if isinstance(value, list) else "tuple"
        return [tag, [_encode(v, seen) for v in value]]
    if isinstance(value, dict):
        items = [[_encode(k, seen), _encode(v, seen)] for k, v in value.items()]
        items.sort(key=lambda kv: canonical_json(kv[0]))
        return ["dict", items]
    if isinstance(value, (set, frozenset)):
        members = sorted((_encode(v, seen) for v in value), key=canonical_json)
        return ["set", members]
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        fields = {f.name: _encode(getattr(value, f.name), seen) for f in dataclasses.fields(value)}
        return ["dataclass", _qualname(value), fields]
    if hasattr(value, "model_dump"):
        return ["model", _qualname(value), _encode(value.model_dump(), seen)]
    if inspect.isfunction(value) or inspect.isclass(value) or inspect.ismethod(value):
        return ["code", _qualname(value), function_source(value)]
    if hasattr(value, "__dict__") and not inspect.ismodule(value):
        return ["object", _qualname(value), _encode(vars(value), seen)]
    return ["pickle", pickle.dumps(value, protocol=4).hex()]


def _qualname(value: Any) -> str:
    cls = value if isinstance(value, type) else type(value)
    return f"{cls.__module__}.{cls.__qualname__}"


def function_source(func: Any) -> str:
    """Source text of a function or class, falling back to its bytecode."""
    try:
        return inspect.getsource(func)
    except (OSError, TypeError):
        code = getattr(func, "__code__", None)
        if code is not None:
            return code.co_code.hex() + repr(code.co_consts)
        return repr(func)


def canonical_bytes(value: Any) -> bytes:
    return canonical_json(_encode(value, set()))


def hash_value(value: Any) -> str:
    """Hash a value by content, not by identity."""
    return sha256_bytes(canonical_bytes(value))


def hash_text(text: str) -> str:
    return sha256_bytes(text.encode("utf-8"))


def hash_files(paths: list[str]) -> str:
    """Hash the contents of files together with their paths."""
    pairs = [[Path(p).as_posix(), sha256_file(Path(p))] for p in paths]
    return sha256_bytes(canonical_json(pairs))
