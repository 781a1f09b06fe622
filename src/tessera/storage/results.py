"""Result store — opaque per-node persistence of returned values.

Layout of the file store::

    <root>/objects/<node>       # one file per target or branch
    <root>/tmp/                 # staging area for atomic writes

Every write goes to a temp file first and is moved into place with
``os.replace``, so a crash never leaves a half-written object behind.
"""

from __future__ import annotations
import json
import os
import pickle
import time
from pathlib import Path
from typing import Any, Protocol

from tessera.errors import StoreIOError
from tessera.pipeline.types import StorageFormat
from tessera.storage.hashing import hash_files, hash_value


class ResultStore(Protocol):
    """Anything that can save and load node values by opaque location."""
    def save(self, node: str, value: Any, format: StorageFormat) -> str: ...
    def load(self, location: str, format: StorageFormat) -> Any: ...
    def exists(self, location: str) -> bool: ...
    def delete(self, location: str) -> None: ...


def file_paths(value: Any) -> list[str]:
    """Normalize the value of a file-format target to a list of paths."""
    if isinstance(value, (str, os.PathLike)):
        return [os.fspath(value)]
    if isinstance(value, (list, tuple)) and all(isinstance(p, (str, os.PathLike)) for p in value):
        return [os.fspath(p) for p in value]
    raise StoreIOError(f"A file-format target must return a path or list of paths, got {type(value).__name__}")


def hash_data(value: Any, format: StorageFormat) -> str:
    """Format-appropriate content hash of a node's value."""
    if format is StorageFormat.FILE:
        paths = file_paths(value)
        try:
            return hash_files(paths)
        except OSError as e:
            raise StoreIOError(f"Cannot hash output file: {e}") from e
    return hash_value(value)


def stored_form(value: Any, format: StorageFormat) -> Any:
    """The value as a later load returns it (JSON turns tuples into lists, keys into strings)."""
    format = StorageFormat(format)
    if format is StorageFormat.PICKLE:
        return value
    try:
        return deserialize(serialize(value, format), format)
    except StoreIOError:
        raise
    except (TypeError, ValueError) as e:
        raise StoreIOError(f"Value cannot be stored as {format.value}: {e}") from e


def serialize(value: Any, format: StorageFormat) -> bytes:
    if format is StorageFormat.PICKLE:
        return pickle.dumps(value, protocol=pickle.HIGHEST_PROTOCOL)
    if format is StorageFormat.JSON:
        return json.dumps(value, ensure_ascii=False).encode("utf-8")
    if format is StorageFormat.FILE:
        return json.dumps(file_paths(value)).encode("utf-8")
    raise ValueError(f"Unknown storage format: {format}")


def deserialize(data: bytes, format: StorageFormat) -> Any:
    if format is StorageFormat.PICKLE:
        return pickle.loads(data)
    if format in (StorageFormat.JSON, StorageFormat.FILE):
        return json.loads(data.decode("utf-8"))
    raise ValueError(f"Unknown storage format: {format}")


class FileResultStore:
    """Stores each node's value as a file under ``<root>/objects``."""

    def __init__(self, root: str | Path):
        self.root = Path(root)

    def _path(self, location: str) -> Path:
        return self.root / location

    def _atomic_write_bytes(self, path: Path, data: bytes) -> None:
        tmp_dir = self.root / "tmp"
        tmp_dir.mkdir(parents=True, exist_ok=True)
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = tmp_dir / f"{path.name}.tmp-{time.time_ns()}"
        with open(tmp, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def save(self, node: str, value: Any, format: StorageFormat) -> str:
        location = f"objects/{node}"
        try:
            self._atomic_write_bytes(self._path(location), serialize(value, format))
        except (OSError, pickle.PicklingError, AttributeError, TypeError, ValueError) as e:
            raise StoreIOError(f"Cannot save '{node}': {e}") from e
        return location

    def load(self, location: str, format: StorageFormat) -> Any:
        try:
            return deserialize(self._path(location).read_bytes(), format)
        except (OSError, pickle.UnpicklingError, EOFError, ValueError) as e:
            raise StoreIOError(f"Cannot load '{location}': {e}") from e

    def exists(self, location: str) -> bool:
        return self._path(location).is_file()

    def delete(self, location: str) -> None:
        self._path(location).unlink(missing_ok=True)


class MemoryResultStore:
    """In-process store; values are kept serialized so loads return copies."""

    def __init__(self):
        self._objects: dict[str, tuple[bytes, StorageFormat]] = {}

    def save(self, node: str, value: Any, format: StorageFormat) -> str:
        try:
            self._objects[node] = (serialize(value, format), format)
        except (pickle.PicklingError, AttributeError, TypeError, ValueError) as e:
            raise StoreIOError(f"Cannot save '{node}': {e}") from e
        return node

    def load(self, location: str, format: StorageFormat) -> Any:
        if location not in self._objects:
            raise StoreIOError(f"Cannot load '{location}': not found")
        data, _ = self._objects[location]
        return deserialize(data, format)

    def exists(self, location: str) -> bool:
        return location in self._objects

    def delete(self, location: str) -> None:
        self._objects.pop(location, None)
