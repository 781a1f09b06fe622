"""Fingerprint store — decides whether a node is up to date and commits new results.

A node's fingerprint is the content hash of its value. A record stores the
fingerprints of the node's dependencies as they were when the node last ran,
so comparing them with the current ones tells whether anything upstream
changed. Values go to the result store first; the record is written last, in
one transaction, so a crash in between leaves the node stale rather than
wrongly up to date.
"""

from __future__ import annotations
import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any

from sqlalchemy.exc import SQLAlchemyError

from tessera.core.database import Database
from tessera.errors import StoreIOError
from tessera.models.fingerprint import FingerprintRecord
from tessera.pipeline.types import Cue, CueMode, NodeKind, StorageFormat
from tessera.repositories.fingerprint_repo import FingerprintRepository
from tessera.storage.hashing import combine_hashes
from tessera.storage.results import ResultStore, hash_data, serialize, stored_form

logger = logging.getLogger("tessera.storage")


def aggregate_fingerprint(children: list[tuple[str, str]]) -> str:
    """Fingerprint of a dynamic target from its ordered (branch, data hash) pairs."""
    return combine_hashes(*[f"{name}:{data_hash}" for name, data_hash in children])


class FingerprintStore:
    """Reads and writes fingerprint records and the values they describe."""

    def __init__(self, db: Database, results: ResultStore):
        self.db = db
        self.results = results
        self._lock = asyncio.Lock()

    @asynccontextmanager
    async def session(self):
        # One SQLite connection at a time; parallel nodes share this store
        async with self._lock:
            async with self.db.session() as session:
                yield session

    # ─── Reads ───

    async def get(self, name: str) -> FingerprintRecord | None:
        try:
            async with self.session() as session:
                return await FingerprintRepository(session).get(name)
        except SQLAlchemyError as e:
            raise StoreIOError(f"Cannot read record of '{name}': {e}") from e

    async def get_many(self, names: list[str]) -> dict[str, FingerprintRecord]:
        try:
            async with self.session() as session:
                return await FingerprintRepository(session).get_many(names)
        except SQLAlchemyError as e:
            raise StoreIOError(f"Cannot read records: {e}") from e

    async def list_all(self) -> list[FingerprintRecord]:
        try:
            async with self.session() as session:
                return await FingerprintRepository(session).list_all()
        except SQLAlchemyError as e:
            raise StoreIOError(f"Cannot read records: {e}") from e

    async def load(self, record: FingerprintRecord) -> Any:
        """Load the stored value a record points at."""
        if not record.is_valid or record.location is None:
            raise StoreIOError(f"'{record.name}' has no stored value")
        return await asyncio.to_thread(self.results.load, record.location, StorageFormat(record.format))

    async def data_intact(self, record: FingerprintRecord) -> bool:
        """True if the stored value still exists and hashes to the recorded data hash."""
        if record.location is None:
            return False
        fmt = StorageFormat(record.format)

        def check() -> bool:
            if not self.results.exists(record.location):
                return False
            return hash_data(self.results.load(record.location, fmt), fmt) == record.data_hash

        try:
            return await asyncio.to_thread(check)
        except StoreIOError as e:
            logger.info(f"Stored data of '{record.name}' is unreadable, treating as stale: {e}")
            return False

    async def is_up_to_date(
        self,
        name: str,
        command_hash: str,
        dependencies: dict[str, str],
        format: StorageFormat,
        cue: Cue | None = None,
        record: FingerprintRecord | None = None,
    ) -> bool:
        """Whether the node's last recorded run is still valid for the current inputs."""
        cue = cue or Cue()
        if cue.mode is CueMode.ALWAYS:
            return False

        record = record if record is not None else await self.get(name)
        if record is None or not record.is_valid:
            return False
        if cue.mode is CueMode.NEVER:
            return True

        if cue.command and record.command_hash != command_hash:
            logger.debug(f"{name}: command changed")
            return False
        if cue.depend and (record.dependencies or {}) != dependencies:
            logger.debug(f"{name}: dependencies changed")
            return False
        if cue.format and record.format != StorageFormat(format).value:
            logger.debug(f"{name}: storage format changed")
            return False
        if cue.file and record.kind != NodeKind.DYNAMIC.value and not await self.data_intact(record):
            logger.debug(f"{name}: stored data missing or modified")
            return False
        return True

    # ─── Writes ───

    async def _replace(self, **fields) -> FingerprintRecord:
        try:
            async with self.session() as session:
                return await FingerprintRepository(session).replace(**fields)
        except SQLAlchemyError as e:
            raise StoreIOError(f"Cannot write record of '{fields.get('name')}': {e}") from e

    async def commit(
        self,
        name: str,
        value: Any,
        format: StorageFormat,
        command_hash: str,
        dependencies: dict[str, str],
        build_id: str,
        kind: NodeKind = NodeKind.TARGET,
        parent: str | None = None,
        seed: int | None = None,
        duration_ms: int | None = None,
        warnings: str | None = None,
    ) -> FingerprintRecord:
        """Persist a value and its record. Raises StoreIOError on any storage failure."""
        format = StorageFormat(format)

        def save() -> tuple[str, str, int]:
            try:
                data_hash = hash_data(stored_form(value, format), format)
                size = len(serialize(value, format))
            except StoreIOError:
                raise
            except Exception as e:
                raise StoreIOError(f"Cannot serialize value of '{name}': {type(e).__name__}: {e}") from e
            location = self.results.save(name, value, format)
            return location, data_hash, size

        location, data_hash, size = await asyncio.to_thread(save)
        return await self._replace(
            name=name,
            kind=NodeKind(kind).value,
            parent=parent,
            build_id=build_id,
            command_hash=command_hash,
            dependencies=dependencies,
            data_hash=data_hash,
            format=format.value,
            location=location,
            children=None,
            seed=seed,
            bytes=size,
            duration_ms=duration_ms,
            warnings=warnings,
            error=None,
        )

    async def commit_dynamic(
        self,
        name: str,
        children: list[tuple[str, str]],
        format: StorageFormat,
        command_hash: str,
        dependencies: dict[str, str],
        build_id: str,
        seed: int | None = None,
        duration_ms: int | None = None,
    ) -> FingerprintRecord:
        """Record a dynamic target as the ordered list of its branches."""
        return await self._replace(
            name=name,
            kind=NodeKind.DYNAMIC.value,
            parent=None,
            build_id=build_id,
            command_hash=command_hash,
            dependencies=dependencies,
            data_hash=aggregate_fingerprint(children),
            format=StorageFormat(format).value,
            location=None,
            children=[child for child, _ in children],
            seed=seed,
            bytes=None,
            duration_ms=duration_ms,
            warnings=None,
            error=None,
        )

    async def record_error(
        self,
        name: str,
        error: str,
        build_id: str,
        kind: NodeKind = NodeKind.TARGET,
        parent: str | None = None,
        command_hash: str | None = None,
        dependencies: dict[str, str] | None = None,
        duration_ms: int | None = None,
        warnings: str | None = None,
    ) -> FingerprintRecord:
        """Replace a node's record with an invalid one carrying the error."""
        return await self._replace(
            name=name,
            kind=NodeKind(kind).value,
            parent=parent,
            build_id=build_id,
            command_hash=command_hash,
            dependencies=dependencies,
            data_hash=None,
            format=StorageFormat.PICKLE.value,
            location=None,
            children=None,
            seed=None,
            bytes=None,
            duration_ms=duration_ms,
            warnings=warnings,
            error=error,
        )

    async def forget(self, names: list[str]) -> int:
        """Delete records and stored values, making the nodes stale."""
        records = await self.get_many(names)
        for record in records.values():
            if record.location:
                await asyncio.to_thread(self.results.delete, record.location)
        try:
            async with self.session() as session:
                return await FingerprintRepository(session).delete(names)
        except SQLAlchemyError as e:
            raise StoreIOError(f"Cannot delete records: {e}") from e
