"""Worker pool — local threads or remote worker daemons."""

from tessera.workers.pool import WorkerPool
from tessera.workers.local import LocalWorker
from tessera.workers.remote import RemoteWorker

__all__ = ["WorkerPool", "LocalWorker", "RemoteWorker"]
