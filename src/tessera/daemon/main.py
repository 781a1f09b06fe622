"""Tessera worker daemon — FastAPI app that runs node commands for a remote coordinator."""

import logging
import uvicorn
from contextlib import asynccontextmanager
from fastapi import FastAPI

from tessera import __version__
from tessera.core.config import TesseraSettings, get_settings
from tessera.api.router import api_router
from tessera.workers.local import LocalWorker

logger = logging.getLogger("tessera")


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown."""
    worker = app.state.worker
    logger.info(f"Worker {worker.worker_id} ready (max_concurrent={worker.max_concurrent})")
    yield
    logger.info("Tessera worker stopped")


def create_app(settings: TesseraSettings | None = None) -> FastAPI:
    settings = settings or get_settings()
    app = FastAPI(
        title="Tessera Worker",
        description="Stateless command executor for distributed Tessera builds",
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings
    app.state.worker = LocalWorker(worker_id=f"{settings.host}:{settings.port}", max_concurrent=settings.max_workers)

    app.include_router(api_router)

    @app.get("/health")
    async def health():
        return {
            "status": "ok",
            "version": __version__,
            "worker": app.state.worker.info(),
        }

    return app


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s | %(name)s | %(levelname)s | %(message)s",
        datefmt="%H:%M:%S",
    )


def serve(host: str | None = None, port: int | None = None, settings: TesseraSettings | None = None) -> None:
    settings = settings or get_settings()
    host = host or settings.host
    port = port or settings.port
    logger.info(f"Starting Tessera worker v{__version__} on {host}:{port}")
    app = create_app(settings)
    uvicorn.run(app, host=host, port=port, log_level=settings.log_level)


def main():
    """Entry point for `tessera-worker` command."""
    import sys

    settings = get_settings()
    configure_logging(settings.log_level)

    host = settings.host
    port = settings.port

    # Parse CLI args (simple, no dep on typer for daemon)
    args = sys.argv[1:]
    for i, arg in enumerate(args):
        if arg == "--port" and i + 1 < len(args):
            port = int(args[i + 1])
        if arg == "--host" and i + 1 < len(args):
            host = args[i + 1]

    serve(host, port, settings)


if __name__ == "__main__":
    main()
