"""Load pipeline declarations from files."""

from __future__ import annotations

import importlib.util
import logging
import sys
from pathlib import Path
from typing import Any

from tessera.errors import DeclarationError
from tessera.pipeline.declarations import Pipeline, clear_registry, get_registry

logger = logging.getLogger("tessera.pipeline")


def load_pipeline_from_file(file_path: str | Path) -> tuple[Pipeline, dict[str, Any]]:
    """Execute a pipeline file and return its targets plus its module namespace.

    Targets come from every ``Pipeline`` object bound in the file and from
    module-level ``target()`` calls. The namespace is the environment whose
    public globals are tracked as imports.
    """
    file_path = Path(file_path)
    if not file_path.exists():
        raise FileNotFoundError(f"Pipeline file not found: {file_path}")

    clear_registry()

    # The module stays registered so values of classes it defines can be unpickled later
    module_name = f"tessera_pipeline_{file_path.stem}"
    spec = importlib.util.spec_from_file_location(module_name, file_path)
    if spec is None or spec.loader is None:
        raise ImportError(f"Cannot load module from {file_path}")

    module = importlib.util.module_from_spec(spec)
    sys.modules[module_name] = module
    try:
        spec.loader.exec_module(module)
        registered = list(get_registry().values())
    finally:
        clear_registry()

    env = dict(vars(module))
    pipeline = Pipeline()
    seen: set[int] = set()
    for value in env.values():
        if isinstance(value, Pipeline):
            for t in value:
                if id(t) not in seen:
                    pipeline.add(t)
                    seen.add(id(t))
    for t in registered:
        if id(t) not in seen:
            pipeline.add(t)
            seen.add(id(t))

    if not len(pipeline):
        raise DeclarationError(f"No targets declared in {file_path}")

    logger.info(f"Loaded {len(pipeline)} targets from {file_path}")
    return pipeline, env
