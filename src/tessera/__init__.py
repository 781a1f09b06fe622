"""Tessera — incremental pipeline engine with dynamic branching."""

__version__ = "0.1.0"

from tessera.pipeline.types import Cue, IterationMode, StorageFormat, Target
from tessera.pipeline.declarations import Pipeline, target
from tessera.pipeline.loader import load_pipeline_from_file
from tessera.dag.patterns import cross, head, map_, sample, slice_, tail
from tessera.dag.aggregator import group_by
from tessera.dag.builder import build_graph
from tessera.dag.runner import BuildResult, DAGRunner
from tessera.services.build_service import BuildService

__all__ = [
    "Cue",
    "IterationMode",
    "StorageFormat",
    "Target",
    "Pipeline",
    "target",
    "load_pipeline_from_file",
    "cross",
    "head",
    "map_",
    "sample",
    "slice_",
    "tail",
    "group_by",
    "build_graph",
    "BuildResult",
    "DAGRunner",
    "BuildService",
    "__version__",
]
