"""DAG dependency resolution, branch expansion and execution."""

from tessera.dag.resolver import DAGResolver
from tessera.dag.builder import PipelineGraph, build_graph
from tessera.dag.runner import BuildResult, DAGRunner

__all__ = ["DAGResolver", "PipelineGraph", "build_graph", "BuildResult", "DAGRunner"]
