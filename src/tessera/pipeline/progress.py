"""ProgressTracker — per-node state, timing and messages for one build."""

from __future__ import annotations
import logging
from collections import Counter
from datetime import datetime, timezone
from dataclasses import dataclass, field
from typing import Callable

from tessera.pipeline.types import NodeKind, NodeState

logger = logging.getLogger("tessera.progress")

TERMINAL_STATES = (NodeState.DONE, NodeState.ERRORED)

# Any node that has not finished may also become errored
TRANSITIONS: dict[NodeState, set[NodeState]] = {
    NodeState.PENDING: {NodeState.STALE, NodeState.UP_TO_DATE},
    NodeState.STALE: {NodeState.EXPANDING, NodeState.READY},
    NodeState.UP_TO_DATE: {NodeState.DONE},
    NodeState.EXPANDING: {NodeState.DONE},
    NodeState.READY: {NodeState.RUNNING},
    NodeState.RUNNING: {NodeState.DONE},
    NodeState.DONE: set(),
    NodeState.ERRORED: set(),
}


def is_legal(current: NodeState, new: NodeState) -> bool:
    if current in TERMINAL_STATES:
        return False
    return new is NodeState.ERRORED or new in TRANSITIONS[current]


@dataclass
class NodeTrace:
    name: str
    kind: NodeKind = NodeKind.TARGET
    parent: str | None = None
    state: NodeState = NodeState.PENDING
    tag: str | None = None
    ran: bool = False
    started_at: datetime | None = None
    finished_at: datetime | None = None
    elapsed_ms: int | None = None
    error: str | None = None
    warnings: list[str] = field(default_factory=list)

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "parent": self.parent,
            "state": self.state.value,
            "tag": self.tag,
            "ran": self.ran,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "elapsed_ms": self.elapsed_ms,
            "error": self.error,
            "warnings": self.warnings,
        }


class ProgressTracker:
    """Observable state machine of every node in a build.

    Subscribers are called with the node's trace after every transition.
    """

    def __init__(self, build_id: str):
        self.build_id = build_id
        self._traces: dict[str, NodeTrace] = {}
        self._subscribers: list[Callable[[NodeTrace], None]] = []

    def subscribe(self, callback: Callable[[NodeTrace], None]) -> None:
        self._subscribers.append(callback)

    def register(self, name: str, kind: NodeKind, parent: str | None = None) -> NodeTrace:
        trace = self._traces.get(name)
        if trace is None:
            trace = NodeTrace(name=name, kind=kind, parent=parent)
            self._traces[name] = trace
        return trace

    def transition(
        self,
        name: str,
        state: NodeState,
        tag: str | None = None,
        error: str | None = None,
        warnings: list[str] | None = None,
    ) -> NodeTrace:
        trace = self._traces[name]
        if not is_legal(trace.state, state):
            logger.warning(f"{name}: illegal transition {trace.state.value} -> {state.value}")
        now = datetime.now(tz=timezone.utc)
        trace.state = state
        if state is NodeState.RUNNING:
            trace.started_at = now
            trace.ran = True
        if state in TERMINAL_STATES:
            trace.finished_at = now
            if trace.started_at:
                trace.elapsed_ms = int((now - trace.started_at).total_seconds() * 1000)
        if tag is not None:
            trace.tag = tag
        if error is not None:
            trace.error = error
        if warnings:
            trace.warnings.extend(warnings)

        logger.debug(f"{name}: {state.value}" + (f" ({tag})" if tag else ""))
        for callback in self._subscribers:
            callback(trace)
        return trace

    def get(self, name: str) -> NodeTrace:
        return self._traces[name]

    def state(self, name: str) -> NodeState:
        return self._traces[name].state

    def __contains__(self, name: str) -> bool:
        return name in self._traces

    def traces(self) -> list[NodeTrace]:
        return list(self._traces.values())

    def counts(self) -> dict[str, int]:
        return dict(Counter(t.state.value for t in self._traces.values()))

    def snapshot(self) -> list[dict]:
        return [t.to_dict() for t in self._traces.values()]

    def to_rows(self) -> list[dict]:
        """Rows for the node_progress table."""
        return [
            {
                "build_id": self.build_id,
                "name": t.name,
                "kind": t.kind.value,
                "parent": t.parent,
                "state": t.state.value,
                "tag": t.tag,
                "ran": int(t.ran),
                "started_at": t.started_at,
                "finished_at": t.finished_at,
                "elapsed_ms": t.elapsed_ms,
                "error": t.error,
                "warnings": "\n".join(t.warnings) or None,
            }
            for t in self._traces.values()
            if t.kind is not NodeKind.IMPORT
        ]
