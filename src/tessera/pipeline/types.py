"""Pipeline types and enums."""

from __future__ import annotations

import keyword
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from tessera.errors import DeclarationError

if TYPE_CHECKING:
    from tessera.dag.patterns import Pattern


class IterationMode(str, Enum):
    VECTOR = "vector"   # slice/concatenate, homogeneous
    LIST = "list"       # index/collect, heterogeneous-safe
    GROUP = "group"     # one slice per precomputed row group


class StorageFormat(str, Enum):
    PICKLE = "pickle"
    JSON = "json"
    FILE = "file"       # value is a path (or list of paths); files are hashed


class CueMode(str, Enum):
    THOROUGH = "thorough"
    ALWAYS = "always"
    NEVER = "never"


class NodeKind(str, Enum):
    IMPORT = "import"
    TARGET = "target"
    DYNAMIC = "dynamic"
    BRANCH = "branch"


class NodeState(str, Enum):
    PENDING = "pending"
    STALE = "stale"
    UP_TO_DATE = "up_to_date"
    EXPANDING = "expanding"
    READY = "ready"
    RUNNING = "running"
    DONE = "done"
    ERRORED = "errored"


class ErrorTag(str, Enum):
    COMMAND_ERROR = "CommandError"
    STORE_IO_ERROR = "StoreIOError"
    DEPENDENCY_FAILED = "DependencyFailed"
    BRANCH_FAILED = "BranchFailed"
    CANCELLED = "Cancelled"


@dataclass(frozen=True)
class Cue:
    """Which checks can invalidate a target.

    ``mode=always`` reruns unconditionally, ``mode=never`` only requires a
    valid prior record. The flags switch off individual checks.
    """
    mode: CueMode = CueMode.THOROUGH
    command: bool = True
    depend: bool = True
    format: bool = True
    file: bool = True


@dataclass(frozen=True)
class Target:
    """A declared named computation step."""
    name: str
    command: str
    pattern: Pattern | None = None
    iteration: IterationMode = IterationMode.VECTOR
    format: StorageFormat | None = None  # None: the build default
    cue: Cue = field(default_factory=Cue)

    def __post_init__(self):
        if not isinstance(self.name, str) or not self.name.isidentifier() or keyword.iskeyword(self.name):
            raise DeclarationError(f"Target name must be a valid identifier, got {self.name!r}")
        if not isinstance(self.command, str):
            raise DeclarationError(f"Command of '{self.name}' must be source text")
        if isinstance(self.pattern, str):
            from tessera.dag.patterns import parse_pattern
            object.__setattr__(self, "pattern", parse_pattern(self.pattern))
        object.__setattr__(self, "iteration", IterationMode(self.iteration))
        if self.format is not None:
            object.__setattr__(self, "format", StorageFormat(self.format))

    @property
    def is_dynamic(self) -> bool:
        return self.pattern is not None

    @property
    def pattern_inputs(self) -> list[str]:
        return self.pattern.variables() if self.pattern is not None else []
