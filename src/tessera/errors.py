"""Exception taxonomy for graph construction, branching, storage and builds."""

from __future__ import annotations


class TesseraError(Exception):
    """Base class for all Tessera errors."""


class DeclarationError(TesseraError):
    """Raised when a pipeline declaration is malformed."""


class CycleError(TesseraError):
    """Raised when a dependency cycle is detected."""
    def __init__(self, cycle: list[str]):
        self.cycle = cycle
        super().__init__(f"Dependency cycle detected: {' → '.join(cycle)}")


class PatternError(TesseraError):
    """Raised when a dynamic branching pattern cannot be expanded."""


class PatternArityError(PatternError):
    """Raised when the inputs of a map() pattern have different branch counts."""
    def __init__(self, target: str, sizes: dict[str, int]):
        self.target = target
        self.sizes = sizes
        detail = ", ".join(f"{name}={size}" for name, size in sizes.items())
        super().__init__(
            f"map() inputs of '{target}' have unequal branch counts: {detail}"
        )


class IndexRangeError(PatternError):
    """Raised when slice() selects an index outside the input partition."""
    def __init__(self, target: str, index: int, size: int):
        self.target = target
        self.index = index
        self.size = size
        super().__init__(
            f"slice() index {index} is out of range for '{target}' "
            f"(partition has {size} slices)"
        )


class AggregationError(TesseraError):
    """Raised when branch values cannot be combined under vector semantics."""


class StoreIOError(TesseraError):
    """Raised when the result store or fingerprint database fails."""


class CommandError(TesseraError):
    """Raised when a node's command fails."""
    def __init__(self, node: str, message: str):
        self.node = node
        super().__init__(f"Command of '{node}' failed: {message}")


class Cancelled(TesseraError):
    """Raised when a build is aborted by the user."""


class BuildError(TesseraError):
    """Raised for a build that finished with failed nodes.

    Carries every failure (root causes) and every dependent skipped as a
    consequence, so the two can be told apart.
    """
    def __init__(self, failed: dict[str, str], skipped: list[str]):
        self.failed = failed
        self.skipped = skipped
        lines = [f"{len(failed)} node(s) failed:"]
        lines.extend(f"  {name}: {error}" for name, error in failed.items())
        if skipped:
            lines.append(f"{len(skipped)} dependent(s) skipped: {', '.join(skipped)}")
        super().__init__("\n".join(lines))
