"""Exception types raised by pyramid generation."""

from __future__ import annotations

from dataclasses import dataclass

from fastdz.core.types import TileCoord


class DeepZoomError(Exception):
    """Base class for all fastdz errors."""


class ConfigError(DeepZoomError, ValueError):
    """Invalid pyramid parameters; raised before any work starts."""


class EncodeError(DeepZoomError):
    """A tile could not be encoded to its target format."""


class StoreError(DeepZoomError):
    """A sink failed to persist a tile.

    Args:
        message: Description of the failure
        fatal: True if the failure will recur for every remaining tile
            (disk full, permission denied) and the run should stop
    """

    def __init__(self, message: str, *, fatal: bool = False) -> None:
        super().__init__(message)
        self.fatal = fatal


class DownsampleError(DeepZoomError):
    """Resizing to the next coarser level failed; no lower level can be built."""


@dataclass(frozen=True)
class TileFailure:
    """A tile whose encode or store step failed."""

    coord: TileCoord
    path: str
    error: BaseException

    def __str__(self) -> str:
        return f"level {self.coord.level} col {self.coord.col} row {self.coord.row}: {self.error}"


class PyramidIncompleteError(DeepZoomError):
    """One or more tiles failed; ``failures`` identifies each of them.

    Args:
        failures: Failed tiles
        total: Number of tiles submitted
    """

    #: Failures listed in the message before it is truncated
    MAX_LISTED = 10

    def __init__(self, failures: list[TileFailure], total: int) -> None:
        self.failures = list(failures)
        self.total = total
        super().__init__(self._format_message())

    def _summary(self) -> str:
        return f"{len(self.failures)} of {self.total} tiles failed"

    def _format_message(self) -> str:
        lines = [self._summary()]
        for failure in self.failures[: self.MAX_LISTED]:
            lines.append(f"  {failure}")
        hidden = len(self.failures) - self.MAX_LISTED
        if hidden > 0:
            lines.append(f"  ... and {hidden} more")
        return "\n".join(lines)

    @property
    def failed_coords(self) -> list[TileCoord]:
        return [f.coord for f in self.failures]


class BuildCancelled(PyramidIncompleteError):
    """The run stopped early (caller cancel, deadline, or a fatal store error)."""

    def __init__(self, reason: str, failures: list[TileFailure], total: int) -> None:
        self.reason = reason
        super().__init__(failures, total)

    def _summary(self) -> str:
        return f"cancelled ({self.reason}); {len(self.failures)} of {self.total} tiles failed"
