"""Shared type definitions for fastdz core module."""

from __future__ import annotations

from dataclasses import dataclass
from typing import NamedTuple


class TileCoord(NamedTuple):
    """Coordinate of a tile in the pyramid.

    Attributes:
        level: Pyramid level (0 = lowest resolution)
        col: Column index (0-based)
        row: Row index (0-based)
    """

    level: int
    col: int
    row: int

    def __str__(self) -> str:
        return f"{self.level}/{self.col}_{self.row}"


class TileRect(NamedTuple):
    """Pixel rectangle of a tile within its level image.

    Edges are half-open: ``left <= x < right`` and ``top <= y < bottom``.
    """

    left: int
    top: int
    right: int
    bottom: int

    @property
    def width(self) -> int:
        return self.right - self.left

    @property
    def height(self) -> int:
        return self.bottom - self.top

    @property
    def area(self) -> int:
        return self.width * self.height


@dataclass(frozen=True)
class LevelInfo:
    """Information about a pyramid level.

    Attributes:
        level: Level index (0 = lowest resolution)
        width: Level image width in pixels
        height: Level image height in pixels
        cols: Number of tile columns at this level
        rows: Number of tile rows at this level
        downsample: Downsample factor relative to highest resolution (1 = full res)
    """

    level: int
    width: int
    height: int
    cols: int
    rows: int
    downsample: int = 1

    @property
    def tile_count(self) -> int:
        return self.cols * self.rows
