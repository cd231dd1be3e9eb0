"""Pyramid geometry and shared types."""

from .geometry import (
    core_rect,
    level_dimensions,
    level_grid,
    max_level,
    plan_levels,
    tile_count,
    tile_rect,
)
from .types import LevelInfo, TileCoord, TileRect

__all__ = [
    "LevelInfo",
    "TileCoord",
    "TileRect",
    "core_rect",
    "level_dimensions",
    "level_grid",
    "max_level",
    "plan_levels",
    "tile_count",
    "tile_rect",
]
