"""Pyramid geometry: level count, tile grids and tile rectangles.

Level 0 is the coarsest level (a single 1x1 pixel image for any source
larger than one pixel), ``max_level`` is the full-resolution source. Each
level is the ceiling half of the next finer one.
"""

from __future__ import annotations

from .types import LevelInfo, TileRect


def _ceil_div(value: int, divisor: int) -> int:
    return (value + divisor - 1) // divisor


def max_level(width: int, height: int) -> int:
    """Index of the full-resolution level, ``ceil(log2(max(width, height)))``.

    Uses integer arithmetic so exact powers of two never round up.

    Args:
        width: Source width in pixels (>= 1)
        height: Source height in pixels (>= 1)

    Returns:
        Maximum level index (0 for a 1x1 image)
    """
    return (max(width, height) - 1).bit_length()


def level_grid(width: int, height: int, tile_size: int) -> tuple[int, int]:
    """Number of tile columns and rows covering a ``width x height`` level."""
    return _ceil_div(width, tile_size), _ceil_div(height, tile_size)


def _span(tile_size: int, overlap: int, extent: int, index: int, count: int) -> tuple[int, int]:
    if index == 0:
        start = 0
    else:
        start = index * tile_size - overlap
    if index == count - 1:
        end = extent
    else:
        end = (index + 1) * tile_size + overlap
    # A first tile that is also the last one (level narrower than a tile)
    # ends at the image edge, like every other last tile.
    return max(0, min(start, extent)), max(0, min(end, extent))


def tile_rect(
    tile_size: int,
    overlap: int,
    width: int,
    height: int,
    col: int,
    row: int,
    max_col: int,
    max_row: int,
) -> TileRect:
    """Compute the pixel rectangle of tile ``(col, row)`` including overlap.

    Interior edges extend ``overlap`` pixels past the tile's core region;
    outer edges stop at the image border. All four edges are clamped to
    ``[0, width] x [0, height]``.

    Args:
        tile_size: Tile core size in pixels
        overlap: Overlap in pixels added on interior edges
        width: Level image width
        height: Level image height
        col: Column index
        row: Row index
        max_col: Number of columns at this level
        max_row: Number of rows at this level

    Returns:
        TileRect of the tile
    """
    left, right = _span(tile_size, overlap, width, col, max_col)
    top, bottom = _span(tile_size, overlap, height, row, max_row)
    return TileRect(left, top, right, bottom)


def core_rect(tile_size: int, width: int, height: int, col: int, row: int) -> TileRect:
    """Non-overlapping part of tile ``(col, row)``."""
    return TileRect(
        min(col * tile_size, width),
        min(row * tile_size, height),
        min((col + 1) * tile_size, width),
        min((row + 1) * tile_size, height),
    )


def level_dimensions(width: int, height: int) -> list[tuple[int, int]]:
    """Image size of every level, level 0 first."""
    dims = [(width, height)]
    w, h = width, height
    for _ in range(max_level(width, height)):
        w = _ceil_div(w, 2)
        h = _ceil_div(h, 2)
        dims.append((w, h))
    dims.reverse()
    return dims


def plan_levels(width: int, height: int, tile_size: int) -> list[LevelInfo]:
    """Calculate level info for the whole pyramid.

    Args:
        width: Source width in pixels
        height: Source height in pixels
        tile_size: Tile size in pixels

    Returns:
        List of LevelInfo, index 0 = lowest resolution
    """
    top = max_level(width, height)
    levels = []
    for level, (w, h) in enumerate(level_dimensions(width, height)):
        cols, rows = level_grid(w, h, tile_size)
        levels.append(LevelInfo(
            level=level,
            width=w,
            height=h,
            cols=cols,
            rows=rows,
            downsample=2 ** (top - level),
        ))
    return levels


def tile_count(width: int, height: int, tile_size: int) -> int:
    """Total number of tiles across all levels."""
    return sum(info.tile_count for info in plan_levels(width, height, tile_size))
