"""DZI descriptor, metadata types and validation for generated pyramids."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from fastdz.core.types import LevelInfo

logger = logging.getLogger(__name__)

DEEPZOOM_NAMESPACE = "http://schemas.microsoft.com/deepzoom/2008"

METADATA_FILENAME = "metadata.json"


def render_dzi(width: int, height: int, tile_size: int, overlap: int, fmt: str) -> str:
    """Render the ``.dzi`` XML descriptor viewers load before fetching tiles.

    Args:
        width: Full-resolution width in pixels
        height: Full-resolution height in pixels
        tile_size: Tile size in pixels (without overlap)
        overlap: Tile overlap in pixels
        fmt: Tile file extension ("jpeg" or "png")

    Returns:
        Descriptor XML text
    """
    return (
        '<?xml version="1.0" encoding="UTF-8"?>\n'
        f'<Image xmlns="{DEEPZOOM_NAMESPACE}" Format="{fmt}" '
        f'Overlap="{overlap}" TileSize="{tile_size}">\n'
        f'  <Size Width="{width}" Height="{height}"/>\n'
        "</Image>\n"
    )


class PyramidStatus(Enum):
    """Status of an existing pyramid output."""

    NOT_EXISTS = "not_exists"  # Neither descriptor nor tile directory
    COMPLETE = "complete"  # Valid and complete
    INCOMPLETE = "incomplete"  # Missing descriptor, metadata or tiles
    CORRUPTED = "corrupted"  # Invalid metadata or structure
    STALE = "stale"  # Complete, but built with different settings


def check_pyramid_status(
    files_dir: Path,
    descriptor_path: Path,
    tile_size: int | None = None,
    overlap: int | None = None,
    tile_format: str | None = None,
    dimensions: tuple[int, int] | None = None,
) -> PyramidStatus:
    """Check the status of an existing pyramid.

    Metadata is written only after every tile has been stored, so its
    presence marks a finished build; tile counts are still verified.
    Any of ``tile_size``, ``overlap``, ``tile_format`` and ``dimensions``
    that is given must match the stored metadata, otherwise the pyramid
    is reported as STALE.

    Args:
        files_dir: The ``{name}_files`` tile directory
        descriptor_path: The ``{name}.dzi`` descriptor
        tile_size: Requested tile size
        overlap: Requested overlap
        tile_format: Requested tile format ("jpeg" or "png")
        dimensions: Source image (width, height)

    Returns:
        PyramidStatus indicating the state
    """
    if not files_dir.exists() and not descriptor_path.exists():
        return PyramidStatus.NOT_EXISTS

    metadata_path = files_dir / METADATA_FILENAME
    if not metadata_path.exists() or not descriptor_path.exists():
        return PyramidStatus.INCOMPLETE

    try:
        with open(metadata_path) as f:
            metadata = PyramidMetadata.from_dict(json.load(f))
    except (json.JSONDecodeError, KeyError, TypeError, ValueError):
        return PyramidStatus.CORRUPTED

    for info in metadata.levels:
        level_dir = files_dir / str(info.level)
        if not level_dir.is_dir():
            return PyramidStatus.INCOMPLETE
        tiles = list(level_dir.glob(f"*.{metadata.tile_format}"))
        if len(tiles) < info.cols * info.rows:
            logger.debug(
                "Level %d has %d of %d tiles", info.level, len(tiles), info.cols * info.rows
            )
            return PyramidStatus.INCOMPLETE

    requested = {
        "tile_size": tile_size,
        "overlap": overlap,
        "tile_format": tile_format,
        "dimensions": tuple(dimensions) if dimensions is not None else None,
    }
    for key, value in requested.items():
        if value is not None and getattr(metadata, key) != value:
            logger.debug(
                "Stored %s %r differs from requested %r", key, getattr(metadata, key), value
            )
            return PyramidStatus.STALE

    return PyramidStatus.COMPLETE


@dataclass
class PyramidMetadata:
    """Metadata for a tile pyramid."""

    version: str
    source_file: str
    tile_size: int
    overlap: int
    tile_format: str
    dimensions: tuple[int, int]
    levels: list[LevelInfo]
    tile_count: int
    generated_at: str

    def to_dict(self) -> dict:
        return {
            "version": self.version,
            "source_file": self.source_file,
            "tile_size": self.tile_size,
            "overlap": self.overlap,
            "tile_format": self.tile_format,
            "dimensions": list(self.dimensions),
            "levels": [
                {
                    "level": l.level,
                    "width": l.width,
                    "height": l.height,
                    "cols": l.cols,
                    "rows": l.rows,
                    "downsample": l.downsample,
                }
                for l in self.levels
            ],
            "tile_count": self.tile_count,
            "generated_at": self.generated_at,
        }

    @classmethod
    def from_dict(cls, data: dict) -> PyramidMetadata:
        return cls(
            version=data["version"],
            source_file=data["source_file"],
            tile_size=int(data["tile_size"]),
            overlap=int(data["overlap"]),
            tile_format=data["tile_format"],
            dimensions=tuple(data["dimensions"]),
            levels=[
                LevelInfo(
                    level=l["level"],
                    width=l["width"],
                    height=l["height"],
                    cols=l["cols"],
                    rows=l["rows"],
                    downsample=l["downsample"],
                )
                for l in data["levels"]
            ],
            tile_count=int(data["tile_count"]),
            generated_at=data["generated_at"],
        )
