"""Pipeline for converting images to Deep Zoom tile pyramids."""

from .backends import (
    PillowBackend,
    VIPSBackend,
    get_backend,
    is_vips_available,
)
from .codec import TileFormat, encode_tile
from .dispatch import TileDispatcher, TileJob
from .metadata import (
    PyramidMetadata,
    PyramidStatus,
    check_pyramid_status,
    render_dzi,
)
from .pyramid import BuildReport, PyramidBuilder, PyramidSpec, build_pyramid
from .sinks import LocalFileSink, MemorySink, TileSink

__all__ = [
    "BuildReport",
    "LocalFileSink",
    "MemorySink",
    "PillowBackend",
    "PyramidBuilder",
    "PyramidMetadata",
    "PyramidSpec",
    "PyramidStatus",
    "TileDispatcher",
    "TileFormat",
    "TileJob",
    "TileSink",
    "VIPSBackend",
    "build_pyramid",
    "check_pyramid_status",
    "encode_tile",
    "get_backend",
    "is_vips_available",
    "render_dzi",
]
