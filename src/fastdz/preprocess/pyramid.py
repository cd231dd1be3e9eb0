"""Deep Zoom pyramid generation.

The walker goes from the full-resolution level down to level 0. At each
level it crops every tile out of the current working image, hands the tiles
to a ``TileDispatcher``, then box-downsamples the working image to the next
level without waiting for those tiles to be written. Only after level 0 has
been submitted does it wait, once, for every tile.

Output layout::

    {output_dir}/{name}.dzi
    {output_dir}/{name}_files/{level}/{col}_{row}.{jpeg|png}
    {output_dir}/{name}_files/metadata.json
"""

from __future__ import annotations

import json
import logging
import shutil
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

import numpy as np

from fastdz.config import DEFAULT_TILE_SIZE, JPEG_QUALITY, MAX_IN_FLIGHT, MAX_WORKERS
from fastdz.core.geometry import plan_levels, tile_rect
from fastdz.core.paths import (
    atomic_write_bytes,
    descriptor_path_for_image,
    files_dir_for_image,
    tile_path,
)
from fastdz.core.types import LevelInfo, TileCoord
from fastdz.errors import ConfigError, DownsampleError

from .backends import ImageBackend, crop, get_backend, load_image, read_image_size
from .codec import TileFormat
from .dispatch import TileDispatcher, TileJob
from .metadata import (
    METADATA_FILENAME,
    PyramidMetadata,
    PyramidStatus,
    check_pyramid_status,
    render_dzi,
)
from .sinks import LocalFileSink, TileSink

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PyramidSpec:
    """Immutable description of the pyramid to generate.

    Args:
        width: Source image width in pixels
        height: Source image height in pixels
        root: Tile root; tiles go to ``{root}/{level}/{col}_{row}.{ext}``
        sink: Where encoded tiles are stored
        tile_size: Tile size in pixels, excluding overlap
        overlap: Pixels added to each interior tile edge
        tile_format: "jpeg" or "png"
        quality: JPEG quality (1-100)

    Raises:
        ConfigError: If any parameter is out of range
    """

    width: int
    height: int
    root: str
    sink: TileSink = field(default_factory=LocalFileSink)
    tile_size: int = DEFAULT_TILE_SIZE
    overlap: int = 0
    tile_format: TileFormat = TileFormat.JPEG
    quality: int = JPEG_QUALITY

    def __post_init__(self) -> None:
        object.__setattr__(self, "tile_format", TileFormat.parse(self.tile_format))
        object.__setattr__(self, "root", str(self.root))
        for name in ("width", "height", "tile_size"):
            value = getattr(self, name)
            if not isinstance(value, int) or value <= 0:
                raise ConfigError(f"{name} must be a positive integer, got {value!r}")
        if not isinstance(self.overlap, int) or self.overlap < 0:
            raise ConfigError(f"overlap must be a non-negative integer, got {self.overlap!r}")
        if self.overlap >= self.tile_size:
            logger.warning(
                "Overlap %d is not smaller than tile size %d", self.overlap, self.tile_size
            )
        if not 1 <= self.quality <= 100:
            raise ConfigError(f"quality must be between 1 and 100, got {self.quality!r}")

    def validate_image(self, image: np.ndarray) -> None:
        """Check that ``image`` is a uint8 buffer of the declared size.

        Raises:
            ConfigError: On a dimension, dtype or shape mismatch
        """
        if not isinstance(image, np.ndarray):
            raise ConfigError(f"Expected a numpy array, got {type(image).__name__}")
        if image.ndim not in (2, 3) or (image.ndim == 3 and image.shape[2] not in (1, 2, 3, 4)):
            raise ConfigError(f"Unsupported image shape {image.shape}")
        if image.dtype != np.uint8:
            raise ConfigError(f"Expected uint8 pixels, got {image.dtype}")
        height, width = image.shape[:2]
        if (width, height) != (self.width, self.height):
            raise ConfigError(
                f"Image is {width}x{height} but the pyramid was configured "
                f"for {self.width}x{self.height}"
            )

    def levels(self) -> list[LevelInfo]:
        return plan_levels(self.width, self.height, self.tile_size)

    def tile_path(self, coord: TileCoord) -> str:
        return tile_path(self.root, coord, self.tile_format.extension)


@dataclass
class BuildReport:
    """Outcome of a successful build."""

    levels: int
    tiles_submitted: int
    tiles_stored: int
    elapsed_seconds: float
    peak_in_flight: int = 0


class PyramidBuilder:
    """Generates every tile of a Deep Zoom pyramid from an in-memory image.

    Args:
        spec: Pyramid parameters
        backend: Image backend for resize/encode; defaults to the configured one
        max_workers: Tile encode/store threads
        max_in_flight: Tiles allowed between crop and store at once
    """

    def __init__(
        self,
        spec: PyramidSpec,
        backend: ImageBackend | None = None,
        max_workers: int = MAX_WORKERS,
        max_in_flight: int = MAX_IN_FLIGHT,
    ) -> None:
        self.spec = spec
        self.backend = backend if backend is not None else get_backend()
        self.max_workers = max_workers
        self.max_in_flight = max_in_flight

    def build(
        self,
        image: np.ndarray,
        cancel_event: threading.Event | None = None,
        timeout: float | None = None,
        progress_callback: Callable[[str, int, int], None] | None = None,
    ) -> BuildReport:
        """Generate and store all tiles.

        The caller keeps its reference to ``image``, so the full-resolution
        buffer stays alive for the whole build. Use ``build_owned`` to let
        the walker free it after the first downsample.

        Args:
            image: Source pixels, numpy array (H, W[, C]) uint8 of the declared size
            cancel_event: Set from another thread to stop the build
            timeout: Seconds after which the build is cancelled
            progress_callback: Optional callback(stage, current, total); stage
                is "level" (from the calling thread) or "tiles" (from workers).
                Raising ``InterruptedError`` from it cancels the build.

        Returns:
            BuildReport with tile counts and timing

        Raises:
            ConfigError: If the image does not match the declared size
            DownsampleError: If a level could not be produced
            BuildCancelled: If cancelled by the caller, the deadline, or a
                fatal store error
            PyramidIncompleteError: If any tile failed to encode or store
        """
        return self.build_owned([image], cancel_event, timeout, progress_callback)

    def build_owned(
        self,
        source: list[np.ndarray],
        cancel_event: threading.Event | None = None,
        timeout: float | None = None,
        progress_callback: Callable[[str, int, int], None] | None = None,
    ) -> BuildReport:
        """Like ``build``, but takes the image out of a one-element list.

        The walker pops the image from ``source``, so when the caller holds
        no other reference the full-resolution buffer is freed as soon as
        the next level has been downsampled from it.
        """
        if len(source) != 1:
            raise ConfigError(f"Expected exactly one source image, got {len(source)}")
        self.spec.validate_image(source[0])
        levels = self.spec.levels()
        total = sum(info.tile_count for info in levels)
        deadline = time.monotonic() + timeout if timeout is not None else None
        start = time.monotonic()

        logger.info(
            "Building %d levels (%d tiles) for %dx%d image, tile %d overlap %d %s",
            len(levels),
            total,
            self.spec.width,
            self.spec.height,
            self.spec.tile_size,
            self.spec.overlap,
            self.spec.tile_format.value,
        )

        dispatcher = TileDispatcher(
            self.spec.sink,
            self.backend,
            max_workers=self.max_workers,
            max_in_flight=self.max_in_flight,
            cancel_event=cancel_event,
            deadline=deadline,
            progress_callback=progress_callback,
            total=total,
        )
        with dispatcher:
            self._walk(source, levels, dispatcher, progress_callback)
            stored = dispatcher.await_all()

        elapsed = time.monotonic() - start
        logger.info("Stored %d tiles in %.2fs", stored, elapsed)
        return BuildReport(
            levels=len(levels),
            tiles_submitted=dispatcher.submitted,
            tiles_stored=stored,
            elapsed_seconds=elapsed,
            peak_in_flight=dispatcher.peak_in_flight,
        )

    def _walk(
        self,
        source: list[np.ndarray],
        levels: list[LevelInfo],
        dispatcher: TileDispatcher,
        progress_callback: Callable[[str, int, int], None] | None,
    ) -> None:
        """Submit every level's tiles, finest first, downsampling in between.

        ``working`` is the only reference the walker keeps to the current
        level's pixels; rebinding it releases the finer level.
        """
        working = source.pop()
        for done, info in enumerate(reversed(levels)):
            if dispatcher.cancelled:
                logger.info("Stopping before level %d: build cancelled", info.level)
                return
            logger.debug(
                "Level %d: %dx%d px, %dx%d tiles",
                info.level, info.width, info.height, info.cols, info.rows,
            )
            if not self._submit_level(working, info, dispatcher):
                logger.info("Stopped submitting level %d: build cancelled", info.level)
                return
            if progress_callback:
                try:
                    progress_callback("level", done + 1, len(levels))
                except InterruptedError:
                    dispatcher.cancel("interrupted by progress callback")
                    return
            if info.level > 0:
                coarser = levels[info.level - 1]
                working = self._downsample(working, coarser)

    def _submit_level(
        self, working: np.ndarray, info: LevelInfo, dispatcher: TileDispatcher
    ) -> bool:
        spec = self.spec
        for row in range(info.rows):
            for col in range(info.cols):
                rect = tile_rect(
                    spec.tile_size, spec.overlap, info.width, info.height,
                    col, row, info.cols, info.rows,
                )
                coord = TileCoord(info.level, col, row)
                job = TileJob(
                    coord=coord,
                    rect=rect,
                    path=spec.tile_path(coord),
                    fmt=spec.tile_format,
                    pixels=crop(working, rect),
                    quality=spec.quality,
                )
                if not dispatcher.submit(job):
                    job.pixels = None
                    return False
        return True

    def _downsample(self, working: np.ndarray, target: LevelInfo) -> np.ndarray:
        """Box-resize the working image to the next coarser level's size."""
        size = (target.width, target.height)
        try:
            resized = self.backend.resize(working, size)
        except Exception as e:
            raise DownsampleError(
                f"Failed to resize {working.shape[1]}x{working.shape[0]} to "
                f"{size[0]}x{size[1]} for level {target.level}: {e}"
            ) from e
        if resized.shape[:2] != (target.height, target.width):
            raise DownsampleError(
                f"Resize for level {target.level} returned "
                f"{resized.shape[1]}x{resized.shape[0]}, expected {size[0]}x{size[1]}"
            )
        return resized


def _handle_existing_pyramid(
    files_dir: Path,
    descriptor_path: Path,
    image_name: str,
    spec: PyramidSpec,
    force: bool,
) -> bool:
    """Check existing pyramid status and clean up if needed.

    A complete pyramid built with a different tile size, overlap, format or
    source size is treated as stale and rebuilt.

    Args:
        files_dir: The ``{name}_files`` tile directory
        descriptor_path: The ``{name}.dzi`` descriptor
        image_name: Name of the source image (for logging)
        spec: The pyramid about to be generated
        force: If True, rebuild even if complete

    Returns:
        True if the build should be skipped (already complete and not forced)
    """
    status = check_pyramid_status(
        files_dir,
        descriptor_path,
        tile_size=spec.tile_size,
        overlap=spec.overlap,
        tile_format=spec.tile_format.value,
        dimensions=(spec.width, spec.height),
    )

    if status == PyramidStatus.COMPLETE and not force:
        logger.info("Skipping %s: already generated (use --force to rebuild)", image_name)
        return True

    if status == PyramidStatus.NOT_EXISTS:
        return False

    if status == PyramidStatus.INCOMPLETE:
        logger.info("Found incomplete pyramid for %s, cleaning up...", image_name)
    elif status == PyramidStatus.CORRUPTED:
        logger.warning("Found corrupted pyramid for %s, cleaning up...", image_name)
    elif status == PyramidStatus.STALE:
        logger.info("Settings changed for %s, rebuilding...", image_name)
    else:
        logger.info("Force rebuild for %s, removing existing...", image_name)
    if files_dir.exists():
        shutil.rmtree(files_dir)
    descriptor_path.unlink(missing_ok=True)
    return False


def build_pyramid(
    image_path: Path,
    output_dir: Path,
    tile_size: int = DEFAULT_TILE_SIZE,
    overlap: int = 0,
    tile_format: TileFormat | str = TileFormat.JPEG,
    quality: int = JPEG_QUALITY,
    backend: ImageBackend | None = None,
    max_workers: int = MAX_WORKERS,
    progress_callback: Callable[[str, int, int], None] | None = None,
    force: bool = False,
    timeout: float | None = None,
) -> Path | None:
    """Decode an image file and write its Deep Zoom pyramid to disk.

    Writes ``{stem}.dzi`` and ``{stem}_files/`` into ``output_dir``. The
    descriptor and metadata are written only after every tile is stored.

    Args:
        image_path: Source image file
        output_dir: Directory receiving the descriptor and tile tree
        tile_size: Tile size in pixels
        overlap: Tile overlap in pixels
        tile_format: "jpeg" or "png"
        quality: JPEG quality
        backend: Image backend, defaults to the configured one
        max_workers: Tile encode/store threads
        progress_callback: Progress callback function
        force: Rebuild even if a complete pyramid exists
        timeout: Seconds after which the build is cancelled

    Returns:
        Path to the ``.dzi`` descriptor, or None if skipped
    """
    image_path = Path(image_path)
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    files_dir = files_dir_for_image(image_path, output_dir)
    descriptor_path = descriptor_path_for_image(image_path, output_dir)
    width, height = read_image_size(image_path)
    spec = PyramidSpec(
        width=width,
        height=height,
        root=files_dir.as_posix(),
        sink=LocalFileSink(),
        tile_size=tile_size,
        overlap=overlap,
        tile_format=tile_format,
        quality=quality,
    )
    if _handle_existing_pyramid(files_dir, descriptor_path, image_path.name, spec, force):
        return None

    if progress_callback:
        progress_callback("load", 0, 1)
    # The builder takes the only reference so it can free full resolution early
    source = [load_image(image_path)]
    logger.info("Loaded %s: %d x %d px", image_path.name, width, height)

    builder = PyramidBuilder(
        spec,
        backend=backend,
        max_workers=max_workers,
        max_in_flight=max(MAX_IN_FLIGHT, 2 * max_workers),
    )
    report = builder.build_owned(source, timeout=timeout, progress_callback=progress_callback)

    levels = spec.levels()
    metadata = PyramidMetadata(
        version="1.0",
        source_file=image_path.name,
        tile_size=spec.tile_size,
        overlap=spec.overlap,
        tile_format=spec.tile_format.value,
        dimensions=(width, height),
        levels=levels,
        tile_count=report.tiles_stored,
        generated_at=datetime.now(timezone.utc).isoformat(),
    )
    atomic_write_bytes(
        files_dir / METADATA_FILENAME,
        json.dumps(metadata.to_dict(), indent=2).encode("utf-8"),
    )
    dzi = render_dzi(width, height, spec.tile_size, spec.overlap, spec.tile_format.value)
    atomic_write_bytes(descriptor_path, dzi.encode("utf-8"))

    logger.info(
        "Generated %d levels (%d tiles) for %s", len(levels), report.tiles_stored, image_path.name
    )
    return descriptor_path
