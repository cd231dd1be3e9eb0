"""Worker function for parallel preprocessing.

This module exists separately from __main__.py to support Windows multiprocessing,
which requires worker functions to be importable (not defined in __main__).
"""

from __future__ import annotations

import logging
from pathlib import Path

from .backends import get_backend
from .pyramid import build_pyramid

logger = logging.getLogger(__name__)


def process_single_image(
    image_path: Path,
    output_dir: Path,
    tile_size: int,
    overlap: int,
    tile_format: str,
    quality: int,
    backend_name: str,
    max_workers: int,
    force: bool = False,
) -> tuple[Path | None, str | None, bool]:
    """Process a single image.

    Args:
        image_path: Path to the source image
        output_dir: Output directory
        tile_size: Tile size in pixels
        overlap: Tile overlap in pixels
        tile_format: "jpeg" or "png"
        quality: JPEG quality
        backend_name: "pillow" or "vips"
        max_workers: Tile threads for this image
        force: Force rebuild

    Returns:
        Tuple of (result_path, error_message, was_skipped)
        - result_path: Path to the .dzi descriptor, or None if skipped/error
        - error_message: Error string if failed, None otherwise
        - was_skipped: True if image was skipped (already complete)
    """
    logger.info("Processing %s", image_path.name)
    try:
        result = build_pyramid(
            image_path,
            output_dir,
            tile_size=tile_size,
            overlap=overlap,
            tile_format=tile_format,
            quality=quality,
            backend=get_backend(backend_name),
            max_workers=max_workers,
            force=force,
        )
        if result is None:
            # Image was skipped (already complete)
            return None, None, True
        return result, None, False
    except Exception as e:
        logger.error("Failed to process %s: %s", image_path.name, e)
        return None, str(e), False
