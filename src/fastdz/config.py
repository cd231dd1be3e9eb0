"""Centralized configuration for fastdz.

All tunable parameters are defined here with sensible defaults.
Values can be overridden via environment variables.

Environment Variables:
    FASTDZ_TILE_SIZE: Default tile size in pixels (default: 254)
    FASTDZ_OVERLAP: Default tile overlap for the CLI in pixels (default: 1)
    FASTDZ_JPEG_QUALITY: JPEG quality for lossy tiles (default: 75)
    FASTDZ_MAX_WORKERS: Tile encode/store threads (default: CPU count)
    FASTDZ_MAX_IN_FLIGHT: Tile tasks allowed in flight (default: 2 x workers)
    FASTDZ_BACKEND: Image backend, "pillow" or "vips" (default: pillow)
"""

from __future__ import annotations

import logging
import os

logger = logging.getLogger(__name__)


def _get_env_int(name: str, default: int) -> int:
    """Get an integer from environment variable with fallback."""
    value = os.environ.get(name)
    if value is not None:
        try:
            return int(value)
        except ValueError:
            logger.warning(
                "Invalid integer for %s: %r, using default %d", name, value, default
            )
    return default


def _get_env_str(name: str, default: str) -> str:
    """Get a string from environment variable with fallback."""
    return os.environ.get(name, default)


# =============================================================================
# Tile Generation Defaults
# =============================================================================

#: Default tile size in pixels (254 + 2 x 1px overlap = 256 on interior tiles)
DEFAULT_TILE_SIZE: int = _get_env_int("FASTDZ_TILE_SIZE", 254)

#: Default overlap used by the CLI
DEFAULT_OVERLAP: int = _get_env_int("FASTDZ_OVERLAP", 1)

#: JPEG quality for lossy tiles
JPEG_QUALITY: int = _get_env_int("FASTDZ_JPEG_QUALITY", 75)

#: Image backend name
BACKEND: str = _get_env_str("FASTDZ_BACKEND", "pillow")


# =============================================================================
# Concurrency
# =============================================================================

#: Threads encoding and storing tiles
MAX_WORKERS: int = _get_env_int("FASTDZ_MAX_WORKERS", os.cpu_count() or 4)

#: Tile tasks (each holding a cropped buffer) allowed in flight at once
MAX_IN_FLIGHT: int = _get_env_int("FASTDZ_MAX_IN_FLIGHT", 2 * MAX_WORKERS)

#: Default parallel images for batch preprocessing
DEFAULT_PARALLEL_IMAGES: int = 2


# =============================================================================
# Input
# =============================================================================

#: Image file extensions picked up when the CLI is given a directory
IMAGE_EXTENSIONS: frozenset[str] = frozenset({
    ".png", ".jpg", ".jpeg", ".tif", ".tiff", ".bmp", ".gif", ".webp"
})


# =============================================================================
# Validation
# =============================================================================


def _validate_config() -> None:
    """Validate configuration values and log warnings for out-of-range settings."""
    global DEFAULT_TILE_SIZE, DEFAULT_OVERLAP, JPEG_QUALITY, MAX_WORKERS, MAX_IN_FLIGHT

    if DEFAULT_TILE_SIZE < 1:
        logger.warning("DEFAULT_TILE_SIZE=%d is too low, clamping to 1", DEFAULT_TILE_SIZE)
        DEFAULT_TILE_SIZE = 1

    if DEFAULT_OVERLAP < 0:
        logger.warning("DEFAULT_OVERLAP=%d is negative, clamping to 0", DEFAULT_OVERLAP)
        DEFAULT_OVERLAP = 0

    if not 1 <= JPEG_QUALITY <= 100:
        clamped = min(max(JPEG_QUALITY, 1), 100)
        logger.warning("JPEG_QUALITY=%d is out of range, clamping to %d", JPEG_QUALITY, clamped)
        JPEG_QUALITY = clamped

    if MAX_WORKERS < 1:
        logger.warning("MAX_WORKERS=%d is too low, clamping to 1", MAX_WORKERS)
        MAX_WORKERS = 1

    if MAX_IN_FLIGHT < MAX_WORKERS:
        logger.warning(
            "MAX_IN_FLIGHT=%d is below MAX_WORKERS=%d, raising to match",
            MAX_IN_FLIGHT,
            MAX_WORKERS,
        )
        MAX_IN_FLIGHT = MAX_WORKERS


_validate_config()
