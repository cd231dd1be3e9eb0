"""Path utilities for the Deep Zoom output tree."""

from __future__ import annotations

import os
import tempfile
from pathlib import Path

from .types import TileCoord


def tile_path(root: str | Path, coord: TileCoord, extension: str) -> str:
    """Storage path of a tile: ``{root}/{level}/{col}_{row}.{extension}``."""
    root = str(root)
    if len(root) > 1:
        root = root.rstrip("/\\")
    return f"{root}/{coord.level}/{coord.col}_{coord.row}.{extension}"


def files_dir_for_image(image_path: Path, output_dir: Path) -> Path:
    """Tile directory for an image, ``{output_dir}/{stem}_files``."""
    return output_dir / f"{image_path.stem}_files"


def descriptor_path_for_image(image_path: Path, output_dir: Path) -> Path:
    """Descriptor file for an image, ``{output_dir}/{stem}.dzi``."""
    return output_dir / f"{image_path.stem}.dzi"


def atomic_write_bytes(path: Path, data: bytes) -> None:
    """Atomically write bytes to a file.

    Writes to a temp file in the same directory, then replaces the target.
    ``os.replace()`` is atomic on both POSIX and Windows (same filesystem).
    """
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(
        dir=path.parent, suffix=".tmp", prefix=path.stem
    )
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
        os.replace(tmp_path, path)
    except BaseException:
        try:
            os.unlink(tmp_path)
        except OSError:
            pass
        raise
