"""Image processing backends for pyramid generation.

Working images and tiles are numpy arrays of ``uint8`` shaped ``(H, W)``
(grayscale) or ``(H, W, C)`` with 3 (RGB) or 4 (RGBA) bands. A backend
provides the two pixel operations the pyramid needs beyond cropping:

- ``resize(arr, size)``: box-filtered resize used between levels
- ``encode(arr, fmt, quality)``: JPEG/PNG bytes for a tile

Two backends are available:

- ``PillowBackend`` (default): always installed
- ``VIPSBackend``: libvips via pyvips, faster on large images but needs the
  native library

Usage:
    from fastdz.preprocess.backends import get_backend

    backend = get_backend("pillow")
    half = backend.resize(arr, (arr.shape[1] // 2, arr.shape[0] // 2))
    data = backend.encode(half, "jpeg", quality=75)
"""

from __future__ import annotations

import io
from pathlib import Path
from typing import Any, Protocol

import numpy as np
from PIL import Image

from fastdz.core.types import TileRect

_HAS_VIPS = False
_vips_import_error: str | None = None
pyvips: Any = None

try:
    import pyvips
    _HAS_VIPS = True
except (ImportError, OSError) as e:
    _vips_import_error = str(e)


def is_vips_available() -> bool:
    """Check if PyVIPS is available.

    Returns:
        True if pyvips is installed and working
    """
    return _HAS_VIPS


def get_vips_import_error() -> str | None:
    """Get the error message if PyVIPS failed to import.

    Returns:
        Error message string, or None if pyvips is available
    """
    return _vips_import_error


def load_image(path: Path) -> np.ndarray:
    """Decode an image file into a fully materialized uint8 array.

    Grayscale stays single-band, images with transparency become RGBA and
    everything else RGB.

    Args:
        path: Path to the image file

    Returns:
        numpy array (H, W) or (H, W, C) uint8
    """
    with Image.open(path) as img:
        if img.mode in ("L", "RGB", "RGBA"):
            converted = img.copy()
        elif img.mode in ("LA", "PA") or (img.mode == "P" and "transparency" in img.info):
            converted = img.convert("RGBA")
        elif img.mode == "1":
            converted = img.convert("L")
        else:
            converted = img.convert("RGB")
    return np.asarray(converted)


def read_image_size(path: Path) -> tuple[int, int]:
    """Read an image's (width, height) from its header without decoding pixels."""
    with Image.open(path) as img:
        return img.size


def crop(arr: np.ndarray, rect: TileRect) -> np.ndarray:
    """Copy the pixels inside ``rect`` out of ``arr``.

    The result owns its memory, so it stays valid after ``arr`` is released.
    The caller is responsible for clamping ``rect`` to the image bounds.
    """
    return arr[rect.top:rect.bottom, rect.left:rect.right].copy()


class ImageBackend(Protocol):
    """Resize and encode operations used by the pyramid builder."""

    name: str

    def resize(self, arr: np.ndarray, size: tuple[int, int]) -> np.ndarray: ...

    def encode(self, arr: np.ndarray, fmt: str, quality: int) -> bytes: ...


def _drop_alpha(arr: np.ndarray) -> np.ndarray:
    if arr.ndim == 3 and arr.shape[2] in (2, 4):
        return arr[:, :, : arr.shape[2] - 1]
    return arr


class PillowBackend:
    """Pillow-based image processing backend."""

    name = "pillow"

    @staticmethod
    def _to_image(arr: np.ndarray) -> Image.Image:
        if arr.ndim == 3 and arr.shape[2] == 1:
            arr = arr[:, :, 0]
        return Image.fromarray(np.ascontiguousarray(arr, dtype=np.uint8))

    def resize(self, arr: np.ndarray, size: tuple[int, int]) -> np.ndarray:
        """Resize an image with a box (area-averaging) filter.

        Args:
            arr: numpy array (H, W[, C]) uint8
            size: Target size as (width, height)

        Returns:
            Resized numpy array with the same band count
        """
        img = self._to_image(arr)
        resized = np.asarray(img.resize(size, Image.Resampling.BOX))
        if arr.ndim == 3 and resized.ndim == 2:
            resized = resized[:, :, np.newaxis]
        return resized

    def encode(self, arr: np.ndarray, fmt: str, quality: int) -> bytes:
        """Encode an image to JPEG or PNG bytes.

        Args:
            arr: numpy array (H, W[, C]) uint8
            fmt: "jpeg" or "png"
            quality: JPEG quality (1-100), ignored for PNG

        Returns:
            Encoded image bytes
        """
        buffer = io.BytesIO()
        if fmt == "jpeg":
            self._to_image(_drop_alpha(arr)).save(buffer, format="JPEG", quality=quality)
        elif fmt == "png":
            self._to_image(arr).save(buffer, format="PNG")
        else:
            raise ValueError(f"Unsupported format: {fmt!r}")
        return buffer.getvalue()


class VIPSBackend:
    """PyVIPS-based image processing backend.

    Requires pyvips to be installed: pip install pyvips
    On Windows, also requires libvips DLLs.
    """

    name = "vips"

    def __init__(self) -> None:
        if not _HAS_VIPS:
            raise RuntimeError(f"PyVIPS is not available: {_vips_import_error}")

    @staticmethod
    def from_numpy(arr: np.ndarray) -> "pyvips.Image":
        """Convert a numpy array to pyvips format.

        Args:
            arr: numpy array (H, W[, C]) uint8

        Returns:
            pyvips.Image with C bands
        """
        height, width = arr.shape[:2]
        bands = arr.shape[2] if arr.ndim == 3 else 1

        # Ensure contiguous array
        arr = np.ascontiguousarray(arr, dtype=np.uint8)

        return pyvips.Image.new_from_memory(
            arr.tobytes(),
            width,
            height,
            bands,
            "uchar"
        )

    @staticmethod
    def to_numpy(img: "pyvips.Image", ndim: int = 3) -> np.ndarray:
        """Convert a pyvips image to numpy array.

        Args:
            img: pyvips.Image
            ndim: 2 to return a (H, W) array for single-band images

        Returns:
            numpy array (H, W, C) uint8, or (H, W) when ndim is 2
        """
        data = img.write_to_memory()
        arr = np.ndarray(
            buffer=data,
            dtype=np.uint8,
            shape=(img.height, img.width, img.bands)
        )
        if ndim == 2 and img.bands == 1:
            arr = arr[:, :, 0]
        return arr

    def resize(self, arr: np.ndarray, size: tuple[int, int]) -> np.ndarray:
        """Resize an image with libvips' linear (triangle) kernel.

        At the near-half scales between pyramid levels libvips does no
        block shrink, so this is a linear reduce rather than the box
        average of ``PillowBackend``. Output pixels may differ slightly.

        Args:
            arr: numpy array (H, W[, C]) uint8
            size: Target size as (width, height)

        Returns:
            Resized numpy array of exactly ``size``
        """
        target_width, target_height = size
        img = self.from_numpy(arr)
        h_scale = target_width / img.width
        v_scale = target_height / img.height

        resized = img.resize(h_scale, vscale=v_scale, kernel="linear")
        if resized.width != target_width or resized.height != target_height:
            # Rounding in libvips can leave the result one pixel off
            resized = resized.gravity("north-west", target_width, target_height, extend="copy")
        return self.to_numpy(resized, ndim=arr.ndim)

    def encode(self, arr: np.ndarray, fmt: str, quality: int) -> bytes:
        """Encode an image to JPEG or PNG bytes.

        Args:
            arr: numpy array (H, W[, C]) uint8
            fmt: "jpeg" or "png"
            quality: JPEG quality (1-100), ignored for PNG

        Returns:
            Encoded image bytes
        """
        if fmt == "jpeg":
            return self.from_numpy(_drop_alpha(arr)).write_to_buffer(".jpg", Q=quality)
        if fmt == "png":
            return self.from_numpy(arr).write_to_buffer(".png")
        raise ValueError(f"Unsupported format: {fmt!r}")


_BACKENDS: dict[str, type] = {
    PillowBackend.name: PillowBackend,
    VIPSBackend.name: VIPSBackend,
}


def get_backend(name: str | None = None) -> ImageBackend:
    """Get an image processing backend by name.

    Args:
        name: "pillow" or "vips"; defaults to ``fastdz.config.BACKEND``

    Returns:
        Backend instance

    Raises:
        ValueError: If the name is unknown
        RuntimeError: If "vips" is requested but PyVIPS is not available
    """
    if name is None:
        from fastdz.config import BACKEND

        name = BACKEND
    try:
        backend_cls = _BACKENDS[name.lower()]
    except KeyError:
        raise ValueError(
            f"Unknown backend {name!r}; expected one of {sorted(_BACKENDS)}"
        ) from None
    if backend_cls is VIPSBackend and not _HAS_VIPS:
        raise RuntimeError(
            f"PyVIPS is required but not available: {_vips_import_error}\n"
            "Install pyvips and libvips: pip install pyvips\n"
            "On Windows, also install libvips DLLs from: "
            "https://github.com/libvips/build-win64-mxe/releases"
        )
    return backend_cls()
