"""Tile encoding."""

from __future__ import annotations

from enum import Enum

import numpy as np

from fastdz.config import JPEG_QUALITY
from fastdz.errors import ConfigError, EncodeError

from .backends import ImageBackend, get_backend


class TileFormat(str, Enum):
    """Tile image format; the value is also the tile file extension."""

    JPEG = "jpeg"
    PNG = "png"

    @property
    def extension(self) -> str:
        return self.value

    @property
    def lossless(self) -> bool:
        return self is TileFormat.PNG

    @classmethod
    def parse(cls, value: str | TileFormat) -> TileFormat:
        """Resolve a format name ("jpeg", "jpg", "png", case-insensitive).

        Raises:
            ConfigError: If the name is not a supported format
        """
        if isinstance(value, cls):
            return value
        name = str(value).strip().lower()
        if name == "jpg":
            name = "jpeg"
        try:
            return cls(name)
        except ValueError:
            raise ConfigError(
                f"Unrecognized tile format {value!r}; expected one of "
                f"{[f.value for f in cls]}"
            ) from None


def encode_tile(
    pixels: np.ndarray | None,
    fmt: TileFormat | str,
    quality: int = JPEG_QUALITY,
    backend: ImageBackend | None = None,
) -> bytes:
    """Encode a tile's pixel buffer.

    Args:
        pixels: numpy array (H, W[, C]) uint8
        fmt: Target format
        quality: JPEG quality (1-100), ignored for PNG
        backend: Image backend, defaults to the configured one

    Returns:
        Encoded bytes

    Raises:
        EncodeError: If the buffer is empty, the format is unrecognized,
            or the backend fails
    """
    if pixels is None or pixels.size == 0:
        raise EncodeError("Cannot encode an empty pixel buffer")
    try:
        fmt = TileFormat.parse(fmt)
    except ConfigError as e:
        raise EncodeError(str(e)) from e
    if backend is None:
        backend = get_backend()
    try:
        return backend.encode(pixels, fmt.value, quality)
    except Exception as e:
        raise EncodeError(f"{backend.name} failed to encode {fmt.value} tile: {e}") from e
