"""Test fixtures for fastdz tests."""

from __future__ import annotations

import tempfile
import threading
from pathlib import Path
from typing import Generator

import numpy as np
import pytest

from fastdz.errors import StoreError
from fastdz.preprocess.backends import PillowBackend
from fastdz.preprocess.sinks import MemorySink


class FailingSink(MemorySink):
    """MemorySink that raises StoreError for selected paths."""

    def __init__(self, fail_paths: set[str] | None = None, fatal: bool = False) -> None:
        super().__init__()
        self.fail_paths = set(fail_paths or ())
        self.fatal = fatal
        self.attempts = 0
        self._attempt_lock = threading.Lock()

    def store(self, path: str, data: bytes) -> None:
        with self._attempt_lock:
            self.attempts += 1
        if path in self.fail_paths:
            raise StoreError(f"refusing to store {path}", fatal=self.fatal)
        super().store(path, data)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory that's cleaned up after tests."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def sample_rgb_array() -> np.ndarray:
    """Create a simple RGB test image as numpy array with some patterns."""
    # Create 512x512 image with colored quadrants
    img = np.full((512, 512, 3), 255, dtype=np.uint8)

    # Top-left: red
    img[0:256, 0:256] = [200, 50, 50]

    # Top-right: green
    img[0:256, 256:512] = [50, 200, 50]

    # Bottom-left: blue
    img[256:512, 0:256] = [50, 50, 200]

    # Bottom-right: purple
    img[256:512, 256:512] = [150, 50, 150]

    return img


@pytest.fixture
def gradient_array() -> np.ndarray:
    """A 200x300 RGB gradient, so every tile has distinct content."""
    ys, xs = np.mgrid[0:200, 0:300]
    img = np.zeros((200, 300, 3), dtype=np.uint8)
    img[:, :, 0] = (xs * 255 // 299).astype(np.uint8)
    img[:, :, 1] = (ys * 255 // 199).astype(np.uint8)
    img[:, :, 2] = 128
    return img


@pytest.fixture
def memory_sink() -> MemorySink:
    return MemorySink()


@pytest.fixture
def backend() -> PillowBackend:
    return PillowBackend()


@pytest.fixture
def failing_sink() -> type[FailingSink]:
    """The FailingSink class, for tests that build their own fault plan."""
    return FailingSink
