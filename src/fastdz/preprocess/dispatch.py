"""Concurrent tile encode/store with a single completion barrier.

The pyramid walker hands every planned tile to a ``TileDispatcher`` and
moves on to the next level's downsample while earlier tiles are still being
encoded and written. ``await_all()`` is the only point where the walker
waits for tile work, once, after every level has been submitted.

In-flight tasks are bounded by a semaphore: each one holds a cropped pixel
buffer, so ``submit`` blocks the walker rather than letting buffers pile up
in the executor queue on levels with thousands of tiles.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from typing import Callable

import numpy as np

from fastdz.config import JPEG_QUALITY, MAX_IN_FLIGHT, MAX_WORKERS
from fastdz.core.types import TileCoord, TileRect
from fastdz.errors import BuildCancelled, PyramidIncompleteError, StoreError, TileFailure

from .backends import ImageBackend
from .codec import TileFormat, encode_tile
from .sinks import TileSink

logger = logging.getLogger(__name__)

#: Seconds between cancellation checks while waiting for a free slot
_SLOT_POLL_SECONDS = 0.05


@dataclass
class TileJob:
    """One tile's worth of work; owns its pixel buffer until encoded."""

    coord: TileCoord
    rect: TileRect
    path: str
    fmt: TileFormat
    pixels: np.ndarray | None
    quality: int = JPEG_QUALITY


class TileDispatcher:
    """Runs tile jobs on a thread pool and collects their failures.

    Args:
        sink: Where encoded tiles are stored
        backend: Image backend used for encoding
        max_workers: Encode/store threads
        max_in_flight: Jobs allowed between submit and completion
        cancel_event: Set by the caller (or by a fatal store error) to stop
            the run; a fresh event is created if omitted
        deadline: ``time.monotonic()`` value after which the run is cancelled
        progress_callback: Optional callback(stage, current, total), called
            from worker threads once per finished tile
        total: Expected number of tiles, reported to progress_callback
    """

    def __init__(
        self,
        sink: TileSink,
        backend: ImageBackend,
        max_workers: int = MAX_WORKERS,
        max_in_flight: int = MAX_IN_FLIGHT,
        cancel_event: threading.Event | None = None,
        deadline: float | None = None,
        progress_callback: Callable[[str, int, int], None] | None = None,
        total: int = 0,
    ) -> None:
        if max_workers < 1:
            raise ValueError(f"max_workers must be >= 1, got {max_workers}")
        self._sink = sink
        self._backend = backend
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="fastdz-tile"
        )
        self._slots = threading.BoundedSemaphore(max(max_in_flight, 1))
        self._cancel_event = cancel_event if cancel_event is not None else threading.Event()
        self._deadline = deadline
        self._progress_callback = progress_callback
        self._total = total

        self._lock = threading.Lock()
        self._progress_lock = threading.Lock()
        self._failures: list[TileFailure] = []
        self._cancel_reason: str | None = None
        self._submitted = 0
        self._stored = 0
        self._finished = 0
        self._in_flight = 0
        self._peak_in_flight = 0
        self._awaited = False

    # ------------------------------------------------------------------
    # Cancellation
    # ------------------------------------------------------------------

    def cancel(self, reason: str) -> None:
        """Stop accepting new tiles; tasks already running drain normally."""
        with self._lock:
            if self._cancel_reason is None:
                self._cancel_reason = reason
        if not self._cancel_event.is_set():
            logger.warning("Cancelling pyramid build: %s", reason)
            self._cancel_event.set()

    @property
    def cancelled(self) -> bool:
        if self._cancel_event.is_set():
            return True
        if self._deadline is not None and time.monotonic() >= self._deadline:
            self.cancel("deadline exceeded")
            return True
        return False

    @property
    def cancel_reason(self) -> str | None:
        if not self._cancel_event.is_set():
            return None
        with self._lock:
            return self._cancel_reason or "cancelled by caller"

    # ------------------------------------------------------------------
    # Stats
    # ------------------------------------------------------------------

    @property
    def submitted(self) -> int:
        with self._lock:
            return self._submitted

    @property
    def stored(self) -> int:
        with self._lock:
            return self._stored

    @property
    def peak_in_flight(self) -> int:
        with self._lock:
            return self._peak_in_flight

    @property
    def failures(self) -> list[TileFailure]:
        with self._lock:
            return list(self._failures)

    # ------------------------------------------------------------------
    # Submission
    # ------------------------------------------------------------------

    def submit(self, job: TileJob) -> bool:
        """Schedule a tile job, blocking while the in-flight limit is reached.

        Returns:
            False if the run is cancelled and the job was not scheduled
        """
        if self._awaited:
            raise RuntimeError("Cannot submit tiles after await_all()")
        while not self._slots.acquire(timeout=_SLOT_POLL_SECONDS):
            if self.cancelled:
                return False
        if self.cancelled:
            self._slots.release()
            return False

        with self._lock:
            self._submitted += 1
            self._in_flight += 1
            self._peak_in_flight = max(self._peak_in_flight, self._in_flight)
        try:
            future = self._executor.submit(self._run, job)
        except RuntimeError:
            self._task_done(stored=False)
            raise
        future.add_done_callback(self._on_future_done)
        return True

    def _on_future_done(self, future: Future) -> None:
        # Jobs dropped by cancel_futures never reach _run's own bookkeeping
        if future.cancelled():
            self._task_done(stored=False)
            return
        error = future.exception()
        if error is not None:
            logger.error("Tile task raised after completing: %s", error)

    def _task_done(self, stored: bool) -> None:
        with self._lock:
            self._in_flight -= 1
            self._finished += 1
            if stored:
                self._stored += 1
            finished = self._finished
        try:
            if self._progress_callback is not None:
                with self._progress_lock:
                    self._progress_callback("tiles", finished, self._total)
        except InterruptedError:
            self.cancel("interrupted by progress callback")
        finally:
            self._slots.release()

    def _record(self, job: TileJob, error: BaseException) -> None:
        logger.warning("Tile %s failed: %s", job.coord, error)
        with self._lock:
            self._failures.append(TileFailure(job.coord, job.path, error))

    def _run(self, job: TileJob) -> None:
        stored = False
        try:
            if self.cancelled:
                return
            try:
                data = encode_tile(job.pixels, job.fmt, job.quality, self._backend)
            finally:
                job.pixels = None
            if self.cancelled:
                return
            self._sink.store(job.path, data)
            stored = True
        except StoreError as e:
            self._record(job, e)
            if e.fatal:
                self.cancel(f"fatal store error on tile {job.coord}: {e}")
        except Exception as e:
            self._record(job, e)
        finally:
            job.pixels = None
            self._task_done(stored)

    # ------------------------------------------------------------------
    # Completion barrier
    # ------------------------------------------------------------------

    def await_all(self) -> int:
        """Wait for every submitted tile, then report the outcome.

        Must be called exactly once. When the run was cancelled, jobs still
        queued are dropped and only running ones are waited for.

        Returns:
            Number of tiles stored

        Raises:
            BuildCancelled: If the run was cancelled
            PyramidIncompleteError: If any tile failed to encode or store
            RuntimeError: If called more than once
        """
        if self._awaited:
            raise RuntimeError("await_all() may only be called once")
        self._awaited = True
        self._executor.shutdown(wait=True, cancel_futures=self.cancelled)

        failures = self.failures
        submitted = self.submitted
        reason = self.cancel_reason
        if reason is not None:
            raise BuildCancelled(reason, failures, submitted)
        if failures:
            raise PyramidIncompleteError(failures, submitted)
        return self.stored

    def abort(self, reason: str) -> None:
        """Cancel and drain without raising; used when the walker itself fails."""
        self.cancel(reason)
        if not self._awaited:
            self._awaited = True
            self._executor.shutdown(wait=True, cancel_futures=True)

    def __enter__(self) -> TileDispatcher:
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if exc is not None and not self._awaited:
            self.abort(f"{type(exc).__name__}: {exc}")
