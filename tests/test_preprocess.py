"""Tests for the pyramid walker and the on-disk preprocessing pipeline."""

from __future__ import annotations

import gc
import io
import json
import threading
import weakref
from pathlib import Path

import numpy as np
import pytest
from PIL import Image

from fastdz.core.geometry import tile_count
from fastdz.errors import BuildCancelled, DownsampleError, PyramidIncompleteError
from fastdz.preprocess.backends import PillowBackend
from fastdz.preprocess.codec import TileFormat
from fastdz.preprocess.metadata import PyramidStatus, check_pyramid_status
from fastdz.preprocess.pyramid import PyramidBuilder, PyramidSpec, build_pyramid
from fastdz.preprocess.sinks import MemorySink


def _decode(data: bytes) -> np.ndarray:
    with Image.open(io.BytesIO(data)) as img:
        return np.asarray(img.convert("RGB"))


def _builder(spec: PyramidSpec, **kwargs) -> PyramidBuilder:
    kwargs.setdefault("max_workers", 4)
    kwargs.setdefault("max_in_flight", 8)
    return PyramidBuilder(spec, backend=kwargs.pop("backend", PillowBackend()), **kwargs)


class TestPyramidBuilder:
    """End-to-end pyramid generation into a memory sink."""

    def test_scenario_512_png(self, sample_rgb_array: np.ndarray, memory_sink: MemorySink):
        spec = PyramidSpec(
            width=512, height=512, root="out", sink=memory_sink,
            tile_size=256, overlap=0, tile_format="png",
        )
        report = _builder(spec).build(sample_rgb_array)

        assert report.levels == 10
        assert report.tiles_stored == tile_count(512, 512, 256) == 13
        expected = {f"out/9/{c}_{r}.png" for c in range(2) for r in range(2)}
        expected |= {f"out/{level}/0_0.png" for level in range(9)}
        assert memory_sink.paths() == expected

        for col, row in [(0, 0), (1, 0), (0, 1), (1, 1)]:
            tile = _decode(memory_sink.files[f"out/9/{col}_{row}.png"])
            assert tile.shape == (256, 256, 3)
        # Lossless tiles reproduce the source quadrants
        np.testing.assert_array_equal(
            _decode(memory_sink.files["out/9/1_1.png"]), sample_rgb_array[256:, 256:]
        )
        assert _decode(memory_sink.files["out/0/0_0.png"]).shape == (1, 1, 3)
        assert _decode(memory_sink.files["out/8/0_0.png"]).shape == (256, 256, 3)

    def test_scenario_300x200_jpeg_overlap(
        self, gradient_array: np.ndarray, memory_sink: MemorySink
    ):
        spec = PyramidSpec(
            width=300, height=200, root="out/", sink=memory_sink,
            tile_size=256, overlap=1, tile_format=TileFormat.JPEG,
        )
        _builder(spec).build(gradient_array)

        level9 = sorted(p for p in memory_sink.paths() if p.startswith("out/9/"))
        assert level9 == ["out/9/0_0.jpeg", "out/9/1_0.jpeg"]
        assert _decode(memory_sink.files["out/9/0_0.jpeg"]).shape == (200, 257, 3)
        assert _decode(memory_sink.files["out/9/1_0.jpeg"]).shape == (200, 45, 3)
        # Level 8 is 150x100, a single tile narrower than tile_size
        assert _decode(memory_sink.files["out/8/0_0.jpeg"]).shape == (100, 150, 3)
        assert _decode(memory_sink.files["out/0/0_0.jpeg"]).shape == (1, 1, 3)
        assert len(memory_sink) == tile_count(300, 200, 256)

    def test_overlap_pixels_come_from_neighbour(
        self, gradient_array: np.ndarray, memory_sink: MemorySink
    ):
        spec = PyramidSpec(
            width=300, height=200, root="out", sink=memory_sink,
            tile_size=100, overlap=2, tile_format="png",
        )
        _builder(spec).build(gradient_array)
        np.testing.assert_array_equal(
            _decode(memory_sink.files["out/9/1_1.png"]), gradient_array[98:200, 98:202]
        )

    def test_grayscale_image(self, memory_sink: MemorySink):
        gray = np.arange(64 * 48, dtype=np.uint32).reshape(48, 64).astype(np.uint8)
        spec = PyramidSpec(
            width=64, height=48, root="g", sink=memory_sink, tile_size=32, tile_format="png",
        )
        report = _builder(spec).build(gray)
        assert report.tiles_stored == tile_count(64, 48, 32)
        with Image.open(io.BytesIO(memory_sink.files["g/6/1_1.png"])) as img:
            assert img.mode == "L"
            assert img.size == (32, 16)

    def test_single_pixel_image(self, memory_sink: MemorySink):
        spec = PyramidSpec(width=1, height=1, root="one", sink=memory_sink, tile_format="png")
        report = _builder(spec).build(np.zeros((1, 1, 3), dtype=np.uint8))
        assert report.levels == 1
        assert memory_sink.paths() == {"one/0/0_0.png"}

    def test_runs_are_idempotent(self, gradient_array: np.ndarray):
        sinks = []
        for _ in range(2):
            sink = MemorySink()
            spec = PyramidSpec(
                width=300, height=200, root="out", sink=sink,
                tile_size=64, overlap=1, tile_format="png",
            )
            _builder(spec).build(gradient_array)
            sinks.append(sink)
        assert sinks[0].paths() == sinks[1].paths()
        for path in sinks[0].paths():
            assert sinks[0].files[path] == sinks[1].files[path]

    def test_source_image_is_not_mutated(self, gradient_array: np.ndarray):
        original = gradient_array.copy()
        spec = PyramidSpec(
            width=300, height=200, root="out", sink=MemorySink(), tile_size=64, overlap=1,
        )
        _builder(spec).build(gradient_array)
        np.testing.assert_array_equal(gradient_array, original)

    def test_downsample_overlaps_tile_storage(self, sample_rgb_array: np.ndarray):
        """Tiles of a level are still being stored while the next level is resized."""
        resized = threading.Event()
        seen_before_store: list[bool] = []

        class SignallingBackend(PillowBackend):
            def resize(self, arr, size):
                result = super().resize(arr, size)
                resized.set()
                return result

        class WaitingSink(MemorySink):
            def store(self, path, data):
                seen_before_store.append(resized.wait(timeout=5))
                super().store(path, data)

        spec = PyramidSpec(
            width=512, height=512, root="out", sink=WaitingSink(), tile_size=256,
            tile_format="png",
        )
        _builder(spec, backend=SignallingBackend()).build(sample_rgb_array)
        assert seen_before_store and all(seen_before_store)

    def test_in_flight_bound_respected(self, sample_rgb_array: np.ndarray):
        spec = PyramidSpec(
            width=512, height=512, root="out", sink=MemorySink(), tile_size=16,
            tile_format="png",
        )
        report = _builder(spec, max_workers=2, max_in_flight=3).build(sample_rgb_array)
        assert report.tiles_stored == tile_count(512, 512, 16)
        assert report.peak_in_flight <= 3

    def test_progress_callback_stages(self, sample_rgb_array: np.ndarray):
        calls: list[tuple[str, int, int]] = []
        spec = PyramidSpec(
            width=512, height=512, root="out", sink=MemorySink(), tile_size=256,
            tile_format="png",
        )
        _builder(spec).build(
            sample_rgb_array,
            progress_callback=lambda stage, cur, tot: calls.append((stage, cur, tot)),
        )
        levels = [c for c in calls if c[0] == "level"]
        tiles = [c for c in calls if c[0] == "tiles"]
        assert levels[-1] == ("level", 10, 10)
        assert len(tiles) == 13
        assert max(cur for _, cur, _ in tiles) == 13


class TestPyramidBuilderFailures:
    def test_single_failed_tile_is_reported(self, sample_rgb_array: np.ndarray, failing_sink):
        sink = failing_sink({"out/9/3_5.png"})
        spec = PyramidSpec(
            width=512, height=512, root="out", sink=sink, tile_size=64, tile_format="png",
        )
        total = tile_count(512, 512, 64)

        with pytest.raises(PyramidIncompleteError) as exc_info:
            _builder(spec).build(sample_rgb_array)

        assert exc_info.value.total == total
        assert [(c.level, c.col, c.row) for c in exc_info.value.failed_coords] == [(9, 3, 5)]
        assert len(sink) == total - 1

    def test_fatal_store_error_stops_walker(self, sample_rgb_array: np.ndarray, failing_sink):
        spec_paths = {
            f"out/9/{c}_{r}.png" for c in range(32) for r in range(32)
        }
        sink = failing_sink(spec_paths, fatal=True)
        spec = PyramidSpec(
            width=512, height=512, root="out", sink=sink, tile_size=16, tile_format="png",
        )
        with pytest.raises(BuildCancelled) as exc_info:
            _builder(spec, max_workers=2, max_in_flight=2).build(sample_rgb_array)
        assert "fatal store error" in exc_info.value.reason
        assert sink.attempts < len(spec_paths)
        assert len(sink) == 0

    def test_downsample_failure_is_fatal(self, sample_rgb_array: np.ndarray):
        class BrokenResize(PillowBackend):
            def resize(self, arr, size):
                raise MemoryError("out of memory")

        sink = MemorySink()
        spec = PyramidSpec(
            width=512, height=512, root="out", sink=sink, tile_size=256, tile_format="png",
        )
        with pytest.raises(DownsampleError, match="level 8"):
            _builder(spec, backend=BrokenResize()).build(sample_rgb_array)
        assert not any(p.startswith("out/8/") for p in sink.paths())

    def test_wrong_resize_size_is_fatal(self, sample_rgb_array: np.ndarray):
        class SloppyResize(PillowBackend):
            def resize(self, arr, size):
                return super().resize(arr, (size[0] + 1, size[1]))

        spec = PyramidSpec(
            width=512, height=512, root="out", sink=MemorySink(), tile_size=256,
        )
        with pytest.raises(DownsampleError, match="expected 256x256"):
            _builder(spec, backend=SloppyResize()).build(sample_rgb_array)

    def test_cancel_event_before_start(self, sample_rgb_array: np.ndarray):
        event = threading.Event()
        event.set()
        sink = MemorySink()
        spec = PyramidSpec(width=512, height=512, root="out", sink=sink, tile_size=256)
        with pytest.raises(BuildCancelled):
            _builder(spec).build(sample_rgb_array, cancel_event=event)
        assert len(sink) == 0

    def test_zero_timeout_cancels(self, sample_rgb_array: np.ndarray):
        spec = PyramidSpec(width=512, height=512, root="out", sink=MemorySink(), tile_size=256)
        with pytest.raises(BuildCancelled, match="deadline exceeded"):
            _builder(spec).build(sample_rgb_array, timeout=0)

    def test_level_progress_interrupt_cancels(self, sample_rgb_array: np.ndarray):
        def interrupt(stage, current, total):
            if stage == "level":
                raise InterruptedError("stop")

        sink = MemorySink()
        spec = PyramidSpec(
            width=512, height=512, root="out", sink=sink, tile_size=256, tile_format="png",
        )
        with pytest.raises(BuildCancelled, match="interrupted"):
            _builder(spec).build(sample_rgb_array, progress_callback=interrupt)
        assert not any(p.startswith("out/8/") for p in sink.paths())


class TestBuildPyramid:
    """On-disk generation from an image file."""

    @pytest.fixture
    def source_png(self, temp_dir: Path, gradient_array: np.ndarray) -> Path:
        path = temp_dir / "gradient.png"
        Image.fromarray(gradient_array).save(path)
        return path

    def test_writes_descriptor_tiles_and_metadata(self, temp_dir: Path, source_png: Path):
        out = temp_dir / "out"
        result = build_pyramid(
            source_png, out, tile_size=128, overlap=1, tile_format="png",
            backend=PillowBackend(), max_workers=2,
        )

        assert result == out / "gradient.dzi"
        dzi = result.read_text()
        assert 'TileSize="128"' in dzi
        assert 'Overlap="1"' in dzi
        assert 'Format="png"' in dzi
        assert '<Size Width="300" Height="200"/>' in dzi

        files_dir = out / "gradient_files"
        assert (files_dir / "9" / "0_0.png").exists()
        assert (files_dir / "9" / "2_1.png").exists()
        assert (files_dir / "0" / "0_0.png").exists()
        assert not list(files_dir.rglob("*.tmp"))

        metadata = json.loads((files_dir / "metadata.json").read_text())
        assert metadata["dimensions"] == [300, 200]
        assert metadata["tile_count"] == tile_count(300, 200, 128)
        assert len(metadata["levels"]) == 10
        assert metadata["levels"][-1]["cols"] == 3

        assert check_pyramid_status(files_dir, result) == PyramidStatus.COMPLETE

    def test_skips_complete_unless_forced(self, temp_dir: Path, source_png: Path):
        out = temp_dir / "out"
        kwargs = dict(tile_size=128, tile_format="png", backend=PillowBackend(), max_workers=2)
        assert build_pyramid(source_png, out, **kwargs) is not None
        assert build_pyramid(source_png, out, **kwargs) is None
        assert build_pyramid(source_png, out, force=True, **kwargs) == out / "gradient.dzi"

    def test_incomplete_output_is_rebuilt(self, temp_dir: Path, source_png: Path):
        out = temp_dir / "out"
        kwargs = dict(tile_size=128, tile_format="png", backend=PillowBackend(), max_workers=2)
        build_pyramid(source_png, out, **kwargs)
        missing = out / "gradient_files" / "9" / "1_1.png"
        missing.unlink()
        assert (
            check_pyramid_status(out / "gradient_files", out / "gradient.dzi")
            == PyramidStatus.INCOMPLETE
        )

        assert build_pyramid(source_png, out, **kwargs) is not None
        assert missing.exists()

    @pytest.mark.parametrize(
        "changed",
        [
            {"tile_size": 64, "tile_format": "png"},
            {"tile_size": 128, "tile_format": "jpeg"},
            {"tile_size": 128, "tile_format": "png", "overlap": 2},
        ],
    )
    def test_changed_settings_trigger_rebuild(
        self, temp_dir: Path, source_png: Path, changed: dict
    ):
        out = temp_dir / "out"
        common = dict(backend=PillowBackend(), max_workers=2)
        assert build_pyramid(source_png, out, tile_size=128, tile_format="png", **common)

        result = build_pyramid(source_png, out, **changed, **common)

        assert result == out / "gradient.dzi"
        dzi = result.read_text()
        assert f'TileSize="{changed["tile_size"]}"' in dzi
        assert f'Format="{changed["tile_format"]}"' in dzi
        assert f'Overlap="{changed.get("overlap", 0)}"' in dzi
        metadata = json.loads((out / "gradient_files" / "metadata.json").read_text())
        assert metadata["tile_size"] == changed["tile_size"]
        assert metadata["overlap"] == changed.get("overlap", 0)

    def test_smaller_tiles_replace_old_tree(self, temp_dir: Path, source_png: Path):
        out = temp_dir / "out"
        common = dict(backend=PillowBackend(), max_workers=2)
        build_pyramid(source_png, out, tile_size=128, tile_format="jpeg", **common)
        build_pyramid(source_png, out, tile_size=64, tile_format="png", **common)

        files_dir = out / "gradient_files"
        assert (files_dir / "9" / "4_3.png").exists()
        assert not list(files_dir.rglob("*.jpeg"))

    def test_full_resolution_released_after_first_downsample(
        self,
        monkeypatch: pytest.MonkeyPatch,
        temp_dir: Path,
        source_png: Path,
        gradient_array: np.ndarray,
    ):
        refs: list[weakref.ref] = []
        alive: list[bool] = []

        def tracked_load(path):
            arr = gradient_array.copy()
            refs.append(weakref.ref(arr))
            return arr

        class TrackingBackend(PillowBackend):
            def resize(self, arr, size):
                gc.collect()
                alive.append(refs[0]() is not None)
                return super().resize(arr, size)

        monkeypatch.setattr("fastdz.preprocess.pyramid.load_image", tracked_load)
        build_pyramid(
            source_png, temp_dir / "out", tile_size=128, tile_format="png",
            backend=TrackingBackend(), max_workers=2,
        )

        # Level 9 is resized from full resolution; later levels are not
        assert len(alive) == 9
        assert alive[0] is True
        assert not any(alive[1:])
        assert refs[0]() is None
