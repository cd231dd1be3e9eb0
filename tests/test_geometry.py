"""Tests for pyramid geometry."""

from __future__ import annotations

import pytest

from fastdz.core.geometry import (
    core_rect,
    level_dimensions,
    level_grid,
    max_level,
    plan_levels,
    tile_count,
    tile_rect,
)
from fastdz.core.types import LevelInfo, TileRect


class TestMaxLevel:
    @pytest.mark.parametrize(
        "width, height, expected",
        [
            (256, 256, 8),
            (257, 256, 9),
            (1, 1, 0),
            (2, 1, 1),
            (3, 1, 2),
            (512, 512, 9),
            (300, 200, 9),
            (1, 1024, 10),
        ],
    )
    def test_values(self, width: int, height: int, expected: int) -> None:
        assert max_level(width, height) == expected


class TestLevelGrid:
    def test_partial_tiles_round_up(self) -> None:
        assert level_grid(500, 500, 256) == (2, 2)

    def test_exact_fit(self) -> None:
        assert level_grid(256, 256, 256) == (1, 1)

    def test_non_square(self) -> None:
        assert level_grid(300, 200, 256) == (2, 1)

    def test_single_pixel(self) -> None:
        assert level_grid(1, 1, 254) == (1, 1)


class TestTileRect:
    def test_first_tile_of_many(self) -> None:
        rect = tile_rect(256, 1, 300, 200, 0, 0, 2, 1)
        assert rect == TileRect(0, 0, 257, 200)

    def test_last_column_ends_at_width(self) -> None:
        rect = tile_rect(256, 1, 300, 200, 1, 0, 2, 1)
        assert rect == TileRect(255, 0, 300, 200)

    def test_single_column_narrower_than_tile_is_clamped(self) -> None:
        rect = tile_rect(256, 1, 200, 200, 0, 0, 1, 1)
        assert rect.right == 200
        assert rect.bottom == 200

    def test_interior_tile_has_overlap_on_both_sides(self) -> None:
        rect = tile_rect(100, 2, 1000, 1000, 3, 4, 10, 10)
        assert rect == TileRect(298, 398, 402, 502)

    def test_zero_overlap_matches_core(self) -> None:
        for col in range(3):
            for row in range(2):
                assert tile_rect(128, 0, 300, 200, col, row, 3, 2) == core_rect(
                    128, 300, 200, col, row
                )

    def test_oversized_overlap_stays_in_bounds(self) -> None:
        rect = tile_rect(4, 10, 10, 10, 1, 1, 3, 3)
        assert rect.left >= 0 and rect.top >= 0
        assert rect.right <= 10 and rect.bottom <= 10

    @pytest.mark.parametrize(
        "width, height, tile_size, overlap",
        [
            (300, 200, 256, 1),
            (512, 512, 256, 0),
            (1000, 37, 64, 3),
            (1, 1, 254, 1),
            (255, 257, 254, 1),
            (17, 5, 4, 3),
        ],
    )
    def test_core_regions_partition_level(
        self, width: int, height: int, tile_size: int, overlap: int
    ) -> None:
        cols, rows = level_grid(width, height, tile_size)
        covered = set()
        area = 0
        for col in range(cols):
            for row in range(rows):
                rect = tile_rect(tile_size, overlap, width, height, col, row, cols, rows)
                core = core_rect(tile_size, width, height, col, row)
                # Core lies inside the full rectangle
                assert rect.left <= core.left and core.right <= rect.right
                assert rect.top <= core.top and core.bottom <= rect.bottom
                assert 0 <= rect.left < rect.right <= width
                assert 0 <= rect.top < rect.bottom <= height
                area += core.area
                covered.add((core.left, core.top, core.right, core.bottom))
        assert area == width * height
        assert len(covered) == cols * rows


class TestPlanLevels:
    def test_level_dimensions_halve_with_ceiling(self) -> None:
        dims = level_dimensions(300, 200)
        assert dims[-1] == (300, 200)
        assert dims[-2] == (150, 100)
        assert dims[-4] == (38, 25)
        assert dims[0] == (1, 1)
        assert len(dims) == max_level(300, 200) + 1

    def test_scenario_512(self) -> None:
        levels = plan_levels(512, 512, 256)
        assert [l.level for l in levels] == list(range(10))
        assert levels[9] == LevelInfo(level=9, width=512, height=512, cols=2, rows=2, downsample=1)
        assert levels[0] == LevelInfo(level=0, width=1, height=1, cols=1, rows=1, downsample=512)

    def test_single_pixel_image(self) -> None:
        assert plan_levels(1, 1, 254) == [
            LevelInfo(level=0, width=1, height=1, cols=1, rows=1, downsample=1)
        ]

    def test_tile_count_sums_levels(self) -> None:
        # 2x2 at level 9, then one tile per level for levels 0..8
        assert tile_count(512, 512, 256) == 4 + 9

    def test_plans_are_deterministic(self) -> None:
        assert plan_levels(4097, 3001, 254) == plan_levels(4097, 3001, 254)
