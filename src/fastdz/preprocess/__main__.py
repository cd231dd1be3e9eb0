"""CLI entry point for fastdz pyramid generation."""

from __future__ import annotations

import logging
import shutil
import sys
from concurrent.futures import ProcessPoolExecutor, as_completed
from pathlib import Path

import click
from tqdm import tqdm

from fastdz.config import (
    BACKEND,
    DEFAULT_OVERLAP,
    DEFAULT_PARALLEL_IMAGES,
    DEFAULT_TILE_SIZE,
    IMAGE_EXTENSIONS,
    JPEG_QUALITY,
    MAX_WORKERS,
)

logger = logging.getLogger(__name__)

from fastdz.core.paths import descriptor_path_for_image, files_dir_for_image
from .backends import get_vips_import_error, is_vips_available
from .worker import process_single_image


def is_image_file(path: Path) -> bool:
    """Check if a file is a supported image format."""
    return path.suffix.lower() in IMAGE_EXTENSIONS


def find_image_files(path: Path) -> list[Path]:
    """Find all image files in a path (file or directory)."""
    path = Path(path)
    if path.is_file():
        if is_image_file(path):
            return [path]
        return []
    elif path.is_dir():
        # Use set to avoid duplicates on case-insensitive filesystems (Windows)
        files = set()
        for ext in IMAGE_EXTENSIONS:
            files.update(path.glob(f"*{ext}"))
            files.update(path.glob(f"*{ext.upper()}"))
        return sorted(files)
    return []


def _check_prerequisites(backend: str) -> None:
    """Check that the selected backend can be used.

    Exits the process with an error message if not.
    """
    if backend == "vips" and not is_vips_available():
        click.echo(click.style(
            "Error: the vips backend requires pyvips and libvips "
            f"({get_vips_import_error()}). Install them or use --backend pillow.",
            fg="red"
        ), err=True)
        sys.exit(1)


def _print_header(
    image_files: list[Path], output_dir: Path, tile_size: int, overlap: int,
    tile_format: str, quality: int, force: bool,
) -> None:
    """Print the CLI banner with processing parameters."""
    click.echo(click.style("fastdz Deep Zoom Generation", fg="cyan", bold=True))
    click.echo(click.style("=" * 40, fg="cyan"))
    click.echo(f"Found {len(image_files)} image(s)")
    click.echo(f"Output directory: {output_dir}")
    format_label = f"JPEG Q{quality}" if tile_format == "jpeg" else "PNG"
    click.echo(f"Tile size: {tile_size}px | Overlap: {overlap}px | {format_label}")
    if force:
        click.echo(click.style("Force mode: will rebuild existing pyramids", fg="yellow"))
    click.echo()


def _process_images(
    image_files: list[Path],
    output_dir: Path,
    tile_size: int,
    overlap: int,
    tile_format: str,
    quality: int,
    backend: str,
    workers: int,
    parallel_images: int,
    force: bool,
) -> tuple[int, int, int, list[tuple[Path, str]]]:
    """Process images in parallel using ProcessPoolExecutor.

    Returns:
        Tuple of (success_count, skipped_count, error_count, errors)
    """
    success_count = 0
    skipped_count = 0
    error_count = 0
    errors: list[tuple[Path, str]] = []

    with ProcessPoolExecutor(max_workers=parallel_images) as executor:
        futures = {
            executor.submit(
                process_single_image,
                f,
                output_dir,
                tile_size,
                overlap,
                tile_format,
                quality,
                backend,
                workers,
                force,
            ): f
            for f in image_files
        }

        with tqdm(total=len(image_files), desc="Generating pyramids") as pbar:
            for future in as_completed(futures):
                image_path = futures[future]
                try:
                    result, error, was_skipped = future.result()
                except Exception as e:
                    # Worker crashed - log error and clean up partial output
                    logger.error("Worker crashed processing %s: %s", image_path, e)
                    error_count += 1
                    errors.append((image_path, str(e)))
                    click.echo(f"\nWorker crashed processing {image_path.name}: {e}", err=True)
                    _clean_partial_output(image_path, output_dir)
                    pbar.update(1)
                    continue

                if error:
                    error_count += 1
                    errors.append((image_path, error))
                    click.echo(f"\nError processing {image_path.name}: {error}", err=True)
                elif was_skipped:
                    skipped_count += 1
                else:
                    success_count += 1
                pbar.update(1)

    return success_count, skipped_count, error_count, errors


def _clean_partial_output(image_path: Path, output_dir: Path) -> None:
    partial_output = files_dir_for_image(image_path, output_dir)
    if partial_output.exists():
        try:
            shutil.rmtree(partial_output)
            click.echo(f"  Cleaned up partial output: {partial_output}", err=True)
        except OSError as cleanup_err:
            click.echo(f"  Failed to clean up partial output: {cleanup_err}", err=True)
    descriptor_path_for_image(image_path, output_dir).unlink(missing_ok=True)


def _print_summary(
    success_count: int,
    skipped_count: int,
    error_count: int,
    errors: list[tuple[Path, str]],
    force: bool,
) -> None:
    """Print the colored processing summary and exit with error if any failures."""
    click.echo()
    click.echo(click.style("=" * 40, fg="cyan"))

    parts = []
    if success_count > 0:
        parts.append(click.style(f"{success_count} processed", fg="green"))
    if skipped_count > 0:
        parts.append(click.style(f"{skipped_count} skipped", fg="cyan"))
    if error_count > 0:
        parts.append(click.style(f"{error_count} failed", fg="red"))

    summary = ", ".join(parts) if parts else "Nothing to process"
    click.echo(click.style("Completed: ", bold=True) + summary)

    if skipped_count > 0 and not force:
        click.echo(click.style("  (use --force to rebuild skipped images)", fg="cyan"))

    if errors:
        click.echo()
        click.echo(click.style("Failed images:", fg="red"))
        for path, error in errors:
            click.echo(f"  {path.name}: {error}")
        sys.exit(1)


@click.command()
@click.argument("input_path", type=click.Path(exists=True))
@click.option(
    "-o",
    "--output",
    type=click.Path(),
    default="./output",
    help="Output directory for .dzi files and tile folders",
)
@click.option(
    "--tile-size",
    "-t",
    type=click.IntRange(1, 4096),
    default=DEFAULT_TILE_SIZE,
    help=f"Tile size in pixels (default: {DEFAULT_TILE_SIZE})",
)
@click.option(
    "--overlap",
    type=click.IntRange(0, 64),
    default=DEFAULT_OVERLAP,
    help=f"Tile overlap in pixels (default: {DEFAULT_OVERLAP})",
)
@click.option(
    "--format",
    "tile_format",
    type=click.Choice(["jpeg", "png"], case_sensitive=False),
    default="jpeg",
    help="Tile format (default: jpeg)",
)
@click.option(
    "--quality",
    "-q",
    type=click.IntRange(1, 100),
    default=JPEG_QUALITY,
    help=f"JPEG quality (default: {JPEG_QUALITY})",
)
@click.option(
    "--backend",
    type=click.Choice(["pillow", "vips"], case_sensitive=False),
    default=BACKEND,
    help=f"Image backend for resize and encode (default: {BACKEND})",
)
@click.option(
    "--workers",
    "-w",
    type=click.IntRange(1, 256),
    default=MAX_WORKERS,
    help=f"Tile threads per image (default: {MAX_WORKERS})",
)
@click.option(
    "--parallel-images",
    "-p",
    type=click.IntRange(1, 64),
    default=DEFAULT_PARALLEL_IMAGES,
    help=f"Process multiple images in parallel (default: {DEFAULT_PARALLEL_IMAGES})",
)
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Force rebuild even if the image already has a complete pyramid",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
def main(
    input_path: str,
    output: str,
    tile_size: int,
    overlap: int,
    tile_format: str,
    quality: int,
    backend: str,
    workers: int,
    parallel_images: int,
    force: bool,
    verbose: bool,
) -> None:
    """Generate Deep Zoom tile pyramids from images.

    INPUT_PATH can be a single image or a directory containing images.
    Each image produces NAME.dzi and NAME_files/ in the output directory.

    Examples:

        # Process a single image
        python -m fastdz.preprocess photo.png -o ./output/

        # Process all images in a directory as PNG tiles
        python -m fastdz.preprocess ./images/ -o ./output/ --format png

        # 256px tiles without overlap
        python -m fastdz.preprocess photo.jpg -o ./output/ -t 256 --overlap 0
    """
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    input_path = Path(input_path)
    output_dir = Path(output)
    tile_format = tile_format.lower()
    backend = backend.lower()

    image_files = find_image_files(input_path)
    if not image_files:
        click.echo(f"No image files found in {input_path}", err=True)
        sys.exit(1)

    _check_prerequisites(backend)
    _print_header(image_files, output_dir, tile_size, overlap, tile_format, quality, force)

    output_dir.mkdir(parents=True, exist_ok=True)

    success, skipped, error_count, errors = _process_images(
        image_files, output_dir, tile_size, overlap, tile_format, quality,
        backend, workers, parallel_images, force,
    )
    _print_summary(success, skipped, error_count, errors, force)


if __name__ == "__main__":
    main()
