"""Command-line interface for photopress."""
import argparse
import sys
import logging
from dataclasses import replace
from pathlib import Path
from typing import List, Optional

from .config import AppSettings, ConfigError, load_settings, save_settings
from .encoders import OutputFormat, human_file_size
from .image_ops import CropRect, rotated_bounding_box
from .repository import LoadError, read_source_file
from .services import Deliverable, ImageService, UserFacingError

logger = logging.getLogger(__name__)


def setup_logging(verbose: bool = False):
    """Set up logging configuration."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )


def parse_crop(value: str) -> CropRect:
    """Parse 'x,y,width,height' into a CropRect."""
    try:
        x, y, width, height = (float(part) for part in value.split(","))
    except ValueError:
        raise argparse.ArgumentTypeError(f"Crop must be x,y,width,height, got {value!r}") from None
    if width < 1 or height < 1:
        raise argparse.ArgumentTypeError("Crop width and height must be at least 1")
    return CropRect(x, y, width, height)


def collect_inputs(paths: List[Path]) -> List[Path]:
    """Expand directories into their files, sorted by name."""
    files: List[Path] = []
    for path in paths:
        if path.is_dir():
            files.extend(sorted(p for p in path.iterdir() if p.is_file()))
        elif path.is_file():
            files.append(path)
        else:
            logger.warning(f"Input does not exist: {path}")
    return files


def write_deliverable(deliverable: Deliverable, output_dir: Path) -> Path:
    """Write a delivered file into output_dir without overwriting existing files."""
    output_dir.mkdir(parents=True, exist_ok=True)
    dst = output_dir / deliverable.file_name
    counter = 1
    while dst.exists():
        stem = Path(deliverable.file_name).stem
        dst = output_dir / f"{stem}_{counter}{Path(deliverable.file_name).suffix}"
        counter += 1
    dst.write_bytes(deliverable.data)
    logger.info(f"Wrote {dst} ({human_file_size(deliverable.size)})")
    return dst


def save_defaults(
    settings: AppSettings,
    output_format: Optional[str],
    quality: Optional[int],
    keep_aspect: bool
) -> AppSettings:
    """
    Store the given options as defaults for future runs.

    Returns:
        The updated settings, or the unchanged ones if saving failed
    """
    updated = replace(
        settings,
        default_format=output_format or settings.default_format,
        default_quality=settings.default_quality if quality is None else quality,
        keep_aspect_ratio=keep_aspect,
    )
    try:
        save_settings(updated)
    except ConfigError as e:
        logger.error(f"Could not save defaults: {e}")
        return settings
    return updated


def _log_progress(message: Optional[str]) -> None:
    if message:
        logger.info(message)


def run_headless(
    inputs: List[Path],
    output_dir: Path,
    output_format: Optional[str] = None,
    quality: Optional[int] = None,
    width: Optional[int] = None,
    height: Optional[int] = None,
    rotate: float = 0.0,
    crop: Optional[CropRect] = None,
    keep_aspect: bool = True,
    settings: AppSettings = None
) -> int:
    """
    Load, edit and export images without a UI.

    The same edits are applied to every input. Output is a single file for
    one image and a ZIP archive for several.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    settings = settings or load_settings()
    service = ImageService(settings)
    service.set_progress_callback(_log_progress)

    try:
        sources = []
        for path in collect_inputs(inputs):
            try:
                sources.append(read_source_file(path))
            except LoadError as e:
                logger.warning(str(e))

        results = service.import_files(sources)
        rejected = [r for r in results if not r.accepted]
        for result in rejected:
            logger.warning(f"Skipped {result.file_name}: {result.reason}")
        if not len(service.state):
            raise UserFacingError("No valid images to process")

        for record in service.state:
            if rotate or crop is not None:
                area = crop
                if area is None:
                    box_w, box_h = rotated_bounding_box(record.working.width, record.working.height, rotate)
                    area = CropRect(0, 0, box_w, box_h)
                service.state.update_crop(record.id, rotation=rotate)
                service.state.complete_crop(record.id, area)
                service.state.apply_crop(record.id)
            # Both sides given means an explicit size
            service.state.set_keep_aspect(record.id, keep_aspect and (width is None or height is None))
            if width is not None:
                service.state.set_dimension(record.id, "width", width)
            if height is not None:
                service.state.set_dimension(record.id, "height", height)
            if output_format is not None:
                service.state.set_format(record.id, output_format)
            if quality is not None:
                service.state.set_quality(record.id, quality)

        outcome = service.export_all(deliver=lambda d: write_deliverable(d, output_dir))
        for item in outcome.failed:
            logger.error(f"Failed to export {item.name}: {item.error}")
        logger.info(f"{outcome.summary()}, total output {human_file_size(service.state.total_output_size())}")
        return 0 if outcome.exported else 1

    except UserFacingError as e:
        logger.error(str(e))
        return 1
    finally:
        service.state.clear()


def main(argv: Optional[List[str]] = None):
    """Main entry point for CLI."""
    parser = argparse.ArgumentParser(
        description="photopress - compress, resize, crop and convert images",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  # Convert one photo to WebP at 70% quality
  photopress photo.png --format webp --quality 70

  # Resize a folder of images to 1000px wide and bundle them as a ZIP
  photopress ./shots --width 1000 --output ./out

  # Rotate by 90 degrees and save as a one-page PDF
  photopress scan.jpg --rotate 90 --format pdf

  # Make WebP at 75% the default for later runs
  photopress photo.png --format webp --quality 75 --save-defaults
        """
    )

    parser.add_argument('inputs', nargs='+', type=Path, help='Image files or directories')
    parser.add_argument('--output', '-o', type=Path, default=Path('.'),
                        help='Directory for the exported file (default: current directory)')
    parser.add_argument('--format', '-f', choices=[f.value for f in OutputFormat], default=None,
                        help='Output format (default: from settings)')
    parser.add_argument('--quality', '-q', type=int, default=None,
                        help='Quality 10-100 for lossy formats (default: from settings)')
    parser.add_argument('--width', type=int, default=None, help='Target width in pixels')
    parser.add_argument('--height', type=int, default=None, help='Target height in pixels')
    parser.add_argument('--rotate', type=float, default=0.0, help='Rotation in degrees, clockwise')
    parser.add_argument('--crop', type=parse_crop, default=None,
                        help='Crop rectangle x,y,width,height on the rotated image')
    parser.add_argument('--stretch', action='store_true',
                        help='Do not keep the original aspect ratio when only one side is given')
    parser.add_argument('--save-defaults', action='store_true',
                        help='Remember --format, --quality and --stretch for future runs')
    parser.add_argument('--verbose', '-v', action='store_true', help='Enable verbose logging')

    args = parser.parse_args(argv)
    setup_logging(args.verbose)

    settings = load_settings()
    if args.save_defaults:
        settings = save_defaults(settings, args.format, args.quality, not args.stretch)

    output_dir = args.output.resolve()
    if output_dir.exists() and not output_dir.is_dir():
        logger.error(f"Output path exists but is not a directory: {output_dir}")
        return 1

    return run_headless(
        inputs=args.inputs,
        output_dir=output_dir,
        output_format=args.format,
        quality=args.quality,
        width=args.width,
        height=args.height,
        rotate=args.rotate,
        crop=args.crop,
        keep_aspect=not args.stretch,
        settings=settings,
    )


if __name__ == '__main__':
    sys.exit(main())
