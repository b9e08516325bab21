"""State management for the image editing session."""
import logging
import math
import uuid
from dataclasses import dataclass, field
from typing import Iterable, Iterator, List, Optional, Tuple, Union

from PIL import Image

from .config import AppSettings
from .encoders import OutputFormat, clamp_quality, format_file_name
from .image_ops import CropRect, ImageProcessingError, crop_to_bounding_box
from .repository import LoadError, SourceFile, UnsupportedInput, decode_image, load_source

logger = logging.getLogger(__name__)

# Crop aspect presets offered by the editor, None is freeform
ASPECT_PRESETS: List[Tuple[str, Optional[float]]] = [
    ("Freeform", None),
    ("1:1 Square", 1.0),
    ("4:5 Portrait", 4 / 5),
    ("3:2 Landscape", 3 / 2),
    ("16:9 Wide", 16 / 9),
]


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


class OutputHandle:
    """Owns the bytes of one encoded output until it is released."""

    def __init__(self, data: bytes, mime_type: str):
        self._data: Optional[bytes] = data
        self.mime_type = mime_type

    @property
    def released(self) -> bool:
        return self._data is None

    @property
    def data(self) -> bytes:
        if self._data is None:
            raise ValueError("Output handle has been released")
        return self._data

    def release(self) -> None:
        """Drop the referenced bytes. Safe to call more than once."""
        self._data = None

    def __len__(self) -> int:
        return 0 if self._data is None else len(self._data)

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.release()


@dataclass
class ExportResult:
    """Outcome of the most recent successful export of a record."""
    file_name: str
    size: int
    handle: OutputHandle

    def release(self) -> None:
        self.handle.release()


@dataclass(frozen=True)
class SourceImage:
    """The file as it was loaded. Never changes after the record is created."""
    name: str
    mime_type: str
    data: bytes
    width: int
    height: int

    @property
    def size(self) -> int:
        return len(self.data)


@dataclass
class CropSession:
    """Transient state of one crop interaction."""
    offset: Tuple[float, float] = (0.0, 0.0)
    zoom: float = 1.0
    rotation: float = 0.0
    aspect: Optional[float] = None
    area: Optional[CropRect] = None

    def reset(self, keep_aspect: bool = True) -> None:
        """Return to identity; optionally keep the chosen aspect preset."""
        self.offset = (0.0, 0.0)
        self.zoom = 1.0
        self.rotation = 0.0
        self.area = None
        if not keep_aspect:
            self.aspect = None


@dataclass
class ImageRecord:
    """One loaded image and its editing state."""
    source: SourceImage
    working: Image.Image
    width: int
    height: int
    id: str = field(default_factory=lambda: uuid.uuid4().hex)
    keep_aspect_ratio: bool = True
    output_format: OutputFormat = OutputFormat.JPEG
    quality: int = 80
    crop: CropSession = field(default_factory=CropSession)
    export_result: Optional[ExportResult] = None

    @property
    def name(self) -> str:
        return self.source.name

    @property
    def original_width(self) -> int:
        return self.source.width

    @property
    def original_height(self) -> int:
        return self.source.height

    @property
    def output_file_name(self) -> str:
        return format_file_name(self.source.name, self.output_format)

    def set_export_result(self, result: ExportResult) -> None:
        """Store a new export result, releasing the previous one first."""
        self.clear_export_result()
        self.export_result = result

    def clear_export_result(self) -> None:
        if self.export_result is not None:
            self.export_result.release()
            self.export_result = None

    def replace_working(self, image: Image.Image) -> None:
        old = self.working
        self.working = image
        if old is not image:
            old.close()

    def release(self) -> None:
        """Release every buffer held by this record."""
        self.clear_export_result()
        self.working.close()


@dataclass
class IntakeResult:
    """Per-file outcome of adding files to the session."""
    file_name: str
    accepted: bool
    record_id: Optional[str] = None
    reason: Optional[str] = None


class SessionState:
    """
    Ordered collection of ImageRecords plus the current selection.

    Every edit goes through one of the transition methods below; they take a
    record id and return False (or None) when no such record exists.
    """

    def __init__(self, settings: Optional[AppSettings] = None):
        self.settings = settings or AppSettings()
        self.images: List[ImageRecord] = []
        self.selected_id: Optional[str] = None

    def __len__(self) -> int:
        return len(self.images)

    def __iter__(self) -> Iterator[ImageRecord]:
        return iter(self.images)

    def get(self, record_id: str) -> Optional[ImageRecord]:
        for record in self.images:
            if record.id == record_id:
                return record
        return None

    @property
    def selected(self) -> Optional[ImageRecord]:
        """The selected record, or None when the session is empty."""
        if self.selected_id is not None:
            record = self.get(self.selected_id)
            if record is not None:
                return record
        return self.images[0] if self.images else None

    def _default_format(self) -> OutputFormat:
        return OutputFormat.parse(self.settings.default_format)

    def _default_quality(self) -> int:
        return clamp_quality(self.settings.default_quality)

    def add_files(self, files: Iterable[SourceFile]) -> List[IntakeResult]:
        """
        Load files into new records, in order.

        Files with a MIME type outside the allow-list, or that cannot be
        decoded, are skipped and reported as rejected.

        Args:
            files: Files to load

        Returns:
            One IntakeResult per input file
        """
        results: List[IntakeResult] = []
        new_records: List[ImageRecord] = []

        for source_file in files:
            try:
                image, width, height = load_source(source_file)
            except UnsupportedInput as e:
                logger.debug(f"Skipping unsupported file: {e}")
                results.append(IntakeResult(source_file.name, False, reason=str(e)))
                continue
            except LoadError as e:
                logger.warning(f"Skipping unreadable file {source_file.name}: {e}")
                results.append(IntakeResult(source_file.name, False, reason=str(e)))
                continue

            record = ImageRecord(
                source=SourceImage(
                    name=source_file.name,
                    mime_type=source_file.mime_type,
                    data=source_file.data,
                    width=width,
                    height=height,
                ),
                working=image,
                width=width,
                height=height,
                keep_aspect_ratio=self.settings.keep_aspect_ratio,
                output_format=self._default_format(),
                quality=self._default_quality(),
            )
            new_records.append(record)
            results.append(IntakeResult(source_file.name, True, record_id=record.id))

        if new_records:
            self.images.extend(new_records)
            if self.selected_id is None:
                self.selected_id = new_records[0].id
            logger.info(f"Loaded {len(new_records)} images (total: {len(self.images)})")

        return results

    def select(self, record_id: str) -> bool:
        if self.get(record_id) is None:
            return False
        self.selected_id = record_id
        return True

    def remove(self, record_id: str) -> bool:
        """Remove a record and release its buffers."""
        record = self.get(record_id)
        if record is None:
            return False

        self.images.remove(record)
        record.release()
        if self.selected_id == record_id:
            self.selected_id = self.images[0].id if self.images else None
        logger.debug(f"Removed {record.name} ({record_id})")
        return True

    def clear(self) -> None:
        for record in self.images:
            record.release()
        self.images.clear()
        self.selected_id = None

    def set_dimension(self, record_id: str, dimension: str, value: float) -> bool:
        """
        Set the target width or height.

        The value is rounded and clamped to at least 1. With the aspect lock
        on, the other side follows the ratio of the original dimensions.

        Args:
            record_id: Record to edit
            dimension: 'width' or 'height'
            value: Requested size in pixels

        Returns:
            True if the record was updated
        """
        if dimension not in ("width", "height"):
            raise ValueError(f"dimension must be 'width' or 'height', got {dimension!r}")
        record = self.get(record_id)
        if record is None:
            return False

        clamped = max(1, _round_half_up(value))
        w0, h0 = record.original_width, record.original_height
        if dimension == "width":
            record.width = clamped
            if record.keep_aspect_ratio:
                record.height = max(1, _round_half_up(clamped * h0 / w0))
        else:
            record.height = clamped
            if record.keep_aspect_ratio:
                record.width = max(1, _round_half_up(clamped * w0 / h0))

        record.clear_export_result()
        return True

    def set_keep_aspect(self, record_id: str, keep: bool) -> bool:
        record = self.get(record_id)
        if record is None:
            return False
        record.keep_aspect_ratio = bool(keep)
        return True

    def reset_dimensions(self, record_id: str) -> bool:
        """Restore the target size to the original pixel dimensions."""
        record = self.get(record_id)
        if record is None:
            return False
        record.width = record.original_width
        record.height = record.original_height
        record.clear_export_result()
        return True

    def set_quality(self, record_id: str, value: float) -> bool:
        record = self.get(record_id)
        if record is None:
            return False
        quality = clamp_quality(value)
        if quality != record.quality:
            record.quality = quality
            record.clear_export_result()
        return True

    def set_format(self, record_id: str, output_format: Union[OutputFormat, str]) -> bool:
        record = self.get(record_id)
        if record is None:
            return False
        fmt = OutputFormat.parse(output_format)
        if fmt is not record.output_format:
            record.output_format = fmt
            record.clear_export_result()
        return True

    def update_crop(
        self,
        record_id: str,
        offset: Optional[Tuple[float, float]] = None,
        zoom: Optional[float] = None,
        rotation: Optional[float] = None
    ) -> bool:
        """Update the interactive crop view; unspecified fields keep their value."""
        record = self.get(record_id)
        if record is None:
            return False
        if offset is not None:
            record.crop.offset = (float(offset[0]), float(offset[1]))
        if zoom is not None:
            record.crop.zoom = float(zoom)
        if rotation is not None:
            record.crop.rotation = float(rotation)
        return True

    def complete_crop(self, record_id: str, area: Optional[CropRect]) -> bool:
        """Record the crop rectangle computed for the current crop view."""
        record = self.get(record_id)
        if record is None:
            return False
        record.crop.area = area
        return True

    def set_aspect(self, record_id: str, aspect: Optional[float]) -> bool:
        record = self.get(record_id)
        if record is None:
            return False
        record.crop.aspect = aspect
        return True

    def apply_crop(self, record_id: str) -> bool:
        """
        Commit the pending crop rectangle.

        The working buffer is replaced by the rotated crop, the target size
        becomes the crop size and the crop session returns to identity while
        keeping the aspect preset.

        Returns:
            True if a crop was applied, False if there was nothing to apply
        """
        record = self.get(record_id)
        if record is None or record.crop.area is None:
            return False

        try:
            cropped = crop_to_bounding_box(record.working, record.crop.area, record.crop.rotation)
        except ImageProcessingError as e:
            logger.error(f"Error applying crop to {record.name}: {e}")
            return False

        record.replace_working(cropped)
        record.width, record.height = cropped.size
        record.crop.reset(keep_aspect=True)
        record.clear_export_result()
        logger.debug(f"Applied crop to {record.name}: {cropped.width}x{cropped.height}")
        return True

    def reset_image(self, record_id: str) -> bool:
        """Restore a record to the state it had right after loading."""
        record = self.get(record_id)
        if record is None:
            return False

        try:
            image = decode_image(record.source.data)
        except LoadError as e:
            logger.error(f"Error resetting {record.name}: {e}")
            return False

        record.replace_working(image)
        record.width = record.original_width
        record.height = record.original_height
        record.crop.reset(keep_aspect=False)
        record.output_format = self._default_format()
        record.quality = self._default_quality()
        record.clear_export_result()
        return True

    def total_original_size(self) -> int:
        return sum(record.source.size for record in self.images)

    def total_output_size(self) -> int:
        return sum(record.export_result.size for record in self.images if record.export_result)
