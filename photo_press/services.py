"""Service layer orchestrating intake and batch export."""
import logging
import threading
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, List, Optional, Tuple

from PIL import Image

from .archive import ARCHIVE_MIME_TYPE, PackError, archive_name, pack
from .config import AppSettings
from .encoders import OutputFormat, encode
from .image_ops import crop_to_bounding_box, resize_image
from .repository import SourceFile
from .state import ExportResult, ImageRecord, IntakeResult, OutputHandle, SessionState

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[Optional[str]], None]
DeliverCallback = Callable[["Deliverable"], None]


class UserFacingError(Exception):
    """User-facing error that should be shown in UI."""
    pass


class RecordStage(str, Enum):
    """Where a record is in its export run."""
    PENDING = "pending"
    CROPPING = "cropping"
    RESIZING = "resizing"
    ENCODING = "encoding"
    DONE = "done"
    FAILED = "failed"


@dataclass
class Deliverable:
    """A named file ready to be handed to the user."""
    file_name: str
    handle: OutputHandle

    @property
    def data(self) -> bytes:
        return self.handle.data

    @property
    def mime_type(self) -> str:
        return self.handle.mime_type

    @property
    def size(self) -> int:
        return len(self.handle)


@dataclass
class ItemOutcome:
    """Export outcome of a single record."""
    record_id: str
    name: str
    stage: RecordStage = RecordStage.PENDING
    file_name: Optional[str] = None
    size: Optional[int] = None
    error: Optional[str] = None


@dataclass
class ExportOutcome:
    """Result of one export run."""
    total: int
    items: List[ItemOutcome] = field(default_factory=list)
    delivered_name: Optional[str] = None
    delivered_size: Optional[int] = None
    is_archive: bool = False
    archive_entries: List[str] = field(default_factory=list)
    cancelled: bool = False

    @property
    def exported(self) -> List[ItemOutcome]:
        return [item for item in self.items if item.stage is RecordStage.DONE]

    @property
    def failed(self) -> List[ItemOutcome]:
        return [item for item in self.items if item.stage is RecordStage.FAILED]

    def summary(self) -> str:
        return f"{len(self.exported)} of {self.total} exported"


@dataclass(frozen=True)
class ExportJob:
    """Copy of a record's export configuration taken when its turn begins."""
    record_id: str
    name: str
    working: Image.Image
    width: int
    height: int
    output_format: OutputFormat
    quality: int
    file_name: str

    @classmethod
    def from_record(cls, record: ImageRecord) -> 'ExportJob':
        return cls(
            record_id=record.id,
            name=record.name,
            working=record.working.copy(),
            width=record.width,
            height=record.height,
            output_format=record.output_format,
            quality=record.quality,
            file_name=record.output_file_name,
        )


class ExportCancelled(Exception):
    """Raised internally when the cancel event is set between stages."""
    pass


def _unique_name(file_name: str, taken: set) -> str:
    """Append _1, _2, ... before the extension until the name is unused."""
    if file_name not in taken:
        return file_name
    stem, dot, ext = file_name.rpartition(".")
    if not dot:
        stem, ext = file_name, ""
    counter = 1
    while True:
        candidate = f"{stem}_{counter}.{ext}" if ext else f"{stem}_{counter}"
        if candidate not in taken:
            return candidate
        counter += 1


class ImageService:
    """Service for loading images and exporting the edited results."""

    def __init__(self, settings: Optional[AppSettings] = None, state: Optional[SessionState] = None):
        """
        Initialize image service.

        Args:
            settings: Application settings
            state: Existing session to operate on, a new one by default
        """
        self.settings = settings or AppSettings()
        self.state = state or SessionState(self.settings)
        self.processing_message: Optional[str] = None
        self.is_processing = False
        self._progress_callback: Optional[ProgressCallback] = None

    def set_progress_callback(self, callback: Optional[ProgressCallback]) -> None:
        """Set callback receiving the status message, None when the run ends."""
        self._progress_callback = callback

    def _set_status(self, message: Optional[str]) -> None:
        self.processing_message = message
        if self._progress_callback:
            self._progress_callback(message)

    def import_files(self, files: Iterable[SourceFile]) -> List[IntakeResult]:
        """Add files to the session. Rejected files are reported, never raised."""
        return self.state.add_files(files)

    def download_latest(self, record_id: str) -> Optional[Deliverable]:
        """Return the last export of a record, or None if it has none."""
        record = self.state.get(record_id)
        if record is None or record.export_result is None:
            return None
        result = record.export_result
        return Deliverable(result.file_name, result.handle)

    def _process(self, job: ExportJob, item: ItemOutcome, cancel_event: Optional[threading.Event]) -> Tuple[bytes, int]:
        """Run crop, resize and encode for one job, updating item.stage as it goes."""
        def checkpoint(stage: RecordStage) -> None:
            if cancel_event is not None and cancel_event.is_set():
                raise ExportCancelled()
            item.stage = stage
            logger.debug(f"{job.name}: {stage.value}")

        checkpoint(RecordStage.CROPPING)
        base = crop_to_bounding_box(job.working, None, 0)

        checkpoint(RecordStage.RESIZING)
        resized = resize_image(base, job.width, job.height)
        if resized is not base:
            base.close()

        checkpoint(RecordStage.ENCODING)
        try:
            return encode(resized, job.output_format, job.quality, self.settings.png_compress_level)
        finally:
            resized.close()

    def _deliver(self, deliverable: Deliverable, deliver: Optional[DeliverCallback]) -> None:
        try:
            if deliver is not None:
                deliver(deliverable)
            logger.info(f"Delivered {deliverable.file_name} ({deliverable.size} bytes)")
        finally:
            deliverable.handle.release()

    def export_all(
        self,
        deliver: Optional[DeliverCallback] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> ExportOutcome:
        """
        Export every record in order and deliver the result.

        A record that fails at any stage is logged and skipped. One output is
        delivered as is, two or more are bundled into a ZIP archive, none
        means no delivery. The status message is cleared on every exit.

        Args:
            deliver: Receives the file to hand to the user
            cancel_event: Checked between stages; when set the run stops
                without delivering anything

        Returns:
            ExportOutcome describing every record and the delivery
        """
        records = list(self.state.images)
        total = len(records)
        outcome = ExportOutcome(total=total)
        if total == 0:
            return outcome

        self.is_processing = True
        self._set_status("Preparing files…")
        outputs: List[Tuple[str, ExportResult]] = []

        try:
            for index, record in enumerate(records):
                item = ItemOutcome(record_id=record.id, name=record.name)
                outcome.items.append(item)
                self._set_status(f"Processing {record.name} ({index + 1}/{total})…")

                # The record may have been removed by a concurrent edit
                if self.state.get(record.id) is None:
                    item.stage = RecordStage.FAILED
                    item.error = "Record was removed before export"
                    continue

                job: Optional[ExportJob] = None
                try:
                    job = ExportJob.from_record(record)
                    data, size = self._process(job, item, cancel_event)
                except ExportCancelled:
                    item.stage = RecordStage.PENDING
                    outcome.cancelled = True
                    break
                except Exception as e:
                    item.stage = RecordStage.FAILED
                    item.error = str(e)
                    logger.error(f"Image processing failed for {record.name}: {e}")
                    continue
                finally:
                    if job is not None:
                        job.working.close()

                result = ExportResult(
                    file_name=job.file_name,
                    size=size,
                    handle=OutputHandle(data, job.output_format.mime_type),
                )
                record.set_export_result(result)
                item.stage = RecordStage.DONE
                item.file_name = job.file_name
                item.size = size
                outputs.append((job.file_name, result))

            if outcome.cancelled:
                outcome.items.extend(
                    ItemOutcome(record_id=r.id, name=r.name) for r in records[len(outcome.items):]
                )
                logger.info(f"Export cancelled: {outcome.summary()}")
                return outcome

            self._set_status("Bundling files…")
            self._deliver_outputs(outputs, outcome, deliver)
            logger.info(f"Export finished: {outcome.summary()}")
            return outcome
        finally:
            self.is_processing = False
            self._set_status(None)

    def _deliver_outputs(
        self,
        outputs: List[Tuple[str, ExportResult]],
        outcome: ExportOutcome,
        deliver: Optional[DeliverCallback]
    ) -> None:
        if not outputs:
            logger.warning("No images were exported, nothing to deliver")
            return

        if len(outputs) == 1:
            file_name, result = outputs[0]
            deliverable = Deliverable(file_name, OutputHandle(result.handle.data, result.handle.mime_type))
            outcome.delivered_name = file_name
            outcome.delivered_size = result.size
            self._deliver(deliverable, deliver)
            return

        taken: set = set()
        entries: List[Tuple[str, bytes]] = []
        for file_name, result in outputs:
            entry_name = _unique_name(file_name, taken)
            taken.add(entry_name)
            entries.append((entry_name, result.handle.data))

        try:
            archive = pack(entries)
        except PackError as e:
            logger.error(f"Packing failed, delivering files individually: {e}")
            for file_name, result in outputs:
                self._deliver(Deliverable(file_name, OutputHandle(result.handle.data, result.handle.mime_type)), deliver)
            return

        name = archive_name(self.settings.archive_prefix, int(time.time() * 1000))
        outcome.is_archive = True
        outcome.archive_entries = [entry_name for entry_name, _ in entries]
        outcome.delivered_name = name
        outcome.delivered_size = len(archive)
        self._deliver(Deliverable(name, OutputHandle(archive, ARCHIVE_MIME_TYPE)), deliver)
