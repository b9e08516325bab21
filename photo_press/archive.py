"""In-memory ZIP packing of exported files."""
import io
import logging
import zipfile
from typing import Dict, Iterable, List, Tuple, Union

logger = logging.getLogger(__name__)

ARCHIVE_EXTENSION = "zip"
ARCHIVE_MIME_TYPE = "application/zip"

# Fixed entry timestamp so identical input yields identical archive bytes
_ENTRY_DATE_TIME = (1980, 1, 1, 0, 0, 0)


class PackError(Exception):
    """Raised when the archive packer is used outside its contract."""
    pass


def archive_name(prefix: str, timestamp_ms: int) -> str:
    """Build the archive file name, e.g. 'compressed-1700000000000.zip'."""
    return f"{prefix}-{timestamp_ms}.{ARCHIVE_EXTENSION}"


def pack(named_buffers: Union[Dict[str, bytes], Iterable[Tuple[str, bytes]]]) -> bytes:
    """
    Bundle named byte buffers into one deflated ZIP archive.

    Entries keep the given order. Names must already be unique.

    Args:
        named_buffers: Mapping or sequence of (entry name, bytes)

    Returns:
        Archive bytes

    Raises:
        PackError: If there is nothing to pack or a name repeats
    """
    items: List[Tuple[str, bytes]] = list(
        named_buffers.items() if isinstance(named_buffers, dict) else named_buffers
    )
    if not items:
        raise PackError("Cannot pack an empty list of files")

    seen = set()
    memory_file = io.BytesIO()
    with zipfile.ZipFile(memory_file, "w", zipfile.ZIP_DEFLATED) as zf:
        for name, data in items:
            if name in seen:
                raise PackError(f"Duplicate archive entry: {name}")
            seen.add(name)
            info = zipfile.ZipInfo(name, date_time=_ENTRY_DATE_TIME)
            info.compress_type = zipfile.ZIP_DEFLATED
            info.external_attr = 0o644 << 16
            zf.writestr(info, data)

    archive = memory_file.getvalue()
    logger.debug(f"Packed {len(items)} files into {len(archive)} byte archive")
    return archive
