"""photopress - crop, rotate, resize and convert images in memory, then export them."""

from .encoders import OutputFormat, format_file_name, human_file_size
from .image_ops import CropRect
from .repository import SourceFile
from .services import ExportOutcome, ImageService
from .state import SessionState

__version__ = "1.0.0"
__all__ = [
    'CropRect',
    'ExportOutcome',
    'ImageService',
    'OutputFormat',
    'SessionState',
    'SourceFile',
    'format_file_name',
    'human_file_size',
]
