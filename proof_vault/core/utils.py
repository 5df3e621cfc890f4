import io
import time
import structlog
from pathlib import Path

from PIL import Image, UnidentifiedImageError

logger = structlog.get_logger()

DEFAULT_MIME_TYPE = "application/octet-stream"


def detect_mime_type(data: bytes) -> str:
    """Detect the MIME type of image bytes, falling back to octet-stream."""
    try:
        with Image.open(io.BytesIO(data)) as img:
            mime_type = Image.MIME.get(img.format or "")
    except (UnidentifiedImageError, OSError) as e:
        logger.debug("Could not identify image format", size=len(data), error=str(e))
        return DEFAULT_MIME_TYPE

    return mime_type or DEFAULT_MIME_TYPE


def current_timestamp() -> int:
    """Wall-clock time in whole Unix seconds."""
    return int(time.time())


def ensure_dir_exists(dir_path) -> Path:
    """Ensure directory exists, create if it doesn't."""
    try:
        path = Path(dir_path)
        path.mkdir(parents=True, exist_ok=True)
        return path
    except Exception as e:
        logger.error("Failed to create directory", dir_path=str(dir_path), error=str(e))
        raise


def format_file_size(size_bytes: int) -> str:
    """Format file size in human-readable format."""
    if size_bytes == 0:
        return "0 B"

    size_names = ["B", "KB", "MB", "GB", "TB"]
    i = 0
    while size_bytes >= 1024 and i < len(size_names) - 1:
        size_bytes /= 1024.0
        i += 1

    return f"{size_bytes:.1f} {size_names[i]}"
