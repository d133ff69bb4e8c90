import io
import mimetypes
import re
from datetime import datetime, timezone
from pathlib import PurePosixPath

from PIL import ExifTags, Image, ImageOps, UnidentifiedImageError

from mediastore.config import settings
from mediastore.models import FileType

IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp"}
VIDEO_EXTENSIONS = {".mp4", ".avi", ".mov", ".mkv", ".webm"}

_MD5_RE = re.compile(r"^[0-9a-f]{32}$")


def is_md5_digest(value: str | None) -> bool:
    return bool(value) and _MD5_RE.match(value.lower()) is not None


def guess_mime_type(name: str, declared: str | None = None) -> str:
    if declared and declared != "application/octet-stream":
        return declared
    guessed, _ = mimetypes.guess_type(name)
    return guessed or "application/octet-stream"


def file_type_for(name: str, mime_type: str | None) -> FileType:
    mime_type = mime_type or ""
    ext = PurePosixPath(name).suffix.lower()
    if mime_type.startswith("image/") or ext in IMAGE_EXTENSIONS:
        return FileType.image
    if mime_type.startswith("video/") or ext in VIDEO_EXTENSIONS:
        return FileType.video
    return FileType.other


def final_object_key(file_id: str, name: str, now: datetime | None = None) -> str:
    now = now or datetime.now(timezone.utc)
    ext = PurePosixPath(name).suffix.lower()
    return f"files/{now:%Y/%m/%d}/{file_id}{ext}"


def public_url(key: str) -> str:
    return f"{settings.public_url_prefix.rstrip('/')}/{key}"


def correct_orientation(data: bytes) -> bytes:
    """Apply a JPEG's EXIF orientation to its pixels and drop the tag.

    Anything that is not a rotated JPEG comes back unchanged, including bytes
    Pillow cannot decode; those are stored as sent.
    """
    try:
        with Image.open(io.BytesIO(data)) as image:
            if image.format != "JPEG" or image.getexif().get(ExifTags.Base.Orientation, 1) == 1:
                return data
            corrected = ImageOps.exif_transpose(image)
            buffer = io.BytesIO()
            corrected.save(buffer, format="JPEG", quality=95, exif=corrected.getexif())
    except (UnidentifiedImageError, OSError, ValueError):
        return data
    return buffer.getvalue()
