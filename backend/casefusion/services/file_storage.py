"""Local file storage for uploaded evidence, extracted frames and reconstructions."""
import logging
import os
import uuid
from typing import Optional

from casefusion.config import settings
from casefusion.models.schemas import EvidenceType

logger = logging.getLogger(__name__)

UPLOADS_URL_PREFIX = "/uploads"


def ensure_directory(path: str) -> str:
    os.makedirs(path, exist_ok=True)
    return path


def case_directory(case_id: str, *parts: str, uploads_dir: Optional[str] = None) -> str:
    """Directory for a case's files, created on demand."""
    base = uploads_dir or settings.uploads_dir
    return ensure_directory(os.path.join(base, case_id, *parts))


def storage_url_for(path: str, uploads_dir: Optional[str] = None) -> str:
    """Convert a filesystem path under the uploads dir into a served URL."""
    base = os.path.abspath(uploads_dir or settings.uploads_dir)
    relative = os.path.relpath(os.path.abspath(path), base).replace("\\", "/")
    return f"{UPLOADS_URL_PREFIX}/{relative}"


def resolve_storage_url(storage_url: str, uploads_dir: Optional[str] = None) -> str:
    """Map a storage URL back to its filesystem path.

    Accepts both "/uploads/<case>/<file>" and bare "<case>/<file>" forms.
    """
    base = uploads_dir or settings.uploads_dir
    relative = storage_url.replace("\\", "/")
    if relative.startswith(UPLOADS_URL_PREFIX + "/"):
        relative = relative[len(UPLOADS_URL_PREFIX) + 1:]
    relative = relative.lstrip("/")
    resolved = os.path.realpath(os.path.join(base, relative))
    root = os.path.realpath(base)
    if resolved != root and not resolved.startswith(root + os.sep):
        raise ValueError(f"Storage URL escapes uploads directory: {storage_url}")
    return resolved


def save_upload(case_id: str, original_filename: str, content: bytes,
                uploads_dir: Optional[str] = None) -> str:
    """Write uploaded bytes under a unique name and return the storage URL."""
    ext = os.path.splitext(original_filename or "")[1].lower()
    directory = case_directory(case_id, uploads_dir=uploads_dir)
    path = os.path.join(directory, f"{uuid.uuid4()}{ext}")
    with open(path, "wb") as f:
        f.write(content)
    logger.info(f"Stored upload {original_filename} ({len(content)} bytes) at {path}")
    return storage_url_for(path, uploads_dir)


def evidence_type_for_mime(mime_type: Optional[str]) -> EvidenceType:
    """Classify an upload by its MIME type."""
    mime = (mime_type or "").lower()
    if mime.startswith("image/"):
        return "image"
    if mime.startswith("video/"):
        return "video"
    if mime.startswith("audio/"):
        return "audio"
    if mime == "application/pdf" or "text" in mime:
        return "document"
    return "text"


AUDIO_MIME_TYPES = {
    ".mp3": "audio/mpeg",
    ".m4a": "audio/mp4",
    ".ogg": "audio/ogg",
    ".wav": "audio/wav",
    ".webm": "audio/webm",
    ".flac": "audio/flac",
}

IMAGE_MIME_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
}


def audio_mime_for(filename: str) -> str:
    return AUDIO_MIME_TYPES.get(os.path.splitext(filename or "")[1].lower(), "audio/wav")


def image_mime_for(filename: str) -> str:
    return IMAGE_MIME_TYPES.get(os.path.splitext(filename or "")[1].lower(), "image/jpeg")
