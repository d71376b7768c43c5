import logging
import os
import time
from pathlib import Path
from uuid import uuid4

import config

logger = logging.getLogger(__name__)

IMAGE_EXTENSIONS = {
    "image/png": "png",
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/gif": "gif",
    "image/webp": "webp",
    "image/svg+xml": "svg",
}

URL_PREFIX = "/uploads"


def uploads_root() -> Path:
    return Path(config.UPLOADS_ROOT)


def save_image(data: bytes, content_type: str, user_id: str) -> str:
    """Store an uploaded image and return the public URL it is referenced by."""
    content_type = (content_type or "").lower()
    if not content_type.startswith("image/"):
        raise ValueError("Only image files are allowed")
    if not data:
        raise ValueError("File is empty")
    if len(data) > config.MAX_IMAGE_BYTES:
        raise ValueError(f"File too large. Maximum size is {config.MAX_IMAGE_BYTES // (1024 * 1024)}MB")

    ext = IMAGE_EXTENSIONS.get(content_type, content_type.split("/", 1)[1].split("+", 1)[0] or "bin")
    rel = f"images/{user_id}/{int(time.time() * 1000)}-{uuid4().hex}.{ext}"
    target = uploads_root() / rel
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)
    logger.info("Stored image %s (%d bytes) for user %s", rel, len(data), user_id)
    return f"{config.PUBLIC_BASE_URL}{URL_PREFIX}/{rel}"


def ensure_uploads_root() -> str:
    root = uploads_root()
    os.makedirs(root, exist_ok=True)
    return str(root)
