import base64
import binascii
import os
import re
import secrets
import time
from datetime import datetime
from typing import Dict, Optional
from urllib.parse import urlparse

DATA_URL_PATTERN = re.compile(r"^data:(image/[a-zA-Z0-9.+-]+);base64,([a-zA-Z0-9+/=\s]+)$")
MIME_TO_EXTENSION = {
    "image/jpeg": "jpg",
    "image/jpg": "jpg",
    "image/png": "png",
    "image/webp": "webp",
    "image/gif": "gif",
    "image/avif": "avif",
}


class MediaStorageError(ValueError):
    pass


def to_posix_path(value) -> str:
    return str(value or "").replace("\\", "/")


def get_public_base(public_path: str = "/storage/media", cdn_base_url: str = "") -> str:
    cdn_base = str(cdn_base_url or "").strip().rstrip("/")
    if cdn_base:
        return cdn_base

    configured = str(public_path or "/storage/media").strip()
    if re.match(r"^https?://", configured, re.IGNORECASE):
        return configured.rstrip("/")
    return "/" + configured.strip("/")


def build_public_media_url(relative_path: str, public_base: str) -> str:
    return f"{public_base}/{to_posix_path(relative_path).lstrip('/')}"


def is_data_image_url(value) -> bool:
    return str(value or "").strip().startswith("data:")


def is_http_url(value) -> bool:
    parsed = urlparse(str(value or "").strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def is_valid_image_url(value) -> bool:
    url = str(value or "").strip()
    if not url:
        return False
    return is_data_image_url(url) or is_http_url(url)


def parse_image_data_url(data_url: str):
    match = DATA_URL_PATTERN.match(str(data_url or "").strip())
    if not match:
        raise MediaStorageError("Invalid image data URL")

    mime_type = match.group(1).lower()
    if mime_type not in MIME_TO_EXTENSION:
        raise MediaStorageError("Unsupported image mime type")

    raw_base64 = re.sub(r"\s+", "", match.group(2))
    try:
        content = base64.b64decode(raw_base64)
    except (binascii.Error, ValueError) as exc:
        raise MediaStorageError("Invalid image data URL") from exc
    if not content:
        raise MediaStorageError("Image data is empty")

    return mime_type, content


def create_relative_storage_path(mime_type: str, now: Optional[datetime] = None) -> str:
    moment = now or datetime.utcnow()
    extension = MIME_TO_EXTENSION.get(mime_type, "bin")
    file_name = f"{int(time.time() * 1000)}_{secrets.token_hex(10)}.{extension}"
    return "/".join(
        (f"{moment.year:04d}", f"{moment.month:02d}", f"{moment.day:02d}", file_name)
    )


def resolve_absolute_storage_path(storage_root: str, relative_path: str) -> str:
    root = os.path.realpath(storage_root)
    candidate = os.path.realpath(os.path.join(root, to_posix_path(relative_path).lstrip("/")))
    if candidate != root and not candidate.startswith(root + os.sep):
        raise MediaStorageError("Invalid storage path")
    return candidate


def save_image_data_url(data_url: str, storage_root: str, public_base: str) -> Dict[str, object]:
    mime_type, content = parse_image_data_url(data_url)
    relative_path = create_relative_storage_path(mime_type)
    absolute_path = resolve_absolute_storage_path(storage_root, relative_path)

    os.makedirs(os.path.dirname(absolute_path), exist_ok=True)
    with open(absolute_path, "wb") as handle:
        handle.write(content)

    return {
        "mime_type": mime_type,
        "size_bytes": len(content),
        "storage_path": relative_path,
        "url": build_public_media_url(relative_path, public_base),
    }


def delete_media_file(storage_root: str, relative_path: Optional[str]) -> bool:
    normalized = str(relative_path or "").strip()
    if not normalized:
        return False

    absolute_path = resolve_absolute_storage_path(storage_root, normalized)
    try:
        os.remove(absolute_path)
    except FileNotFoundError:
        return False
    return True
