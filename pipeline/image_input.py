"""Image payload helpers — turn uploaded bytes / URLs into what the vision model takes."""

from __future__ import annotations

import base64
import mimetypes
import re
from pathlib import Path

_HTTP_URL_RE = re.compile(r"^https?://", re.IGNORECASE)


def normalize_image_input(data: str, media_type: str) -> str:
    """Data URLs and http(s) URLs pass through; raw base64 becomes a data URL."""
    if data.startswith("data:") or _HTTP_URL_RE.match(data):
        return data
    return f"data:{media_type};base64,{data}"


def resolve_image_url(data: str, image_url: str | None = None) -> str | None:
    """Best public reference for the image: explicit URL, else the payload if it is a URL."""
    if isinstance(image_url, str) and image_url.strip():
        return image_url.strip()
    return data if _HTTP_URL_RE.match(data) else None


def load_image_file(path: Path) -> tuple[str, str]:
    """Read a local image and return ``(data_url, media_type)``."""
    media_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"
    if not media_type.startswith("image/"):
        raise ValueError(f"{path} does not look like an image ({media_type})")
    encoded = base64.b64encode(path.read_bytes()).decode("ascii")
    return normalize_image_input(encoded, media_type), media_type
