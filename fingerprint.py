from __future__ import annotations

import hashlib
import io
from pathlib import Path

from PIL import Image, UnidentifiedImageError

from errors import AssetReadError

DIGEST_PREFIX = "sha256:"

_CONTENT_TYPES = {
    "PNG": "image/png",
    "JPEG": "image/jpeg",
    "BMP": "image/bmp",
    "TGA": "image/tga",
}


def read_binary(path: Path) -> bytes:
    if not path.exists():
        raise AssetReadError(f"File not found: {path}")
    if not path.is_file():
        raise AssetReadError(f"Not a regular file: {path}")
    try:
        return path.read_bytes()
    except OSError as exc:
        raise AssetReadError(f"Failed to read {path}: {exc}") from exc


def fingerprint(source: bytes | Path) -> str:
    """SHA-256 over the exact bytes; file metadata never affects the digest."""
    data = read_binary(source) if isinstance(source, Path) else source
    return DIGEST_PREFIX + hashlib.sha256(data).hexdigest()


def sniff_content_type(data: bytes, name: str = "icon") -> str:
    try:
        with Image.open(io.BytesIO(data)) as img:
            fmt = (img.format or "").upper()
    except (UnidentifiedImageError, OSError) as exc:
        raise AssetReadError(f"{name} is not a readable image: {exc}") from exc
    content_type = _CONTENT_TYPES.get(fmt)
    if content_type is None:
        raise AssetReadError(
            f"{name} has unsupported image format {fmt or 'unknown'} "
            f"(expected one of {sorted(_CONTENT_TYPES)})"
        )
    return content_type
