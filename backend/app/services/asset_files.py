"""
Content-addressed files for frozen remote assets.

Layout: {storage_dir}/assets/{message_id}/{sha256}.{ext}

Files are only ever served for a DOWNLOADED record whose stored path lies
inside {storage_dir}/assets.
"""

import hashlib
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from app.config import Settings, get_settings
from app.services import asset_store

_HEX_64 = re.compile(r"^[0-9a-f]{64}$")
_UNSAFE_PATH_CHARS = re.compile(r"[^\w\-.]")


class AssetNotFoundError(LookupError):
    """No servable frozen file for the requested message/filename."""


@dataclass
class StoredAsset:
    storage_path: str
    sha256: str
    size: int


@dataclass
class AssetFile:
    message_id: str
    filename: str
    content_type: str
    content: bytes


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def extension_from_content_type(content_type: str) -> str:
    """'image/svg+xml' -> 'svg', 'image/png' -> 'png', unusable -> 'bin'."""
    _, _, subtype = content_type.partition("/")
    subtype = subtype.split("+", 1)[0].split(";", 1)[0]
    clean = "".join(ch for ch in subtype.lower() if ch.isascii() and ch.isalnum())
    return clean or "bin"


def assets_root(settings: Settings) -> Path:
    return Path(settings.storage_dir).resolve() / "assets"


def message_asset_dir(settings: Settings, message_id: str) -> Path:
    # Message ids come from our own index; still keep them to one path segment.
    safe_id = _UNSAFE_PATH_CHARS.sub("_", message_id)
    if safe_id in ("", ".", ".."):
        safe_id = sha256_hex(message_id.encode("utf-8"))
    return assets_root(settings) / safe_id


def write_asset_file(settings: Settings, message_id: str, content_type: str, content: bytes) -> StoredAsset:
    """
    Persist downloaded bytes under their digest.

    Rewriting an existing file is harmless: same name means same content.
    """
    digest = sha256_hex(content)
    directory = message_asset_dir(settings, message_id)
    directory.mkdir(parents=True, exist_ok=True)
    path = directory / f"{digest}.{extension_from_content_type(content_type)}"
    path.write_bytes(content)
    return StoredAsset(storage_path=str(path), sha256=digest, size=len(content))


def resolve_downloaded_asset(message_id: str, filename: str, settings: Optional[Settings] = None) -> AssetFile:
    """
    Load a frozen file for serving.

    Raises:
        AssetNotFoundError: Unknown digest, missing record, or a stored path
            outside the assets directory
    """
    settings = settings or get_settings()
    digest = filename.split(".", 1)[0].lower()
    if not _HEX_64.match(digest):
        raise AssetNotFoundError("asset not found")

    record = asset_store.find_downloaded_by_message_and_sha(message_id, digest)
    if record is None or not record.storage_path:
        raise AssetNotFoundError("asset not found")

    path = Path(record.storage_path).resolve()
    if not path.is_relative_to(assets_root(settings)):
        raise AssetNotFoundError("asset file not found")
    if not path.is_file():
        raise AssetNotFoundError("asset file not found")

    return AssetFile(
        message_id=message_id,
        filename=path.name,
        content_type=record.content_type or "application/octet-stream",
        content=path.read_bytes(),
    )
