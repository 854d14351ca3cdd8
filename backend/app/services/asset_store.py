"""
Supabase-backed access to the assets table.

The table carries a UNIQUE(message_id, original_url) constraint; ``upsert``
relies on it so that repeated freezes of the same URL update one row instead
of piling up new ones.
"""

from typing import Optional

from app.db import supabase_admin
from app.models.asset import AssetRecord, AssetStatus

_COLUMNS = (
    "id, message_id, original_url, storage_path, content_type, size, sha256, "
    "status, downloaded_at, error, security_blocked"
)


def _client():
    if not supabase_admin:
        raise ValueError("SUPABASE_SERVICE_KEY is required for database operations")
    return supabase_admin


def upsert(asset: AssetRecord) -> None:
    """
    Insert or update the record for (message_id, original_url).

    Raises:
        Exception: If the write fails
    """
    client = _client()
    try:
        (
            client.table("assets")
            .upsert(asset.to_row(), on_conflict="message_id,original_url")
            .execute()
        )
    except Exception as e:
        raise Exception(f"Failed to upsert asset: {str(e)}") from e


def _find_downloaded(message_id: str, column: str, value: str) -> Optional[AssetRecord]:
    client = _client()
    try:
        result = (
            client.table("assets")
            .select(_COLUMNS)
            .eq("message_id", message_id)
            .eq(column, value)
            .eq("status", AssetStatus.DOWNLOADED.value)
            .limit(1)
            .execute()
        )
    except Exception as e:
        raise Exception(f"Failed to load asset: {str(e)}") from e

    if not result.data:
        return None
    return AssetRecord(**result.data[0])


def find_downloaded_by_message_and_url(message_id: str, original_url: str) -> Optional[AssetRecord]:
    """Return the DOWNLOADED record for a normalized URL, or None."""
    return _find_downloaded(message_id, "original_url", original_url)


def find_downloaded_by_message_and_sha(message_id: str, sha256: str) -> Optional[AssetRecord]:
    """Return a DOWNLOADED record of the message whose content digest is sha256."""
    return _find_downloaded(message_id, "sha256", sha256)
