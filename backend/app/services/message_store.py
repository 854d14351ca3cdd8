"""
Supabase-backed access to message bodies and message freeze state.

Tables:
  message_bodies(message_id PK, html_raw, html_sanitized, ...)
  messages(id PK, freeze_last_reason, ...)
"""

from typing import Optional

from app.db import supabase_admin
from app.models.message_html import MessageHtml


def _client():
    if not supabase_admin:
        raise ValueError("SUPABASE_SERVICE_KEY is required for database operations")
    return supabase_admin


def find_by_message_id(message_id: str) -> Optional[MessageHtml]:
    """
    Load the HTML body row for a message.

    Returns None when the message has no message_bodies row.

    Raises:
        Exception: If the query fails
    """
    client = _client()
    try:
        result = (
            client.table("message_bodies")
            .select("message_id, html_raw, html_sanitized")
            .eq("message_id", message_id)
            .limit(1)
            .execute()
        )
    except Exception as e:
        raise Exception(f"Failed to load message body: {str(e)}") from e

    if not result.data:
        return None
    return MessageHtml(**result.data[0])


def update_html_sanitized(message_id: str, html_sanitized: Optional[str]) -> None:
    """Write (or clear, with None) the render cache of a message."""
    client = _client()
    try:
        (
            client.table("message_bodies")
            .update({"html_sanitized": html_sanitized})
            .eq("message_id", message_id)
            .execute()
        )
    except Exception as e:
        raise Exception(f"Failed to update sanitized html: {str(e)}") from e


def clear_html_sanitized(message_id: str) -> None:
    update_html_sanitized(message_id, None)


def set_freeze_last_reason(message_id: str, reason: str) -> None:
    """Record the one-line outcome of the last freeze on the message row."""
    client = _client()
    try:
        (
            client.table("messages")
            .update({"freeze_last_reason": reason})
            .eq("id", message_id)
            .execute()
        )
    except Exception as e:
        raise Exception(f"Failed to update freeze reason: {str(e)}") from e
