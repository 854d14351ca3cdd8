"""
Pydantic models for stored message HTML bodies.
"""

from typing import Optional
from pydantic import BaseModel


class MessageHtml(BaseModel):
    """
    Row from the message_bodies table.

    html_raw is written once by the indexer. html_sanitized is a render
    cache: it is owned by the render service and cleared whenever the set of
    frozen assets for the message changes.
    """
    model_config = {"extra": "ignore"}

    message_id: str
    html_raw: Optional[str] = None
    html_sanitized: Optional[str] = None


class HtmlRenderResponse(BaseModel):
    """Response body for GET /api/messages/{id}/render."""
    html: str
