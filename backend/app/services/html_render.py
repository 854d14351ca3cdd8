"""
Render pipeline for stored email HTML.

render_message_html(id):
  1. cached html_sanitized            -> returned as is
  2. blank html_raw                   -> ""
  3. rewrite -> sanitize -> promote   -> cached and returned

The cache is invalidated by the asset freeze service whenever the set of
downloaded assets of a message changes.
"""

import logging
from typing import Dict, Optional

from app.services import asset_store, message_store
from app.services.html_rewriter import (
    extract_remote_image_urls,
    frozen_asset_path,
    promote_markers,
    rewrite,
)
from app.services.html_sanitizer import sanitize

logger = logging.getLogger(__name__)


class MessageNotFoundError(LookupError):
    """Raised when a message has no stored HTML row."""


def _frozen_assets(message_id: str, raw_html: str) -> Dict[str, str]:
    frozen: Dict[str, str] = {}
    for url in extract_remote_image_urls(raw_html):
        record = asset_store.find_downloaded_by_message_and_url(message_id, url)
        if record is not None and record.storage_path:
            frozen[url] = frozen_asset_path(message_id, record.storage_path)
    return frozen


def build_safe_html(raw_html: Optional[str], message_id: str, frozen_assets: Optional[Dict[str, str]] = None) -> str:
    """Pure composition of rewrite, sanitize and promote."""
    if not raw_html or not raw_html.strip():
        return ""
    rewritten = rewrite(raw_html, message_id, frozen_assets)
    return promote_markers(sanitize(rewritten))


def render_message_html(message_id: str) -> str:
    """
    Return display-safe HTML for a message, computing and caching it once.

    Raises:
        MessageNotFoundError: If the message has no HTML row
    """
    html = message_store.find_by_message_id(message_id)
    if html is None:
        raise MessageNotFoundError("message not found")

    if html.html_sanitized and html.html_sanitized.strip():
        return html.html_sanitized

    if not html.html_raw or not html.html_raw.strip():
        return ""

    frozen = _frozen_assets(message_id, html.html_raw)
    finalized = build_safe_html(html.html_raw, message_id, frozen)
    message_store.update_html_sanitized(message_id, finalized)
    logger.info(
        "Rendered message %s: %d chars, %d frozen assets",
        message_id,
        len(finalized),
        len(frozen),
    )
    return finalized
