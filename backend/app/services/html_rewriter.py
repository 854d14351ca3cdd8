"""
Pre-sanitization rewrite of links and images in raw email HTML.

Links and image locations are moved into marker attributes so the sanitizer
only ever judges values written here:

  <a href="X">          -> <a data-safe-href="/go?url=<X form-encoded>">
  <img src="cid:Y">     -> <img data-safe-src="/api/messages/{id}/cid/Y">
  <img src="https://Z"> -> <img data-safe-src="/static/remote-image-blocked.svg"
                                data-original-src="https://Z">
                           (or the frozen copy /assets/{id}/{sha256}.{ext})
  <img src="other">     -> <img data-safe-src="other">

``promote_markers`` renames the markers back to href/src once the sanitizer
has dropped every value that failed its pattern.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Dict, List, Mapping, Optional
from urllib.parse import quote, quote_plus, urlsplit, urlunsplit

from bs4 import BeautifulSoup, ParserRejectedMarkup

logger = logging.getLogger(__name__)

SAFE_HREF_ATTR = "data-safe-href"
SAFE_SRC_ATTR = "data-safe-src"
ORIGINAL_SRC_ATTR = "data-original-src"

GO_ENDPOINT = "/go?url="
REMOTE_IMAGE_PLACEHOLDER = "/static/remote-image-blocked.svg"

_MARKER_ATTRS = (SAFE_HREF_ATTR, SAFE_SRC_ATTR)
_PROMOTE_RE = re.compile(r"(?<=\s)data-safe-(href|src)=(?=[\"'])")


@dataclass
class RemoteImage:
    """A normalized remote image URL and the attributes of every <img> using it."""
    url: str
    occurrences: List[Dict[str, str]] = field(default_factory=list)


def is_remote_url(value: str) -> bool:
    lower = value.lower()
    return lower.startswith("http://") or lower.startswith("https://")


def normalize_remote_url(raw: Optional[str]) -> Optional[str]:
    """
    Canonical form of an http(s) image URL, or None if it is not one.

    Scheme and host are lower-cased; userinfo and fragment are dropped;
    port, path and query are kept as written.
    """
    if not raw:
        return None
    try:
        raw.encode("utf-8")
        parts = urlsplit(raw.strip())
        port = parts.port
    except (UnicodeEncodeError, ValueError):
        return None

    scheme = parts.scheme.lower()
    if scheme not in ("http", "https"):
        return None
    host = parts.hostname
    if not host:
        return None
    if ":" in host:
        host = f"[{host}]"
    netloc = host if port is None else f"{host}:{port}"
    return urlunsplit((scheme, netloc, parts.path, parts.query, ""))


def _path_segment(value: str) -> str:
    # lone surrogates cannot be UTF-8 encoded; they become "?"
    return quote(value, safe="", errors="replace")


def cid_image_path(message_id: str, src: str) -> str:
    """/api/messages/{id}/cid/{content-id} for a ``cid:`` reference."""
    content_id = src[len("cid:"):].strip()
    if content_id.startswith("<"):
        content_id = content_id[1:]
    if content_id.endswith(">"):
        content_id = content_id[:-1]
    return f"/api/messages/{_path_segment(message_id)}/cid/{_path_segment(content_id)}"


def frozen_asset_path(message_id: str, storage_path: str) -> str:
    """Public path of a frozen asset file: /assets/{id}/{sha256}.{ext}."""
    return f"/assets/{_path_segment(message_id)}/{os.path.basename(storage_path)}"


def _parse(html: str) -> Optional[BeautifulSoup]:
    try:
        return BeautifulSoup(html, "html.parser")
    except ParserRejectedMarkup:
        logger.warning("html.parser rejected markup of %d chars", len(html))
        return None


def extract_remote_images(raw_html: Optional[str]) -> List[RemoteImage]:
    """
    Remote <img src> URLs of raw HTML, normalized and de-duplicated.

    Order is the document order of first occurrence.
    """
    if not raw_html:
        return []
    soup = _parse(raw_html)
    if soup is None:
        return []

    by_url: Dict[str, RemoteImage] = {}
    for image in soup.find_all("img", src=True):
        url = normalize_remote_url(image["src"])
        if url is None:
            continue
        entry = by_url.setdefault(url, RemoteImage(url=url))
        entry.occurrences.append({
            name: " ".join(value) if isinstance(value, list) else value
            for name, value in image.attrs.items()
        })
    return list(by_url.values())


def extract_remote_image_urls(raw_html: Optional[str]) -> List[str]:
    return [image.url for image in extract_remote_images(raw_html)]


def rewrite(
    raw_html: str,
    message_id: str,
    frozen_assets: Optional[Mapping[str, str]] = None,
) -> str:
    """
    Move every anchor href and image src into its marker attribute.

    frozen_assets maps normalized remote URLs to the local path that serves
    their downloaded copy; such images point at the copy instead of the
    placeholder. Marker attributes already present in the input are removed
    so only values produced here can reach the sanitizer.
    """
    if not raw_html:
        return ""
    soup = _parse(raw_html)
    if soup is None:
        return ""
    frozen_assets = frozen_assets or {}

    for element in soup.find_all(True):
        for name in _MARKER_ATTRS:
            if name in element.attrs:
                del element[name]

    for anchor in soup.find_all("a", href=True):
        href = anchor["href"]
        del anchor["href"]
        anchor[SAFE_HREF_ATTR] = GO_ENDPOINT + quote_plus(href, errors="replace")

    for image in soup.find_all("img", src=True):
        src = image["src"].strip()
        del image["src"]
        if ORIGINAL_SRC_ATTR in image.attrs:
            del image[ORIGINAL_SRC_ATTR]

        if src.lower().startswith("cid:"):
            image[SAFE_SRC_ATTR] = cid_image_path(message_id, src)
        elif is_remote_url(src):
            local = frozen_assets.get(normalize_remote_url(src) or "")
            image[SAFE_SRC_ATTR] = local or REMOTE_IMAGE_PLACEHOLDER
            image[ORIGINAL_SRC_ATTR] = src
        else:
            image[SAFE_SRC_ATTR] = src

    return str(soup)


def promote_markers(sanitized_html: str) -> str:
    """Rename data-safe-href/data-safe-src attributes to href/src."""
    return _PROMOTE_RE.sub(lambda match: match.group(1) + "=", sanitized_html)
