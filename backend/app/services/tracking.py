"""
Heuristics that flag remote images as likely tracking beacons.

A candidate is flagged when any of these hold:
  - the URL contains a configured keyword or a "1x1" / "1*1" token
  - an <img> using it is sized 1x1 or smaller (attributes, inline style or
    w/h query parameters)
  - its host is, or is a subdomain of, a blocked tracking domain

Flagged images are never downloaded by the freeze service.
"""

import re
from typing import Dict, Iterable, List, Optional, Tuple
from urllib.parse import urlsplit

from app.config import Settings

_ONE_BY_ONE_TOKEN = re.compile(r"\b1\s*(x|\*)\s*1\b", re.IGNORECASE)
_STYLE_WIDTH = re.compile(r"\bwidth\s*:\s*([0-9]{1,4})\s*px\b", re.IGNORECASE)
_STYLE_HEIGHT = re.compile(r"\bheight\s*:\s*([0-9]{1,4})\s*px\b", re.IGNORECASE)
_DIGITS = re.compile(r"\d+")

_QUERY_WIDTH_KEYS = {"w", "width"}
_QUERY_HEIGHT_KEYS = {"h", "height"}
_QUERY_SIZE_KEYS = {"size", "dim", "dims", "dimension", "dimensions"}


def _parse_pixels(value: Optional[str]) -> Optional[int]:
    if not value or not value.strip():
        return None
    match = _DIGITS.search(value.strip().lower().removesuffix("px"))
    return int(match.group()) if match else None


def _query_pairs(url: str) -> List[Tuple[str, str]]:
    query = urlsplit(url).query
    pairs = []
    for segment in query.split("&"):
        key, _, value = segment.partition("=")
        key = key.strip().lower()
        if key:
            pairs.append((key, value.strip().lower()))
    return pairs


def _first_number(pairs: Iterable[Tuple[str, str]], keys: set) -> Optional[int]:
    for key, value in pairs:
        if key in keys:
            match = _DIGITS.search(value)
            if match:
                return int(match.group())
    return None


def _is_one_by_one_query(url: str) -> bool:
    pairs = _query_pairs(url)
    if any(_ONE_BY_ONE_TOKEN.search(f"{k}={v}") for k, v in pairs):
        return True
    width = _first_number(pairs, _QUERY_WIDTH_KEYS)
    height = _first_number(pairs, _QUERY_HEIGHT_KEYS)
    if width is not None and height is not None and width <= 1 and height <= 1:
        return True
    return any(key in _QUERY_SIZE_KEYS and _ONE_BY_ONE_TOKEN.search(value) for key, value in pairs)


def _is_one_by_one_tag(attributes: Dict[str, str]) -> bool:
    lowered = {name.lower(): value for name, value in attributes.items()}
    width = _parse_pixels(lowered.get("width"))
    height = _parse_pixels(lowered.get("height"))
    if width is not None and height is not None and width <= 1 and height <= 1:
        return True

    style = (lowered.get("style") or "").lower()
    if not style:
        return False
    style_width = _STYLE_WIDTH.search(style)
    style_height = _STYLE_HEIGHT.search(style)
    return (
        style_width is not None
        and style_height is not None
        and int(style_width.group(1)) <= 1
        and int(style_height.group(1)) <= 1
    )


def _matches_keyword(url: str, keywords: Iterable[str]) -> bool:
    value = url.lower()
    if _ONE_BY_ONE_TOKEN.search(value):
        return True
    return any(keyword.strip() and keyword.strip().lower() in value for keyword in keywords)


def _is_blocked_domain(url: str, domains: Iterable[str]) -> bool:
    host = (urlsplit(url).hostname or "").lower()
    if not host:
        return False
    for domain in domains:
        normalized = domain.strip().lower()
        if normalized and (host == normalized or host.endswith("." + normalized)):
            return True
    return False


def tracking_reasons(url: str, occurrences: Iterable[Dict[str, str]], settings: Settings) -> List[str]:
    """Reasons (possibly empty) why the image at url looks like a tracker."""
    if not settings.tracking_block_enabled:
        return []

    reasons = []
    if _matches_keyword(url, settings.tracking_url_keywords):
        reasons.append("url keyword pattern")
    if _is_one_by_one_query(url) or any(_is_one_by_one_tag(attrs) for attrs in occurrences):
        reasons.append("1x1 image pattern")
    if _is_blocked_domain(url, settings.tracking_blocked_domains):
        reasons.append("blocked tracking domain")
    return reasons
