"""
Allow-list HTML sanitizer for rendered email bodies.

Only the marker attributes written by the rewriter (``data-safe-href``,
``data-safe-src``) can carry a link or an image location through this
policy. Plain ``href``/``src`` are never allowed; ``promote_markers`` in
html_rewriter turns the markers into real attributes after sanitization.
"""

import logging
import re
from typing import Callable, Dict, Optional, Pattern, Union
from urllib.parse import unquote

import bleach
from bs4 import BeautifulSoup, ParserRejectedMarkup

logger = logging.getLogger(__name__)

ALLOWED_TAGS = frozenset({
    "a", "p", "br", "div", "span", "table", "tr", "td", "th", "thead", "tbody",
    "img", "ul", "ol", "li", "b", "strong", "i", "em", "pre", "code",
    "blockquote", "hr",
})

# Never displayable as text: removed together with everything inside them.
DROP_WITH_CONTENT = (
    "script", "style", "iframe", "object", "embed", "noscript", "template",
    "title", "head", "svg", "math",
)

SAFE_LINK_PATTERN = re.compile(r"^(https?://|/go\?url=).+", re.IGNORECASE)
SAFE_IMAGE_PATTERN = re.compile(
    r"^(/api/messages/.+/cid/.+"
    r"|/static/remote-image-blocked\.svg"
    r"|/assets/[^/]+/[0-9a-f]{64}\.[a-z0-9]+)$",
    re.IGNORECASE,
)
SAFE_REMOTE_PATTERN = re.compile(r"^https?://.+", re.IGNORECASE)

_ANY = None
AttributeRule = Union[Pattern, Callable[[str], bool], None]

_TITLE_ONLY_TAGS = (
    "p", "div", "span", "table", "tr", "td", "th", "thead", "tbody",
    "ul", "ol", "li", "pre", "code", "blockquote",
)


def _is_local_image_path(value: str) -> bool:
    """
    data-safe-src check: the pattern plus no path traversal.

    A same-origin path such as ``/api/messages/x/cid/../../../go?url=...``
    matches the pattern but resolves elsewhere in the browser.
    """
    if not SAFE_IMAGE_PATTERN.fullmatch(value):
        return False
    if "\\" in value:
        return False
    segments = unquote(value).split("/")
    return not any(segment in (".", "..") for segment in segments)


ATTRIBUTE_RULES: Dict[str, Dict[str, AttributeRule]] = {
    "a": {
        "data-safe-href": SAFE_LINK_PATTERN,
        "title": _ANY,
    },
    "img": {
        "data-safe-src": _is_local_image_path,
        "data-original-src": SAFE_REMOTE_PATTERN,
        "alt": _ANY,
        "title": _ANY,
    },
}
for _tag in _TITLE_ONLY_TAGS:
    ATTRIBUTE_RULES.setdefault(_tag, {})["title"] = _ANY
for _tag in ("td", "th"):
    ATTRIBUTE_RULES[_tag]["colspan"] = _ANY
    ATTRIBUTE_RULES[_tag]["rowspan"] = _ANY


def allow_attribute(tag: str, name: str, value: Optional[str]) -> bool:
    """bleach attribute filter: keep (tag, name) only if its value passes the rule."""
    rules = ATTRIBUTE_RULES.get(tag)
    if not rules or name not in rules:
        return False
    rule = rules[name]
    if rule is _ANY:
        return True
    value = value or ""
    if isinstance(rule, re.Pattern):
        return rule.fullmatch(value) is not None
    return rule(value)


_cleaner = bleach.Cleaner(
    tags=ALLOWED_TAGS,
    attributes=allow_attribute,
    strip=True,
    strip_comments=True,
)


def _drop_non_text_elements(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for element in soup.find_all(DROP_WITH_CONTENT):
        element.decompose()
    return str(soup)


def sanitize(html: str) -> str:
    """
    Reduce arbitrary HTML to the allow-listed subset.

    Disallowed elements are unwrapped (their allowed children stay),
    attributes outside the allow-list or failing their value rule are
    dropped. Never raises for any string input.
    """
    if not html:
        return ""
    try:
        html = _drop_non_text_elements(html)
    except ParserRejectedMarkup:
        # bleach alone still yields a safe result, only noisier
        logger.warning("html.parser rejected markup; sanitizing without pre-pass")
    return _cleaner.clean(html)
