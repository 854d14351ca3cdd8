"""
Validation of outbound link targets for the /go redirect endpoint.
"""

from urllib.parse import urlsplit


def safe_redirect_target(url: str) -> str:
    """
    Return the trimmed URL if it is a usable http(s) link.

    Raises:
        ValueError: Empty, unparseable or non-http(s) target
    """
    target = (url or "").strip()
    if not target:
        raise ValueError("url is required")

    try:
        parts = urlsplit(target)
    except ValueError as exc:
        raise ValueError("invalid url") from exc

    if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
        raise ValueError("only http/https urls are allowed")
    return target
