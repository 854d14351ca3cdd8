"""
Asset freeze service: download remote images of a message for offline display.

For each remote <img src> of the raw HTML (normalized, de-duplicated, capped
at max_assets_per_message) the service records exactly one outcome in the
assets table:

  DOWNLOADED  stored under {storage_dir}/assets/{message_id}/{sha256}.{ext}
  SKIPPED     blocked by the SSRF guard, tracking heuristics, type or size
  FAILED      transport error or non-2xx status

URLs already DOWNLOADED for the message are skipped without a new record,
which makes a repeated freeze idempotent. Afterwards the render cache is
cleared and recomputed so the frozen copies replace the placeholder image.

Redirects are followed by hand (at most MAX_REDIRECTS) and the SSRF guard
runs before every hop, not only for the URL found in the HTML. Each request
is sent to one of the addresses the guard approved for that hop, never to a
fresh DNS answer.
"""

import logging
import re
import time
from collections import Counter
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple
from urllib.parse import urljoin, urlsplit, urlunsplit

import httpx

from app.config import Settings, get_settings
from app.models.asset import (
    AssetFreezeFailureSummary,
    AssetFreezeResponse,
    AssetRecord,
    AssetStatus,
)
from app.services import asset_store, message_store
from app.services.asset_files import sha256_hex, write_asset_file
from app.services.html_render import MessageNotFoundError, render_message_html
from app.services.html_rewriter import extract_remote_images
from app.services.ssrf_guard import BlockedUrlError, assert_safe_remote_url
from app.services.tracking import tracking_reasons

logger = logging.getLogger(__name__)

MAX_REDIRECTS = 5
REDIRECT_STATUS_CODES = {301, 302, 303, 307, 308}

_URL_RE = re.compile(r"https?://\S+", re.IGNORECASE)
_WHITESPACE_RE = re.compile(r"\s+")
_MAX_REASON_LENGTH = 80


@dataclass(frozen=True)
class DownloadProfile:
    name: str
    user_agent: str


# A 403 on the first profile is retried once with the next one; some image
# CDNs refuse anything that does not look like a browser or a mail client.
DOWNLOAD_PROFILES: Tuple[DownloadProfile, ...] = (
    DownloadProfile(
        name="browser-default",
        user_agent=(
            "Mozilla/5.0 (X11; Linux x86_64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/128.0.0.0 Safari/537.36"
        ),
    ),
    DownloadProfile(name="mail-client-fallback", user_agent="Mozilla/5.0 Thunderbird/128.0"),
)


class DownloadError(Exception):
    """Protocol-level problem while fetching (redirect loops, bad Location)."""


class RedirectBlockedError(BlockedUrlError):
    """A redirect target failed the SSRF guard."""


_TRANSPORT_ERRORS = (httpx.HTTPError, httpx.InvalidURL, DownloadError)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def asset_id(message_id: str, url: str) -> str:
    return sha256_hex(f"{message_id}|{url}".encode("utf-8"))


def host_from_url(url: str) -> str:
    try:
        host = urlsplit(url).hostname
    except ValueError:
        host = None
    return (host or "").strip().lower() or "unknown"


def summarize_reason(reason: Optional[str]) -> str:
    """Single-line, URL-free, bounded version of a failure reason for logs and summaries."""
    if not reason or not reason.strip():
        return "download error"
    normalized = _WHITESPACE_RE.sub(" ", _URL_RE.sub("[url]", reason.strip()))
    if len(normalized) <= _MAX_REASON_LENGTH:
        return normalized
    return normalized[:_MAX_REASON_LENGTH].rstrip() + "..."


def format_reason_summary(reason_counts: Counter) -> str:
    if not reason_counts:
        return "no reason captured"
    return "; ".join(f"{reason} ({count})" for reason, count in reason_counts.most_common(3))


def build_http_client(settings: Settings) -> httpx.Client:
    timeout = httpx.Timeout(
        settings.asset_read_timeout_seconds,
        connect=settings.asset_connect_timeout_seconds,
    )
    return httpx.Client(timeout=timeout, follow_redirects=False, trust_env=False)


def _request_headers(url: str, profile: DownloadProfile) -> Dict[str, str]:
    headers = {
        "User-Agent": profile.user_agent,
        "Accept": "image/avif,image/webp,image/apng,image/*,*/*;q=0.8",
        "Accept-Language": "en-US,en;q=0.9",
        "Cache-Control": "no-cache",
        "Pragma": "no-cache",
    }
    parts = urlsplit(url)
    if parts.scheme in ("http", "https") and parts.hostname:
        origin = f"{parts.scheme}://{parts.hostname}"
        headers["Origin"] = origin
        headers["Referer"] = origin + "/"
    return headers


# ---------------------------------------------------------------------------
# Persistence
# ---------------------------------------------------------------------------

def _persist_skipped(message_id: str, url: str, reason: str, security_blocked: bool = False) -> AssetRecord:
    record = AssetRecord(
        id=asset_id(message_id, url),
        message_id=message_id,
        original_url=url,
        status=AssetStatus.SKIPPED,
        error=reason,
        security_blocked=security_blocked,
    )
    asset_store.upsert(record)
    return record


def _persist_failed(message_id: str, url: str, reason: str) -> AssetRecord:
    record = AssetRecord(
        id=asset_id(message_id, url),
        message_id=message_id,
        original_url=url,
        status=AssetStatus.FAILED,
        error=reason,
    )
    asset_store.upsert(record)
    return record


# ---------------------------------------------------------------------------
# HTTP
# ---------------------------------------------------------------------------

def _pinned_request(
    client: httpx.Client,
    url: str,
    address: str,
    profile: DownloadProfile,
) -> httpx.Request:
    """
    GET request that connects to an address the guard approved.

    The URL host is replaced by the address so the transport performs no
    lookup of its own; Host and the TLS server name keep the real hostname.
    """
    parts = urlsplit(url)
    try:
        hostname = (parts.hostname or "").encode("idna").decode("ascii")
    except UnicodeError as exc:
        raise DownloadError("invalid url host") from exc

    pinned_host = f"[{address}]" if ":" in address else address
    named_host = f"[{hostname}]" if ":" in hostname else hostname
    if parts.port is not None:
        netloc = f"{pinned_host}:{parts.port}"
        host_header = f"{named_host}:{parts.port}"
    else:
        netloc = pinned_host
        host_header = named_host
    pinned_url = urlunsplit((parts.scheme, netloc, parts.path or "/", parts.query, ""))

    headers = _request_headers(url, profile)
    headers["Host"] = host_header
    extensions = {"sni_hostname": hostname} if parts.scheme.lower() == "https" else {}
    return client.build_request("GET", pinned_url, headers=headers, extensions=extensions)


def _send_with_manual_redirects(
    client: httpx.Client,
    message_id: str,
    url: str,
    approved_addresses: List[str],
    profile: DownloadProfile,
    settings: Settings,
) -> httpx.Response:
    """
    GET url following redirects by hand; the caller must close the response.

    approved_addresses are the guard's result for url itself; every redirect
    target is checked again and pinned to its own approved address.

    Raises:
        RedirectBlockedError: A redirect target failed the SSRF guard
        DownloadError: Too many redirects or a redirect without Location
        httpx.HTTPError: Transport failure
    """
    current = url
    addresses = approved_addresses
    for hop in range(MAX_REDIRECTS + 1):
        if hop > 0:
            try:
                addresses = assert_safe_remote_url(current, settings.asset_allowed_ports)
            except BlockedUrlError as exc:
                raise RedirectBlockedError(f"redirect blocked: {exc}") from exc
        request = _pinned_request(client, current, addresses[0], profile)
        response = client.send(request, stream=True)
        logger.info(
            "Freeze fetch messageId=%s host=%s address=%s profile=%s hop=%d status=%d contentType=%s",
            message_id,
            host_from_url(current),
            addresses[0],
            profile.name,
            hop,
            response.status_code,
            response.headers.get("content-type", "-"),
        )
        if response.status_code not in REDIRECT_STATUS_CODES:
            return response

        location = response.headers.get("location")
        response.close()
        if hop >= MAX_REDIRECTS:
            break
        if not location:
            raise DownloadError("redirect without location")
        current = urljoin(current, location.strip())

    raise DownloadError("too many redirects")


def _send(
    client: httpx.Client,
    message_id: str,
    url: str,
    approved_addresses: List[str],
    settings: Settings,
) -> httpx.Response:
    last_index = len(DOWNLOAD_PROFILES) - 1
    for index, profile in enumerate(DOWNLOAD_PROFILES):
        response = _send_with_manual_redirects(client, message_id, url, approved_addresses, profile, settings)
        if response.status_code == 403 and index < last_index:
            response.close()
            logger.info(
                "Freeze retry messageId=%s host=%s reason=http status 403 nextProfile=%s",
                message_id,
                host_from_url(url),
                DOWNLOAD_PROFILES[index + 1].name,
            )
            continue
        return response
    raise DownloadError("no download profile configured")


def _read_limited(response: httpx.Response, limit: int) -> Optional[bytes]:
    """Body bytes, or None as soon as more than limit bytes arrive."""
    declared = response.headers.get("content-length", "").strip()
    if declared.isdigit() and int(declared) > limit:
        return None
    buffer = bytearray()
    for chunk in response.iter_bytes():
        buffer.extend(chunk)
        if len(buffer) > limit:
            return None
    return bytes(buffer)


# ---------------------------------------------------------------------------
# Download of one URL
# ---------------------------------------------------------------------------

def download_asset(
    client: httpx.Client,
    settings: Settings,
    message_id: str,
    url: str,
    current_total_bytes: int,
) -> AssetRecord:
    """Fetch one candidate URL and persist its outcome record."""
    try:
        addresses = assert_safe_remote_url(url, settings.asset_allowed_ports)
        response = _send(client, message_id, url, addresses, settings)
    except BlockedUrlError as exc:
        return _persist_skipped(message_id, url, str(exc), security_blocked=True)
    except _TRANSPORT_ERRORS as exc:
        logger.warning(
            "Freeze download error messageId=%s host=%s reason=%s",
            message_id,
            host_from_url(url),
            summarize_reason(str(exc)),
        )
        return _persist_failed(message_id, url, f"download failed: {exc}")

    try:
        if not 200 <= response.status_code <= 299:
            return _persist_failed(message_id, url, f"http status {response.status_code}")

        content_type = response.headers.get("content-type", "").split(";", 1)[0].strip().lower()
        if not content_type.startswith("image/"):
            return _persist_skipped(message_id, url, "content-type is not image")

        try:
            content = _read_limited(response, settings.max_asset_bytes)
        except _TRANSPORT_ERRORS as exc:
            return _persist_failed(message_id, url, f"download failed: {exc}")
    finally:
        response.close()

    if content is None:
        return _persist_skipped(message_id, url, "asset exceeded max bytes")

    if current_total_bytes + len(content) > settings.total_max_bytes_per_message:
        return _persist_skipped(message_id, url, "total max bytes per message exceeded")

    try:
        stored = write_asset_file(settings, message_id, content_type, content)
    except OSError as exc:
        logger.error("Freeze could not write asset messageId=%s: %s", message_id, exc)
        return _persist_failed(message_id, url, f"download failed: {exc}")

    record = AssetRecord(
        id=asset_id(message_id, url),
        message_id=message_id,
        original_url=url,
        storage_path=stored.storage_path,
        content_type=content_type,
        size=stored.size,
        sha256=stored.sha256,
        status=AssetStatus.DOWNLOADED,
        downloaded_at=datetime.now(timezone.utc).isoformat(),
    )
    asset_store.upsert(record)
    return record


# ---------------------------------------------------------------------------
# Freeze of one message
# ---------------------------------------------------------------------------

def _failure_summary(failures: List[Tuple[str, str]]) -> List[AssetFreezeFailureSummary]:
    counts = Counter(failures)
    summary = [
        AssetFreezeFailureSummary(host=host, reason=reason, count=count)
        for (host, reason), count in counts.items()
    ]
    return sorted(summary, key=lambda item: (-item.count, item.host))


def _last_reason(downloaded: int, failed: int, skipped: int, skip_reasons: Counter) -> str:
    if downloaded > 0:
        return f"Completed: downloaded={downloaded} failed={failed} skipped={skipped}"
    if failed > 0:
        return f"Completed with failures: failed={failed} skipped={skipped}"
    if skipped > 0:
        return f"Skipped: {format_reason_summary(skip_reasons)}"
    return "Completed: no changes"


def freeze_message_assets(
    message_id: str,
    settings: Optional[Settings] = None,
    http_client: Optional[httpx.Client] = None,
) -> AssetFreezeResponse:
    """
    Download the remote images of a message and refresh its rendered HTML.

    Per-URL problems never fail the call; they are counted and recorded.

    Raises:
        MessageNotFoundError: If the message has no HTML row
    """
    settings = settings or get_settings()
    html = message_store.find_by_message_id(message_id)
    if html is None:
        raise MessageNotFoundError("message not found")

    started = time.monotonic()
    logger.info("Freeze start messageId=%s", message_id)
    total_found = downloaded = failed = skipped = 0

    owns_client = http_client is None
    client = http_client or build_http_client(settings)
    try:
        if not html.html_raw or not html.html_raw.strip():
            logger.info("Freeze skipped messageId=%s reason=no html", message_id)
            message_store.set_freeze_last_reason(message_id, "Skipped: message has no HTML body")
            return AssetFreezeResponse()

        candidates = extract_remote_images(html.html_raw)
        total_found = len(candidates)
        if not candidates:
            logger.info("Freeze skipped messageId=%s reason=no remote images", message_id)
            message_store.set_freeze_last_reason(message_id, "Skipped: no remote images found")
            return AssetFreezeResponse()

        total_bytes = 0
        failures: List[Tuple[str, str]] = []
        skip_reasons: Counter = Counter()

        limited = candidates[:settings.max_assets_per_message]
        overflow = len(candidates) - len(limited)
        if overflow > 0:
            skipped += overflow
            skip_reasons["max assets per message reached"] += overflow
            logger.info(
                "Freeze skipped messageId=%s reason=max assets per message reached "
                "totalFound=%d maxAssetsPerMessage=%d skippedOverflow=%d",
                message_id,
                total_found,
                settings.max_assets_per_message,
                overflow,
            )

        for candidate in limited:
            url = candidate.url
            host = host_from_url(url)

            if asset_store.find_downloaded_by_message_and_url(message_id, url) is not None:
                skipped += 1
                skip_reasons["already downloaded"] += 1
                logger.info("Freeze skipped messageId=%s host=%s reason=already downloaded", message_id, host)
                continue

            if total_bytes >= settings.total_max_bytes_per_message:
                reason = "total max bytes per message reached"
                _persist_skipped(message_id, url, reason)
                skipped += 1
                skip_reasons[reason] += 1
                logger.info("Freeze skipped messageId=%s host=%s reason=%s", message_id, host, reason)
                continue

            trackers = tracking_reasons(url, candidate.occurrences, settings)
            if trackers:
                _persist_skipped(message_id, url, f"tracking candidate blocked: {', '.join(trackers)}")
                skipped += 1
                skip_reasons["tracking candidate blocked"] += 1
                logger.info(
                    "Freeze skipped messageId=%s host=%s reason=tracking candidate blocked (%s)",
                    message_id,
                    host,
                    ", ".join(trackers),
                )
                continue

            record = download_asset(client, settings, message_id, url, total_bytes)
            if record.status == AssetStatus.DOWNLOADED:
                downloaded += 1
                total_bytes += record.size or 0
            elif record.status == AssetStatus.SKIPPED:
                skipped += 1
                skip_reasons[summarize_reason(record.error)] += 1
                logger.info(
                    "Freeze skipped messageId=%s host=%s reason=%s",
                    message_id,
                    host,
                    summarize_reason(record.error),
                )
            else:
                failed += 1
                failures.append((host, summarize_reason(record.error)))
                logger.warning(
                    "Freeze asset failed messageId=%s host=%s reason=%s",
                    message_id,
                    host,
                    summarize_reason(record.error),
                )

        message_store.clear_html_sanitized(message_id)
        render_message_html(message_id)
        message_store.set_freeze_last_reason(
            message_id, _last_reason(downloaded, failed, skipped, skip_reasons)
        )

        return AssetFreezeResponse(
            total_found=total_found,
            downloaded=downloaded,
            failed=failed,
            skipped=skipped,
            failures=_failure_summary(failures),
        )
    except Exception as exc:
        logger.error(
            "Freeze failed messageId=%s totalFound=%d downloaded=%d failed=%d skipped=%d reason=%s",
            message_id,
            total_found,
            downloaded,
            failed,
            skipped,
            summarize_reason(str(exc)),
            exc_info=True,
        )
        try:
            message_store.set_freeze_last_reason(message_id, f"Failed: {summarize_reason(str(exc))}")
        except Exception as record_exc:
            logger.warning(f"Could not record freeze failure for {message_id}: {record_exc}")
        raise
    finally:
        if owns_client:
            client.close()
        logger.info(
            "Freeze finish messageId=%s totalFound=%d downloaded=%d failed=%d skipped=%d durationMs=%d",
            message_id,
            total_found,
            downloaded,
            failed,
            skipped,
            int((time.monotonic() - started) * 1000),
        )
