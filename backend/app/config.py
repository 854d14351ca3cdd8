"""
Runtime configuration for rendering and asset freezing.

Every value can be overridden with a ``MAILVAULT_*`` environment variable
(``.env`` files are picked up by ``app.db`` through python-dotenv):

  MAILVAULT_STORAGE_DIR                    root for frozen assets
  MAILVAULT_MAX_ASSETS_PER_MESSAGE         candidate URLs considered per freeze
  MAILVAULT_MAX_ASSET_BYTES                per-file ceiling
  MAILVAULT_TOTAL_MAX_BYTES_PER_MESSAGE    per-message ceiling for one freeze
  MAILVAULT_ASSET_CONNECT_TIMEOUT_SECONDS
  MAILVAULT_ASSET_READ_TIMEOUT_SECONDS
  MAILVAULT_ASSET_ALLOWED_PORTS            comma-separated, e.g. "80,443"
  MAILVAULT_TRACKING_BLOCK_ENABLED         "true" / "false"
  MAILVAULT_TRACKING_URL_KEYWORDS          comma-separated
  MAILVAULT_TRACKING_BLOCKED_DOMAINS       comma-separated
"""

import os
from typing import List

from pydantic import BaseModel, Field

_ENV_PREFIX = "MAILVAULT_"

DEFAULT_TRACKING_URL_KEYWORDS = [
    "/track/",
    "/tracking/",
    "/beacon",
    "/pixel.",
    "/pixel/",
    "open.gif",
    "open.php",
    "/wf/open",
]

DEFAULT_TRACKING_BLOCKED_DOMAINS = [
    "doubleclick.net",
    "google-analytics.com",
    "mailtrack.io",
    "mixpanel.com",
]


class Settings(BaseModel):
    """Limits and locations used by the render and freeze services."""

    storage_dir: str = "./data/storage"
    max_assets_per_message: int = Field(default=50, ge=0)
    max_asset_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    total_max_bytes_per_message: int = Field(default=50 * 1024 * 1024, gt=0)
    asset_connect_timeout_seconds: float = Field(default=5, gt=0)
    asset_read_timeout_seconds: float = Field(default=10, gt=0)
    asset_allowed_ports: List[int] = [80, 443]
    tracking_block_enabled: bool = True
    tracking_url_keywords: List[str] = Field(
        default_factory=lambda: list(DEFAULT_TRACKING_URL_KEYWORDS)
    )
    tracking_blocked_domains: List[str] = Field(
        default_factory=lambda: list(DEFAULT_TRACKING_BLOCKED_DOMAINS)
    )


def _split_list(raw: str) -> List[str]:
    return [item.strip() for item in raw.split(",") if item.strip()]


def get_settings() -> Settings:
    """
    Build Settings from the environment.

    Only variables that are set (and non-empty) override the defaults, so a
    partially configured environment still yields a usable Settings object.
    Invalid numbers raise pydantic.ValidationError at startup rather than
    silently falling back.
    """
    overrides: dict = {}
    scalar_fields = (
        "storage_dir",
        "max_assets_per_message",
        "max_asset_bytes",
        "total_max_bytes_per_message",
        "asset_connect_timeout_seconds",
        "asset_read_timeout_seconds",
        "tracking_block_enabled",
    )
    for name in scalar_fields:
        value = os.getenv(_ENV_PREFIX + name.upper(), "").strip()
        if value:
            overrides[name] = value

    ports = os.getenv(_ENV_PREFIX + "ASSET_ALLOWED_PORTS", "").strip()
    if ports:
        overrides["asset_allowed_ports"] = _split_list(ports)

    for name in ("tracking_url_keywords", "tracking_blocked_domains"):
        value = os.getenv(_ENV_PREFIX + name.upper())
        if value is not None:
            overrides[name] = _split_list(value)

    return Settings(**overrides)
