"""
Shared fixtures: an in-memory replacement for the Supabase-backed stores and
a fake DNS resolver for the SSRF guard.

No test talks to Supabase or the network.
"""

import ipaddress
import os
import socket
from typing import Dict, List, Optional, Tuple

import pytest

# Mock environment variables before importing app modules
os.environ.setdefault("SUPABASE_URL", "https://test.supabase.co")

from app.config import Settings
from app.models.asset import AssetRecord, AssetStatus
from app.models.message_html import MessageHtml
from app.services import asset_store, message_store


class FakeDb:
    """Dict-backed stand-in for message_store and asset_store."""

    def __init__(self):
        self.bodies: Dict[str, MessageHtml] = {}
        self.assets: Dict[Tuple[str, str], AssetRecord] = {}
        self.freeze_reasons: Dict[str, str] = {}
        self.cache_writes: List[Tuple[str, Optional[str]]] = []

    def add_message(self, message_id: str, html_raw: Optional[str], html_sanitized: Optional[str] = None):
        self.bodies[message_id] = MessageHtml(
            message_id=message_id,
            html_raw=html_raw,
            html_sanitized=html_sanitized,
        )

    # message_store
    def find_by_message_id(self, message_id: str) -> Optional[MessageHtml]:
        body = self.bodies.get(message_id)
        return body.model_copy() if body is not None else None

    def update_html_sanitized(self, message_id: str, html_sanitized: Optional[str]) -> None:
        self.cache_writes.append((message_id, html_sanitized))
        if message_id in self.bodies:
            self.bodies[message_id].html_sanitized = html_sanitized

    def clear_html_sanitized(self, message_id: str) -> None:
        self.update_html_sanitized(message_id, None)

    def set_freeze_last_reason(self, message_id: str, reason: str) -> None:
        self.freeze_reasons[message_id] = reason

    # asset_store
    def upsert(self, asset: AssetRecord) -> None:
        self.assets[(asset.message_id, asset.original_url)] = asset

    def find_downloaded_by_message_and_url(self, message_id: str, original_url: str) -> Optional[AssetRecord]:
        record = self.assets.get((message_id, original_url))
        if record is not None and record.status == AssetStatus.DOWNLOADED:
            return record
        return None

    def find_downloaded_by_message_and_sha(self, message_id: str, sha256: str) -> Optional[AssetRecord]:
        for record in self.assets.values():
            if (
                record.message_id == message_id
                and record.sha256 == sha256
                and record.status == AssetStatus.DOWNLOADED
            ):
                return record
        return None

    def records_for(self, message_id: str) -> List[AssetRecord]:
        return [record for (owner, _), record in self.assets.items() if owner == message_id]


@pytest.fixture
def fake_db(monkeypatch):
    db = FakeDb()
    for name in ("find_by_message_id", "update_html_sanitized", "clear_html_sanitized", "set_freeze_last_reason"):
        monkeypatch.setattr(message_store, name, getattr(db, name))
    for name in ("upsert", "find_downloaded_by_message_and_url", "find_downloaded_by_message_and_sha"):
        monkeypatch.setattr(asset_store, name, getattr(db, name))
    return db


def make_getaddrinfo(answers: Dict[str, List[str]]):
    """getaddrinfo replacement: IP literals resolve to themselves, names via answers."""

    def fake_getaddrinfo(host, port, *args, **kwargs):
        try:
            ipaddress.ip_address(host)
            addresses = [host]
        except ValueError:
            if host not in answers:
                raise socket.gaierror(socket.EAI_NONAME, "Name or service not known")
            addresses = answers[host]
        return [
            (
                socket.AF_INET6 if ":" in address else socket.AF_INET,
                socket.SOCK_STREAM,
                6,
                "",
                (address, port),
            )
            for address in addresses
        ]

    return fake_getaddrinfo


PUBLIC_DNS = {
    "example.com": ["93.184.216.34"],
    "img.example.com": ["93.184.216.34"],
    "cdn.example.com": ["93.184.216.35"],
    "cdn2.example.com": ["2606:2800:220:1:248:1893:25c8:1946"],
    "pixel.mailtrack.io": ["93.184.216.36"],
    "internal.example.com": ["10.0.0.5"],
    "mixed.example.com": ["93.184.216.34", "192.168.1.10"],
}


@pytest.fixture
def fake_dns(monkeypatch):
    monkeypatch.setattr("app.services.ssrf_guard.socket.getaddrinfo", make_getaddrinfo(PUBLIC_DNS))
    return PUBLIC_DNS


@pytest.fixture
def settings(tmp_path):
    return Settings(storage_dir=str(tmp_path / "storage"))
