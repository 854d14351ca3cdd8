"""
Unit tests for content-addressed asset files and their lookup for serving.
"""

import hashlib

import pytest

from app.models.asset import AssetRecord, AssetStatus
from app.services.asset_files import (
    AssetNotFoundError,
    assets_root,
    extension_from_content_type,
    message_asset_dir,
    resolve_downloaded_asset,
    write_asset_file,
)

PNG_BYTES = b"\x89PNG\r\n\x1a\nfake"


def _downloaded(message_id: str, stored) -> AssetRecord:
    return AssetRecord(
        id="a1",
        message_id=message_id,
        original_url="https://example.com/a.png",
        storage_path=stored.storage_path,
        content_type="image/png",
        size=stored.size,
        sha256=stored.sha256,
        status=AssetStatus.DOWNLOADED,
    )


class TestExtensionFromContentType:
    """File extension derived from the response Content-Type."""

    @pytest.mark.parametrize(
        "content_type, expected",
        [
            ("image/png", "png"),
            ("image/svg+xml", "svg"),
            ("IMAGE/JPEG", "jpeg"),
            ("image/x-icon", "xicon"),
            ("image/", "bin"),
            ("garbage", "bin"),
        ],
    )
    def test_extension(self, content_type, expected):
        assert extension_from_content_type(content_type) == expected


class TestWriteAssetFile:
    """Files are named after their sha256."""

    def test_file_is_written_under_message_directory(self, settings):
        stored = write_asset_file(settings, "m1", "image/png", PNG_BYTES)

        digest = hashlib.sha256(PNG_BYTES).hexdigest()
        assert stored.sha256 == digest
        assert stored.size == len(PNG_BYTES)
        expected = assets_root(settings) / "m1" / f"{digest}.png"
        assert stored.storage_path == str(expected)
        assert expected.read_bytes() == PNG_BYTES

    def test_same_content_is_stored_once(self, settings):
        first = write_asset_file(settings, "m1", "image/png", PNG_BYTES)
        second = write_asset_file(settings, "m1", "image/png", PNG_BYTES)

        assert first == second
        assert len(list((assets_root(settings) / "m1").iterdir())) == 1

    def test_message_id_cannot_escape_assets_directory(self, settings):
        for message_id in ("../../etc", "..", "a/b"):
            directory = message_asset_dir(settings, message_id)
            assert directory.parent == assets_root(settings)


class TestResolveDownloadedAsset:
    """Lookup for GET /assets/{message_id}/{filename}."""

    def test_returns_file_of_downloaded_record(self, settings, fake_db):
        stored = write_asset_file(settings, "m1", "image/png", PNG_BYTES)
        fake_db.upsert(_downloaded("m1", stored))

        asset = resolve_downloaded_asset("m1", f"{stored.sha256}.png", settings)

        assert asset.content == PNG_BYTES
        assert asset.content_type == "image/png"
        assert asset.filename == f"{stored.sha256}.png"

    @pytest.mark.parametrize("filename", ["not-a-digest.png", "abc.png", "", "../secret"])
    def test_invalid_filename(self, settings, fake_db, filename):
        with pytest.raises(AssetNotFoundError):
            resolve_downloaded_asset("m1", filename, settings)

    def test_unknown_digest(self, settings, fake_db):
        with pytest.raises(AssetNotFoundError):
            resolve_downloaded_asset("m1", "e" * 64 + ".png", settings)

    def test_digest_of_other_message_is_not_served(self, settings, fake_db):
        stored = write_asset_file(settings, "m1", "image/png", PNG_BYTES)
        fake_db.upsert(_downloaded("m1", stored))

        with pytest.raises(AssetNotFoundError):
            resolve_downloaded_asset("m2", f"{stored.sha256}.png", settings)

    def test_stored_path_outside_assets_root(self, settings, fake_db, tmp_path):
        outside = tmp_path / "elsewhere.png"
        outside.write_bytes(PNG_BYTES)
        digest = hashlib.sha256(PNG_BYTES).hexdigest()
        fake_db.upsert(AssetRecord(
            id="a1",
            message_id="m1",
            original_url="https://example.com/a.png",
            storage_path=str(outside),
            content_type="image/png",
            size=len(PNG_BYTES),
            sha256=digest,
            status=AssetStatus.DOWNLOADED,
        ))

        with pytest.raises(AssetNotFoundError):
            resolve_downloaded_asset("m1", f"{digest}.png", settings)

    def test_missing_file(self, settings, fake_db):
        stored = write_asset_file(settings, "m1", "image/png", PNG_BYTES)
        fake_db.upsert(_downloaded("m1", stored))
        (assets_root(settings) / "m1" / f"{stored.sha256}.png").unlink()

        with pytest.raises(AssetNotFoundError):
            resolve_downloaded_asset("m1", f"{stored.sha256}.png", settings)


class TestAssetRecordInvariant:
    """DOWNLOADED records carry file fields, others never do."""

    def test_downloaded_requires_file_fields(self):
        with pytest.raises(ValueError):
            AssetRecord(id="a", message_id="m", original_url="https://e.com/a", status=AssetStatus.DOWNLOADED)

    def test_skipped_must_not_carry_file_fields(self):
        with pytest.raises(ValueError):
            AssetRecord(
                id="a",
                message_id="m",
                original_url="https://e.com/a",
                status=AssetStatus.SKIPPED,
                sha256="f" * 64,
            )

    def test_row_serializes_status_value(self):
        record = AssetRecord(
            id="a",
            message_id="m",
            original_url="https://e.com/a",
            status=AssetStatus.SKIPPED,
            error="content-type is not image",
            security_blocked=False,
        )
        assert record.to_row()["status"] == "SKIPPED"
