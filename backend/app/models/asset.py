"""
Pydantic models for frozen remote assets.

Models:
  AssetStatus                : outcome of one freeze attempt for one URL
  AssetRecord                : row of the assets table
  AssetFreezeFailureSummary  : failures grouped by host and reason
  AssetFreezeResponse        : response body for POST /{id}/freeze-assets
"""

from enum import Enum
from typing import List, Optional
from pydantic import BaseModel, model_validator


class AssetStatus(str, Enum):
    DOWNLOADED = "DOWNLOADED"
    FAILED = "FAILED"
    SKIPPED = "SKIPPED"


class AssetRecord(BaseModel):
    """
    One (message_id, original_url) outcome.

    A DOWNLOADED record always carries the file location and its digest;
    FAILED and SKIPPED records never do, they carry the reason in ``error``.
    """
    model_config = {"extra": "ignore"}

    id: str
    message_id: str
    original_url: str
    storage_path: Optional[str] = None
    content_type: Optional[str] = None
    size: Optional[int] = None
    sha256: Optional[str] = None
    status: AssetStatus
    downloaded_at: Optional[str] = None
    error: Optional[str] = None
    security_blocked: bool = False

    @model_validator(mode="after")
    def _check_status_fields(self) -> "AssetRecord":
        file_fields = (self.storage_path, self.sha256, self.size)
        if self.status == AssetStatus.DOWNLOADED:
            if any(value is None for value in file_fields):
                raise ValueError("DOWNLOADED asset requires storage_path, sha256 and size")
        elif any(value is not None for value in file_fields):
            raise ValueError(f"{self.status.value} asset must not carry file fields")
        return self

    def to_row(self) -> dict:
        """Plain dict for supabase-py (enums serialized to their values)."""
        return self.model_dump(mode="json")


class AssetFreezeFailureSummary(BaseModel):
    host: str
    reason: str
    count: int


class AssetFreezeResponse(BaseModel):
    total_found: int = 0
    downloaded: int = 0
    failed: int = 0
    skipped: int = 0
    failures: List[AssetFreezeFailureSummary] = []
