from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class ImageRecord:
    id: str
    path: str  # storage key originals/[{target}/]{id}.{ext}
    width: int
    height: int
    mime_type: str  # sniffed from content, never the declared type
    file_size: int  # bytes
    checksum: str  # sha256 hex of the original bytes
    created_at: datetime
    original_filename: str | None = None
    name: str | None = None

    @property
    def content_type(self) -> str:
        return self.mime_type


@dataclass(frozen=True)
class PendingDeletion:
    """Token for an image that becomes obsolete once its owner commits a replacement."""

    identity: str | None
