from __future__ import annotations

import hashlib
import logging
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from io import BytesIO

from PIL import Image, UnidentifiedImageError

from imagepreset.domain.entities.image import ImageRecord, PendingDeletion
from imagepreset.domain.errors import InvalidImageError, NotFoundError
from imagepreset.infrastructure.database.repositories.image_repository import ImageRepository
from imagepreset.infrastructure.storage.keys import make_original_key
from imagepreset.infrastructure.storage.supabase_storage import SupabaseStorage

_log = logging.getLogger("imagepreset.records")

# Pillow format name -> file extension for accepted uploads
ACCEPTED_FORMATS = {
    "JPEG": "jpg",
    "PNG": "png",
    "GIF": "gif",
    "WEBP": "webp",
    "BMP": "bmp",
    "TIFF": "tiff",
}


@dataclass(frozen=True)
class SniffedImage:
    format: str
    mime_type: str
    extension: str
    width: int
    height: int


def sniff_image(data: bytes) -> SniffedImage:
    """Identify image bytes by content. Raises InvalidImageError."""
    if not data:
        raise InvalidImageError("Empty upload")
    try:
        with Image.open(BytesIO(data)) as probe:
            probe.verify()
        # verify() leaves the image unusable, so reopen for the header fields
        with Image.open(BytesIO(data)) as img:
            fmt = img.format or ""
            width, height = img.size
    except (UnidentifiedImageError, OSError, ValueError, SyntaxError, Image.DecompressionBombError) as exc:
        raise InvalidImageError(f"Invalid image file: {exc}") from exc
    if fmt not in ACCEPTED_FORMATS:
        raise InvalidImageError(f"Unsupported image format: {fmt or 'unknown'}")
    if width <= 0 or height <= 0:
        raise InvalidImageError("Image has no pixels")
    return SniffedImage(
        format=fmt,
        mime_type=Image.MIME.get(fmt, f"image/{fmt.lower()}"),
        extension=ACCEPTED_FORMATS[fmt],
        width=width,
        height=height,
    )


def _new_identity() -> str:
    return uuid.uuid4().hex


@dataclass
class ImageRecordManager:
    """Owns the identity -> original image mapping.

    Deletion order: derivatives (through the purge hooks), then the original
    blob, then the metadata row. An interrupted delete leaves a record that
    still points at whatever is left in storage.
    """

    storage: SupabaseStorage
    image_repo: ImageRepository
    id_factory: Callable[[], str] = _new_identity
    _purge_hooks: list[Callable[[str], object]] = field(default_factory=list, init=False, repr=False)

    def add_purge_hook(self, hook: Callable[[str], object]) -> None:
        """Register a callable run with the identity before an original is deleted."""
        self._purge_hooks.append(hook)

    def save_original(
        self,
        data: bytes,
        declared_name: str | None = None,
        target_path: str | None = None,
        *,
        name: str | None = None,
    ) -> ImageRecord:
        sniffed = sniff_image(data)
        identity = self.id_factory()
        path = make_original_key(identity=identity, ext=sniffed.extension, target_path=target_path)
        stored = self.storage.upload_bytes(path, data, sniffed.mime_type, upsert=False)
        record = ImageRecord(
            id=identity,
            path=stored.path,
            width=sniffed.width,
            height=sniffed.height,
            mime_type=sniffed.mime_type,
            file_size=len(data),
            checksum=hashlib.sha256(data).hexdigest(),
            created_at=datetime.now(UTC),
            original_filename=declared_name,
            name=name,
        )
        try:
            record = self.image_repo.create(record)
        except Exception:
            # no metadata means nobody can reach the blob, remove it
            self.storage.delete(stored.path)
            raise
        _log.info(
            "saved original id=%s path=%s %dx%d %s", record.id, record.path, record.width, record.height, record.mime_type
        )
        return record

    def load_record(self, identity: str | None) -> ImageRecord:
        if not identity:
            raise NotFoundError(None)
        record = self.image_repo.get(identity)
        if record is None:
            _log.warning("dangling image reference: no record for id=%s", identity)
            raise NotFoundError(identity)
        return record

    def find_record(self, identity: str | None) -> ImageRecord | None:
        """Like load_record, but "no image set" is None instead of an error."""
        if not identity:
            return None
        return self.load_record(identity)

    def delete_record(self, identity: str | None) -> None:
        record = self.load_record(identity)
        for hook in self._purge_hooks:
            hook(record.id)
        # DeletionError propagates with the metadata still in place
        self.storage.delete(record.path)
        self.image_repo.delete(record.id)
        _log.info("deleted image id=%s path=%s", record.id, record.path)

    # --------- replacement protocol ---------
    def begin_replace(self, old_identity: str | None) -> PendingDeletion:
        """Start replacing an image; nothing is deleted until commit_replace."""
        return PendingDeletion(identity=old_identity or None)

    def commit_replace(self, token: PendingDeletion) -> None:
        """Delete the replaced image once the owner has durably stored the new identity."""
        if token.identity is None:
            return
        if self.image_repo.get(token.identity) is None:
            _log.warning("replaced image id=%s was already gone", token.identity)
            return
        self.delete_record(token.identity)

    def abort_replace(self, token: PendingDeletion, new_identity: str | None) -> None:
        """Undo a replacement whose owner save failed: drop the new image, keep the old one."""
        if new_identity and new_identity != token.identity and self.image_repo.get(new_identity) is not None:
            self.delete_record(new_identity)
