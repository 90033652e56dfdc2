"""Glue between an owning record and its image.

An owner is any object that can report and store one image identity. The
binding drives the owner's lifecycle explicitly:

    token = binding.before_save(owner, upload)   # new original stored, identity set
    try:
        owner_repo.save(owner)
    except Exception:
        binding.save_failed(owner, token)        # new image removed, old identity back
        raise
    binding.after_save(token)                    # replaced image purged
"""
from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol

from imagepreset.application.services.image_manager import ImageManager
from imagepreset.domain.entities.image import ImageRecord, PendingDeletion


class ImageOwner(Protocol):
    def get_image_identity(self) -> str | None: ...

    def set_image_identity(self, identity: str | None) -> None: ...


@dataclass(frozen=True)
class Upload:
    data: bytes
    filename: str | None = None
    content_type: str | None = None  # declared by the client, informational only


@dataclass(frozen=True)
class PendingSave:
    replaced: PendingDeletion
    new_identity: str


@dataclass
class ImageBinding:
    manager: ImageManager
    name: str | None = None  # display name stored with new images
    path: str | None = None  # storage sub-path for new originals
    auto_save: bool = True
    auto_delete: bool = True
    auto_delete_original: bool = True

    def before_save(self, owner: ImageOwner, upload: Upload | None) -> PendingSave | None:
        """Store an uploaded image and point the owner at it. Returns None when nothing was uploaded."""
        if not self.auto_save or upload is None or not upload.data:
            return None
        replaced = self.manager.records.begin_replace(owner.get_image_identity())
        record = self.manager.save_original(upload.data, upload.filename, self.path, name=self.name)
        owner.set_image_identity(record.id)
        return PendingSave(replaced=replaced, new_identity=record.id)

    def after_save(self, pending: PendingSave | None) -> None:
        """Call once the owner's new identity is durably stored."""
        if pending is None or not self.auto_delete_original:
            return
        self.manager.records.commit_replace(pending.replaced)

    def save_failed(self, owner: ImageOwner, pending: PendingSave | None) -> None:
        if pending is None:
            return
        self.manager.records.abort_replace(pending.replaced, pending.new_identity)
        owner.set_image_identity(pending.replaced.identity)

    def before_delete(self, owner: ImageOwner) -> None:
        if self.auto_delete:
            self.delete_image(owner)

    def delete_image(self, owner: ImageOwner) -> None:
        """Delete the owner's image and clear its identity; no-op when none is set."""
        identity = owner.get_image_identity()
        if not identity:
            return
        self.manager.delete_record(identity)
        owner.set_image_identity(None)

    def load_image(self, owner: ImageOwner) -> ImageRecord | None:
        return self.manager.records.find_record(owner.get_image_identity())

    def create_url(self, owner: ImageOwner, preset_name: str, holder: str | None = None) -> str:
        return self.manager.create_url(owner.get_image_identity(), preset_name, holder)

    def preset_options(self, owner: ImageOwner, preset_name: str, holder: str | None = None) -> dict[str, Any]:
        return self.manager.create_preset_options(owner.get_image_identity(), preset_name, holder)
