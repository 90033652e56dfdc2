from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Any

from imagepreset.application.services.derivative_cache import DerivativeCache
from imagepreset.application.services.image_record_manager import ImageRecordManager
from imagepreset.application.services.preset_registry import PresetRegistry
from imagepreset.domain.entities.derivative import DerivativeResult
from imagepreset.domain.entities.image import ImageRecord
from imagepreset.domain.services.transform_service import TransformService
from imagepreset.infrastructure.database.repositories.derivative_repository import DerivativeRepository
from imagepreset.infrastructure.database.repositories.image_repository import ImageRepository
from imagepreset.infrastructure.database.supabase_client import get_supabase_client
from imagepreset.infrastructure.storage.supabase_storage import SupabaseStorage


@dataclass
class ImageManager:
    """Entry point used by owners, templates and the HTTP layer."""

    records: ImageRecordManager
    derivatives: DerivativeCache
    presets: PresetRegistry

    def save_original(
        self, data: bytes, declared_name: str | None = None, target_path: str | None = None, *, name: str | None = None
    ) -> ImageRecord:
        return self.records.save_original(data, declared_name, target_path, name=name)

    def load_record(self, identity: str | None) -> ImageRecord:
        return self.records.load_record(identity)

    def delete_record(self, identity: str | None) -> None:
        self.records.delete_record(identity)

    def get_or_generate(self, identity: str | None, preset_name: str, holder: str | None = None) -> DerivativeResult:
        return self.derivatives.get_or_generate(identity, preset_name, holder)

    def create_url(self, identity: str | None, preset_name: str, holder: str | None = None) -> str:
        return self.derivatives.create_url(identity, preset_name, holder)

    def create_preset_options(self, identity: str | None, preset_name: str, holder: str | None = None) -> dict[str, Any]:
        """Attributes for an <img> tag: src plus the rendered width/height when known.

        Nothing is generated here. Width and height come from an existing
        derivative, or are predicted from the original's size and the preset's
        fit, or are the preset box for a placeholder. A dangling identity follows
        the derivative cache's missing policy, like get_or_generate.
        """
        preset = self.presets.get(preset_name)
        record = self.derivatives.resolve_record(identity)
        if record is None:
            return {
                "src": self.presets.placeholder_url(holder or preset.holder),
                "width": preset.width,
                "height": preset.height,
            }
        existing = self.derivatives.derivative_repo.get(record.id, preset.name)
        if existing is not None and existing.fingerprint == preset.fingerprint:
            width, height = existing.width, existing.height
        else:
            width, height = TransformService.fit_size(record.width, record.height, preset.width, preset.height, preset.fit)
            width, height = min(width, preset.width), min(height, preset.height)
        return {"src": self.derivatives.create_url(record.id, preset.name), "width": width, "height": height}


def build_image_manager(
    *,
    storage: SupabaseStorage | None = None,
    presets: PresetRegistry | None = None,
    transform: TransformService | None = None,
    local_dir: str | Path | None = None,
    **cache_options: Any,
) -> ImageManager:
    """Wire the components from explicit collaborators, defaulting to the environment config."""
    client = get_supabase_client()
    storage = storage or SupabaseStorage(client, local_dir=local_dir)
    presets = presets or PresetRegistry.from_env()
    records = ImageRecordManager(storage=storage, image_repo=ImageRepository(client))
    derivatives = DerivativeCache(
        storage=storage,
        derivative_repo=DerivativeRepository(client),
        records=records,
        presets=presets,
        transform=transform or TransformService(),
        **cache_options,
    )
    return ImageManager(records=records, derivatives=derivatives, presets=presets)
