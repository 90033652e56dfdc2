from __future__ import annotations

from fastapi import APIRouter, Depends

from imagepreset.application.dtos.preset_dto import ListPresetsResponse, PresetInfo
from imagepreset.application.services.image_manager import ImageManager
from imagepreset.infrastructure.api.dependencies import get_image_manager

router = APIRouter(prefix="/presets", tags=["Presets"])


@router.get(
    "",
    response_model=ListPresetsResponse,
    summary="List Presets",
    description="All configured presets with their dimensions, fit mode and output format.",
)
def list_presets(manager: ImageManager = Depends(get_image_manager)):
    return ListPresetsResponse(
        presets=[
            PresetInfo(
                name=p.name,
                width=p.width,
                height=p.height,
                fit=p.fit.value,
                format=p.format,
                quality=p.quality,
                mime_type=p.mime_type,
            )
            for p in manager.presets
        ]
    )
