from __future__ import annotations

from fastapi import APIRouter, Depends, File, Form, Query, UploadFile, status
from fastapi.responses import RedirectResponse, Response

from imagepreset.application.dtos.image_dto import (
    DeleteImageResponse,
    ImageMetadata,
    PresetOptionsResponse,
    UploadImageResponse,
)
from imagepreset.application.services.image_manager import ImageManager
from imagepreset.domain.entities.image import ImageRecord
from imagepreset.infrastructure.api.dependencies import get_image_manager

router = APIRouter(
    prefix="/images",
    tags=["Image Management"],
    responses={
        404: {"description": "Not Found - Image or preset does not exist"},
        422: {"description": "Validation Error - Invalid request format"},
    },
)

# derivatives are immutable until their image is deleted or regenerated
DERIVATIVE_CACHE_CONTROL = "public, max-age=86400"


def _to_metadata(manager: ImageManager, record: ImageRecord) -> ImageMetadata:
    return ImageMetadata(
        id=record.id,
        path=record.path,
        width=record.width,
        height=record.height,
        mime_type=record.mime_type,
        file_size=record.file_size,
        checksum=record.checksum,
        created_at=record.created_at,
        original_filename=record.original_filename,
        name=record.name,
        url=manager.records.storage.get_public_url(record.path),
    )


@router.post(
    "/upload",
    response_model=UploadImageResponse,
    status_code=status.HTTP_201_CREATED,
    summary="Upload Image",
    description="""
    Store a new original image.

    **Supported formats**: JPEG, PNG, GIF, BMP, TIFF, WEBP

    The format is detected from the file content; the declared content type
    is ignored. The returned id is what owners keep to reference the image.
    """,
    response_description="Metadata of the stored original",
    responses={400: {"description": "Bad Request - Invalid image file or unsupported format"}},
)
def upload_image(
    file: UploadFile = File(..., description="Image file to upload"),
    name: str | None = Form(None, description="Display name stored with the image"),
    path: str | None = Form(None, description="Storage sub-path for the original"),
    manager: ImageManager = Depends(get_image_manager),
):
    data = file.file.read()
    record = manager.save_original(data, file.filename, path, name=name)
    return UploadImageResponse(image=_to_metadata(manager, record))


@router.get(
    "/{image_id}",
    response_model=ImageMetadata,
    summary="Get Image Metadata",
    response_description="Metadata of the original image",
)
def get_image(image_id: str, manager: ImageManager = Depends(get_image_manager)):
    return _to_metadata(manager, manager.load_record(image_id))


@router.get(
    "/{image_id}/original",
    summary="Download Original",
    responses={200: {"content": {"image/*": {}}, "description": "Original image bytes"}},
)
def download_original(image_id: str, manager: ImageManager = Depends(get_image_manager)):
    record = manager.load_record(image_id)
    data = manager.records.storage.download_bytes(record.path)
    return Response(content=data, media_type=record.mime_type)


@router.get(
    "/{image_id}/presets/{preset}",
    summary="Get Preset Rendering",
    description="""
    Return the image rendered with a preset, generating it on first access.

    Concurrent first requests for the same image and preset share one
    generation. A request that waits too long for it gets the original
    image instead (not cached by clients).
    """,
    responses={
        200: {"content": {"image/*": {}}, "description": "Derivative bytes"},
        307: {"description": "Redirect to the placeholder when the image is missing"},
    },
)
def get_preset(
    image_id: str,
    preset: str,
    holder: str | None = Query(None, description="Placeholder name used when the image is missing"),
    manager: ImageManager = Depends(get_image_manager),
):
    data, result = manager.derivatives.load_bytes(image_id, preset, holder)
    if data is None:
        return RedirectResponse(result.url, status_code=status.HTTP_307_TEMPORARY_REDIRECT)
    cache_control = "no-store" if result.fallback else DERIVATIVE_CACHE_CONTROL
    return Response(content=data, media_type=result.mime_type, headers={"Cache-Control": cache_control})


@router.get(
    "/{image_id}/presets/{preset}/options",
    response_model=PresetOptionsResponse,
    summary="Get Preset Render Options",
    description="URL and expected dimensions for rendering the image with a preset. Nothing is generated.",
)
def get_preset_options(
    image_id: str,
    preset: str,
    holder: str | None = Query(None),
    manager: ImageManager = Depends(get_image_manager),
):
    return PresetOptionsResponse(**manager.create_preset_options(image_id, preset, holder))


@router.delete(
    "/{image_id}",
    response_model=DeleteImageResponse,
    summary="Delete Image",
    description="""
    Permanently delete an image.

    **This operation will:**
    - Remove every preset rendering of the image
    - Remove the original file from storage
    - Delete the image metadata
    """,
    response_description="Confirmation of successful deletion",
)
def delete_image(image_id: str, manager: ImageManager = Depends(get_image_manager)):
    manager.delete_record(image_id)
    return DeleteImageResponse(ok=True)
