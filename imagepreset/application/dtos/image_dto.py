from __future__ import annotations

from datetime import datetime

from pydantic import BaseModel, Field


class ImageMetadata(BaseModel):
    """Metadata of a stored original image."""
    id: str = Field(..., description="Unique identifier of the image", examples=["3f2a9c0d6b7e4f1aa1b2c3d4e5f60718"])
    path: str = Field(..., description="Storage key of the original", examples=["originals/3f2a9c0d.png"])
    width: int = Field(..., description="Width of the original in pixels", examples=[800], gt=0)
    height: int = Field(..., description="Height of the original in pixels", examples=[600], gt=0)
    mime_type: str = Field(..., description="MIME type detected from the content", examples=["image/png"])
    file_size: int = Field(..., description="Size of the original in bytes", ge=0)
    checksum: str = Field(..., description="SHA-256 of the original bytes")
    created_at: datetime = Field(..., description="When the original was stored")
    original_filename: str | None = Field(None, description="Filename declared at upload", examples=["photo.png"])
    name: str | None = Field(None, description="Display name given at upload")
    url: str | None = Field(None, description="URL of the original")


class UploadImageResponse(BaseModel):
    """Response model for successful image upload."""
    image: ImageMetadata = Field(..., description="Metadata of the uploaded image")


class DeleteImageResponse(BaseModel):
    """Response model for image deletion."""
    ok: bool = Field(True, description="Indicates whether the deletion was successful")


class PresetOptionsResponse(BaseModel):
    """Attributes for rendering a preset of an image."""
    src: str = Field(..., description="Derivative or placeholder URL", examples=["/images/3f2a9c0d/presets/thumb"])
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
