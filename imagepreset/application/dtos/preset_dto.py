from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


class PresetDefinition(BaseModel):
    """One named preset as written in the presets config file."""

    model_config = ConfigDict(extra="forbid")

    width: int = Field(..., description="Target width in pixels", examples=[100], gt=0)
    height: int = Field(..., description="Target height in pixels", examples=[100], gt=0)
    fit: Literal["cover", "contain", "stretch"] = Field("cover", description="How the source is fitted into the box")
    format: Literal["jpeg", "png", "webp"] = Field("jpeg", description="Output format")
    quality: int = Field(85, description="Encoder quality for lossy formats", ge=1, le=100)
    holder: str | None = Field(None, description="Placeholder name used when no image is set")


class PresetConfig(BaseModel):
    """Whole presets config: presets by name plus placeholder URLs by holder name."""

    model_config = ConfigDict(extra="forbid")

    presets: dict[str, PresetDefinition] = Field(default_factory=dict)
    placeholders: dict[str, str] = Field(default_factory=dict)


class PresetInfo(BaseModel):
    """Preset as exposed over the API."""

    name: str = Field(..., examples=["thumb"])
    width: int = Field(..., gt=0)
    height: int = Field(..., gt=0)
    fit: str = Field(..., examples=["cover"])
    format: str = Field(..., examples=["jpeg"])
    quality: int
    mime_type: str = Field(..., examples=["image/jpeg"])


class ListPresetsResponse(BaseModel):
    presets: list[PresetInfo]
