from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum


class FitMode(str, Enum):
    COVER = "cover"  # fill the box, crop overflow
    CONTAIN = "contain"  # fit inside the box, keep aspect
    STRETCH = "stretch"  # exact box, aspect ignored


_FORMATS = {
    "jpeg": ("JPEG", "image/jpeg", "jpg"),
    "png": ("PNG", "image/png", "png"),
    "webp": ("WEBP", "image/webp", "webp"),
}

OUTPUT_FORMATS = tuple(_FORMATS)


@dataclass(frozen=True)
class PresetSpec:
    name: str
    width: int
    height: int
    fit: FitMode = FitMode.COVER
    format: str = "jpeg"
    quality: int = 85
    holder: str | None = None  # placeholder used when the owner has no image

    @property
    def pil_format(self) -> str:
        return _FORMATS[self.format][0]

    @property
    def mime_type(self) -> str:
        return _FORMATS[self.format][1]

    @property
    def extension(self) -> str:
        return _FORMATS[self.format][2]

    @property
    def fingerprint(self) -> str:
        """Digest of every setting that affects the rendered bytes."""
        settings = f"{self.width}x{self.height}|{self.fit.value}|{self.format}|{self.quality}"
        return hashlib.sha256(settings.encode("ascii")).hexdigest()[:16]
