from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class Derivative:
    image_id: str
    preset: str
    path: str  # storage key derivatives/{image_id}/{preset}.{ext}
    width: int
    height: int
    mime_type: str
    file_size: int
    created_at: datetime
    fingerprint: str = ""  # PresetSpec.fingerprint of the settings it was rendered with

    @property
    def key(self) -> tuple[str, str]:
        return (self.image_id, self.preset)


@dataclass(frozen=True)
class DerivativeResult:
    """What a renderer gets back for (identity, preset).

    `path` is None for placeholders. `fallback` marks a reference to the
    original image served because a concurrent generation did not finish in
    time.
    """

    url: str
    path: str | None
    width: int | None
    height: int | None
    mime_type: str | None
    placeholder: bool = False
    holder: str | None = None
    fallback: bool = False
