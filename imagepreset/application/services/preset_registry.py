"""Named preset registry.

Presets are validated once, when the registry is built, and the registry is
read-only afterwards. A bad preset therefore fails the process at startup
instead of at first render.
"""
from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any

from pydantic import ValidationError

from imagepreset.application.dtos.preset_dto import PresetConfig
from imagepreset.domain.entities.preset import FitMode, PresetSpec
from imagepreset.domain.errors import PresetConfigError, UnknownPlaceholderError, UnknownPresetError
from imagepreset.infrastructure.storage.keys import is_safe_segment

_log = logging.getLogger("imagepreset.presets")

DEFAULT_HOLDER = "default"

DEFAULT_CONFIG: dict[str, Any] = {
    "presets": {
        "thumb": {"width": 100, "height": 100, "fit": "cover", "format": "jpeg", "quality": 85},
        "medium": {"width": 400, "height": 300, "fit": "contain", "format": "jpeg", "quality": 85},
        "large": {"width": 1200, "height": 900, "fit": "contain", "format": "jpeg", "quality": 90},
    },
    "placeholders": {DEFAULT_HOLDER: "/static/placeholders/default.png"},
}


class PresetRegistry:
    def __init__(
        self,
        presets: Mapping[str, Mapping[str, Any]],
        placeholders: Mapping[str, str] | None = None,
    ) -> None:
        try:
            config = PresetConfig.model_validate(
                {"presets": dict(presets), "placeholders": dict(placeholders or {})}
            )
        except ValidationError as exc:
            raise PresetConfigError(f"Invalid preset configuration: {exc}") from exc

        specs: dict[str, PresetSpec] = {}
        seen: dict[str, str] = {}
        for name, definition in config.presets.items():
            # the name is the derivative key segment and must map to it one-to-one
            if not is_safe_segment(name):
                raise PresetConfigError(
                    f"Invalid preset name {name!r}: use ASCII letters, digits, '.', '_' or '-', "
                    "starting and ending with a letter or digit"
                )
            if name.lower() in seen:
                raise PresetConfigError(f"Preset names {seen[name.lower()]!r} and {name!r} differ only in case")
            seen[name.lower()] = name
            specs[name] = PresetSpec(
                name=name,
                width=definition.width,
                height=definition.height,
                fit=FitMode(definition.fit),
                format=definition.format,
                quality=definition.quality,
                holder=definition.holder,
            )
        for spec in specs.values():
            if spec.holder is not None and spec.holder not in config.placeholders:
                raise PresetConfigError(f"Preset {spec.name!r} refers to unknown placeholder {spec.holder!r}")

        self._presets: Mapping[str, PresetSpec] = MappingProxyType(specs)
        self._placeholders: Mapping[str, str] = MappingProxyType(dict(config.placeholders))
        _log.info("loaded %d presets: %s", len(specs), ", ".join(sorted(specs)))

    @classmethod
    def from_file(cls, path: str | Path) -> PresetRegistry:
        """Load a JSON file shaped like `DEFAULT_CONFIG`."""
        try:
            raw = json.loads(Path(path).read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            raise PresetConfigError(f"Cannot read presets file {str(path)!r}: {exc}") from exc
        if not isinstance(raw, dict):
            raise PresetConfigError("Presets file must contain a JSON object")
        return cls(raw.get("presets", {}), raw.get("placeholders"))

    @classmethod
    def from_env(cls) -> PresetRegistry:
        path = os.getenv("IMAGE_PRESETS_FILE")
        if path:
            return cls.from_file(path)
        return cls(DEFAULT_CONFIG["presets"], DEFAULT_CONFIG["placeholders"])

    def get(self, name: str) -> PresetSpec:
        try:
            return self._presets[name]
        except KeyError:
            raise UnknownPresetError(name) from None

    def names(self) -> list[str]:
        return sorted(self._presets)

    def placeholder_url(self, holder: str | None = None) -> str:
        """URL for a named placeholder, falling back to the default one."""
        if holder and holder in self._placeholders:
            return self._placeholders[holder]
        if DEFAULT_HOLDER in self._placeholders:
            return self._placeholders[DEFAULT_HOLDER]
        raise UnknownPlaceholderError(holder)

    def __contains__(self, name: object) -> bool:
        return name in self._presets

    def __iter__(self) -> Iterator[PresetSpec]:
        return iter(self._presets[name] for name in self.names())

    def __len__(self) -> int:
        return len(self._presets)
