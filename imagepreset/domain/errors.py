from __future__ import annotations


class ImagePresetError(Exception):
    """Base class for all image/preset errors."""


class InvalidImageError(ImagePresetError):
    """Uploaded bytes are not a decodable, supported image."""


class NotFoundError(ImagePresetError):
    """A referenced identity has no stored record.

    `identity` is None when no image was set at all, which callers treat as a
    normal "no image" state rather than a failure.
    """

    def __init__(self, identity: str | None, message: str | None = None) -> None:
        self.identity = identity
        if message is None:
            message = "No image set" if not identity else f"Image record {identity!r} not found"
        super().__init__(message)

    @property
    def is_absent(self) -> bool:
        return not self.identity


class UnknownPresetError(ImagePresetError):
    def __init__(self, name: str) -> None:
        self.name = name
        super().__init__(f"Unknown preset {name!r}")


class UnknownPlaceholderError(ImagePresetError):
    def __init__(self, holder: str | None) -> None:
        self.holder = holder
        super().__init__(f"Unknown placeholder {holder!r}")


class PresetConfigError(ImagePresetError):
    """Preset configuration failed validation at load time."""


class UnsupportedFormatError(ImagePresetError):
    """Source bytes are in a format the codec cannot read."""


class TransformError(ImagePresetError):
    """Decoding, transforming or encoding failed."""


class StorageIOError(ImagePresetError):
    """Generic storage backend failure.

    `transient` is set by the backend when retrying may succeed (timeouts,
    connection resets, 5xx/429 responses).
    """

    def __init__(self, message: str, *, transient: bool = False) -> None:
        self.transient = transient
        super().__init__(message)


class DeletionError(StorageIOError):
    def __init__(self, path: str, message: str | None = None, *, transient: bool = False) -> None:
        self.path = path
        super().__init__(message or f"Failed to delete {path!r}", transient=transient)
