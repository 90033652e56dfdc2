from __future__ import annotations

import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path

from supabase import Client

from imagepreset.domain.errors import DeletionError, StorageIOError

_log = logging.getLogger("imagepreset.storage")

_TRANSIENT_STATUS = {408, 425, 429, 500, 502, 503, 504}


@dataclass
class StoredBlob:
    path: str
    content_type: str
    size: int


def _is_transient(exc: BaseException) -> bool:
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return True
    status = getattr(exc, "status", None) or getattr(exc, "status_code", None)
    try:
        return int(status) in _TRANSIENT_STATUS
    except (TypeError, ValueError):
        return False


class SupabaseStorage:
    """Blob storage on Supabase Storage with a local-disk fallback.

    Local writes go to a temp file in the target directory and are published
    with os.replace, so readers never see a partially written blob. Supabase
    object replacement (upsert) is atomic on the server side.
    """

    def __init__(self, client: Client | None, *, local_dir: str | Path | None = None) -> None:
        self.client = client
        self.bucket = os.getenv("SUPABASE_STORAGE_BUCKET", "images")
        self.disabled = os.getenv("SUPABASE_DISABLED", "0") == "1"
        self.local_dir = Path(local_dir or os.getenv("SUPABASE_STORAGE_LOCAL_DIR", ".local_storage"))
        if self.is_local:
            self.local_dir.mkdir(parents=True, exist_ok=True)

    @property
    def is_local(self) -> bool:
        return self.disabled or self.client is None

    def _local_path(self, path: str) -> Path:
        root = self.local_dir.resolve()
        full_path = (self.local_dir / path).resolve()
        try:
            full_path.relative_to(root)
        except ValueError:
            raise StorageIOError(f"Storage path {path!r} resolves outside the storage root") from None
        return full_path

    def upload_bytes(self, path: str, data: bytes, content_type: str, *, upsert: bool = False) -> StoredBlob:
        if self.is_local:
            full_path = self._local_path(path)
            if not upsert and full_path.exists():
                raise StorageIOError(f"Storage object {path!r} already exists")
            try:
                full_path.parent.mkdir(parents=True, exist_ok=True)
                fd, tmp_name = tempfile.mkstemp(dir=full_path.parent, prefix=".tmp-", suffix=full_path.suffix)
                try:
                    with os.fdopen(fd, "wb") as fh:
                        fh.write(data)
                    os.replace(tmp_name, full_path)
                except BaseException:
                    Path(tmp_name).unlink(missing_ok=True)
                    raise
            except OSError as exc:
                raise StorageIOError(f"Storage upload failed: {exc}", transient=_is_transient(exc)) from exc
            return StoredBlob(path=path, content_type=content_type, size=len(data))
        try:  # pragma: no cover - network
            self.client.storage.from_(self.bucket).upload(  # type: ignore[union-attr]
                path=path,
                file=data,
                file_options={"content-type": content_type, "upsert": "true" if upsert else "false"},
            )
        except Exception as exc:  # pragma: no cover - network
            raise StorageIOError(f"Storage upload failed: {exc}", transient=_is_transient(exc)) from exc
        return StoredBlob(path=path, content_type=content_type, size=len(data))

    def download_bytes(self, path: str) -> bytes:
        if self.is_local:
            try:
                return self._local_path(path).read_bytes()
            except FileNotFoundError as exc:
                raise StorageIOError(f"Storage object {path!r} not found") from exc
            except OSError as exc:
                raise StorageIOError(f"Storage download failed: {exc}", transient=_is_transient(exc)) from exc
        try:  # pragma: no cover - network
            return self.client.storage.from_(self.bucket).download(path)  # type: ignore[union-attr]
        except Exception as exc:  # pragma: no cover - network
            raise StorageIOError(f"Storage download failed: {exc}", transient=_is_transient(exc)) from exc

    def exists(self, path: str) -> bool:
        if self.is_local:
            return self._local_path(path).is_file()
        try:  # pragma: no cover - network
            return bool(self.client.storage.from_(self.bucket).exists(path))  # type: ignore[union-attr]
        except Exception as exc:  # pragma: no cover - network
            raise StorageIOError(f"Storage lookup failed: {exc}", transient=_is_transient(exc)) from exc

    def list_prefix(self, prefix: str) -> list[str]:
        """Keys of the objects directly under `prefix` (a 'directory' ending in /)."""
        prefix = prefix.rstrip("/")
        if self.is_local:
            folder = self._local_path(prefix)
            if not folder.is_dir():
                return []
            return sorted(
                f"{prefix}/{p.name}" for p in folder.iterdir() if p.is_file() and not p.name.startswith(".tmp-")
            )
        try:  # pragma: no cover - network
            items = self.client.storage.from_(self.bucket).list(prefix)  # type: ignore[union-attr]
        except Exception as exc:  # pragma: no cover - network
            raise StorageIOError(f"Storage list failed: {exc}", transient=_is_transient(exc)) from exc
        return sorted(f"{prefix}/{item['name']}" for item in items or [] if item.get("id"))  # pragma: no cover

    def delete(self, path: str) -> None:
        """Remove one object; a missing object counts as removed."""
        if self.is_local:
            full_path = self._local_path(path)
            try:
                full_path.unlink(missing_ok=True)
            except OSError as exc:
                raise DeletionError(path, f"Storage delete failed: {exc}", transient=_is_transient(exc)) from exc
            _log.debug("deleted local object %s", path)
            return
        try:  # pragma: no cover - network
            self.client.storage.from_(self.bucket).remove([path])  # type: ignore[union-attr]
        except Exception as exc:  # pragma: no cover - network
            raise DeletionError(path, f"Storage delete failed: {exc}", transient=_is_transient(exc)) from exc

    def get_public_url(self, path: str) -> str:
        if self.is_local:
            return f"/local-storage/{path}"
        try:  # pragma: no cover - network
            return self.client.storage.from_(self.bucket).get_public_url(path)  # type: ignore[union-attr]
        except Exception as exc:  # pragma: no cover - network
            raise StorageIOError(f"Storage URL lookup failed: {exc}", transient=_is_transient(exc)) from exc
