from __future__ import annotations

import os
import threading
from dataclasses import asdict
from datetime import datetime

from supabase import Client

from imagepreset.domain.entities.image import ImageRecord
from imagepreset.domain.errors import StorageIOError
from imagepreset.infrastructure.database.postgres_client import get_postgres_client, is_transient_error


class ImageRepository:
    """Identity -> ImageRecord metadata store (PostgreSQL, Supabase or in-memory)."""

    def __init__(self, client: Client | None) -> None:
        self.client = client
        self.disabled = os.getenv("SUPABASE_DISABLED", "0") == "1"
        self.use_local_db = os.getenv("USE_LOCAL_DB", "0") == "1"
        self.pg_client = get_postgres_client() if self.use_local_db else None
        # in-memory fallback
        self._mem: dict[str, ImageRecord] = {}
        self._mem_lock = threading.Lock()

    @property
    def in_memory(self) -> bool:
        return not (self.use_local_db and self.pg_client) and (self.disabled or self.client is None)

    def _row_to_entity(self, row: dict) -> ImageRecord:
        # PostgreSQL returns datetime objects, Supabase returns ISO strings
        created_at = row["created_at"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)

        return ImageRecord(
            id=row["id"],
            path=row.get("storage_path", row.get("path", "")),
            width=row["width"],
            height=row["height"],
            mime_type=row["mime_type"],
            file_size=row["file_size"],
            checksum=row["checksum"],
            created_at=created_at,
            original_filename=row.get("original_filename"),
            name=row.get("name"),
        )

    def create(self, record: ImageRecord) -> ImageRecord:
        # PostgreSQL mode
        if self.use_local_db and self.pg_client:
            query = """
                INSERT INTO image_records (
                    id, storage_path, width, height, mime_type, file_size,
                    checksum, original_filename, name, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                RETURNING *
            """
            try:
                row = self.pg_client.execute_insert(
                    query,
                    (
                        record.id, record.path, record.width, record.height, record.mime_type,
                        record.file_size, record.checksum, record.original_filename, record.name,
                        record.created_at,
                    ),
                )
            except Exception as exc:
                raise StorageIOError(
                    f"PostgreSQL insert image record failed: {exc}", transient=is_transient_error(exc)
                ) from exc
            return self._row_to_entity(row)

        # In-memory mode
        if self.in_memory:
            with self._mem_lock:
                if record.id in self._mem:
                    raise StorageIOError(f"Image record {record.id!r} already exists")
                self._mem[record.id] = record
            return record

        # Supabase mode
        try:  # pragma: no cover - network
            data = asdict(record)
            data["created_at"] = record.created_at.isoformat()
            data["storage_path"] = data.pop("path")
            res = self.client.table("image_records").insert(data).execute()  # type: ignore[union-attr]
            return self._row_to_entity(res.data[0])
        except Exception as exc:  # pragma: no cover - network
            raise StorageIOError(f"DB insert image record failed: {exc}") from exc

    def get(self, image_id: str) -> ImageRecord | None:
        # PostgreSQL mode
        if self.use_local_db and self.pg_client:
            try:
                row = self.pg_client.execute_one("SELECT * FROM image_records WHERE id = %s", (image_id,))
            except Exception as exc:
                raise StorageIOError(
                    f"PostgreSQL get image record failed: {exc}", transient=is_transient_error(exc)
                ) from exc
            return self._row_to_entity(row) if row else None

        # In-memory mode
        if self.in_memory:
            return self._mem.get(image_id)

        # Supabase mode
        try:  # pragma: no cover - network
            res = (
                self.client.table("image_records")  # type: ignore[union-attr]
                .select("*")
                .eq("id", image_id)
                .limit(1)
                .execute()
            )
        except Exception as exc:  # pragma: no cover - network
            raise StorageIOError(f"DB get image record failed: {exc}") from exc
        rows = res.data or []  # pragma: no cover
        return self._row_to_entity(rows[0]) if rows else None  # pragma: no cover

    def list_ids(self) -> set[str]:
        if self.use_local_db and self.pg_client:
            try:
                rows = self.pg_client.execute_many("SELECT id FROM image_records")
            except Exception as exc:
                raise StorageIOError(
                    f"PostgreSQL list image records failed: {exc}", transient=is_transient_error(exc)
                ) from exc
            return {row["id"] for row in rows}

        if self.in_memory:
            with self._mem_lock:
                return set(self._mem)

        try:  # pragma: no cover - network
            res = self.client.table("image_records").select("id").execute()  # type: ignore[union-attr]
        except Exception as exc:  # pragma: no cover - network
            raise StorageIOError(f"DB list image records failed: {exc}") from exc
        return {row["id"] for row in res.data or []}  # pragma: no cover

    def delete(self, image_id: str) -> bool:
        # PostgreSQL mode
        if self.use_local_db and self.pg_client:
            try:
                affected = self.pg_client.execute_update("DELETE FROM image_records WHERE id = %s", (image_id,))
            except Exception as exc:
                raise StorageIOError(
                    f"PostgreSQL delete image record failed: {exc}", transient=is_transient_error(exc)
                ) from exc
            return affected > 0

        # In-memory mode
        if self.in_memory:
            with self._mem_lock:
                return self._mem.pop(image_id, None) is not None

        # Supabase mode
        try:  # pragma: no cover - network
            res = self.client.table("image_records").delete().eq("id", image_id).execute()  # type: ignore[union-attr]
        except Exception as exc:  # pragma: no cover - network
            raise StorageIOError(f"DB delete image record failed: {exc}") from exc
        return bool(res.data)  # pragma: no cover
