from __future__ import annotations

import os
import threading
from dataclasses import asdict
from datetime import datetime

from supabase import Client

from imagepreset.domain.entities.derivative import Derivative
from imagepreset.domain.errors import StorageIOError
from imagepreset.infrastructure.database.postgres_client import get_postgres_client, is_transient_error


class DerivativeRepository:
    """Derivative index keyed by (image_id, preset); at most one row per key."""

    def __init__(self, client: Client | None) -> None:
        self.client = client
        self.disabled = os.getenv("SUPABASE_DISABLED", "0") == "1"
        self.use_local_db = os.getenv("USE_LOCAL_DB", "0") == "1"
        self.pg_client = get_postgres_client() if self.use_local_db else None
        self._mem: dict[tuple[str, str], Derivative] = {}
        self._mem_lock = threading.Lock()

    @property
    def in_memory(self) -> bool:
        return not (self.use_local_db and self.pg_client) and (self.disabled or self.client is None)

    def _row_to_entity(self, row: dict) -> Derivative:
        created_at = row["created_at"]
        if isinstance(created_at, str):
            created_at = datetime.fromisoformat(created_at)
        return Derivative(
            image_id=row["image_id"],
            preset=row["preset"],
            path=row.get("storage_path", row.get("path", "")),
            width=row["width"],
            height=row["height"],
            mime_type=row["mime_type"],
            file_size=row["file_size"],
            created_at=created_at,
            fingerprint=row.get("fingerprint") or "",
        )

    def upsert(self, derivative: Derivative) -> Derivative:
        if self.use_local_db and self.pg_client:
            query = """
                INSERT INTO image_derivatives (
                    image_id, preset, storage_path, width, height, mime_type, file_size, created_at, fingerprint
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (image_id, preset) DO UPDATE SET
                    storage_path = EXCLUDED.storage_path,
                    width = EXCLUDED.width,
                    height = EXCLUDED.height,
                    mime_type = EXCLUDED.mime_type,
                    file_size = EXCLUDED.file_size,
                    created_at = EXCLUDED.created_at,
                    fingerprint = EXCLUDED.fingerprint
                RETURNING *
            """
            d = derivative
            try:
                row = self.pg_client.execute_insert(
                    query,
                    (
                        d.image_id, d.preset, d.path, d.width, d.height, d.mime_type, d.file_size,
                        d.created_at, d.fingerprint,
                    ),
                )
            except Exception as exc:
                raise StorageIOError(
                    f"PostgreSQL upsert derivative failed: {exc}", transient=is_transient_error(exc)
                ) from exc
            return self._row_to_entity(row)

        if self.in_memory:
            with self._mem_lock:
                self._mem[derivative.key] = derivative
            return derivative

        try:  # pragma: no cover - network
            data = asdict(derivative)
            data["created_at"] = derivative.created_at.isoformat()
            data["storage_path"] = data.pop("path")
            res = (
                self.client.table("image_derivatives")  # type: ignore[union-attr]
                .upsert(data, on_conflict="image_id,preset")
                .execute()
            )
            return self._row_to_entity(res.data[0])
        except Exception as exc:  # pragma: no cover - network
            raise StorageIOError(f"DB upsert derivative failed: {exc}") from exc

    def get(self, image_id: str, preset: str) -> Derivative | None:
        if self.use_local_db and self.pg_client:
            try:
                row = self.pg_client.execute_one(
                    "SELECT * FROM image_derivatives WHERE image_id = %s AND preset = %s", (image_id, preset)
                )
            except Exception as exc:
                raise StorageIOError(
                    f"PostgreSQL get derivative failed: {exc}", transient=is_transient_error(exc)
                ) from exc
            return self._row_to_entity(row) if row else None

        if self.in_memory:
            return self._mem.get((image_id, preset))

        try:  # pragma: no cover - network
            res = (
                self.client.table("image_derivatives")  # type: ignore[union-attr]
                .select("*")
                .eq("image_id", image_id)
                .eq("preset", preset)
                .limit(1)
                .execute()
            )
        except Exception as exc:  # pragma: no cover - network
            raise StorageIOError(f"DB get derivative failed: {exc}") from exc
        rows = res.data or []  # pragma: no cover
        return self._row_to_entity(rows[0]) if rows else None  # pragma: no cover

    def list_by_image(self, image_id: str) -> list[Derivative]:
        if self.use_local_db and self.pg_client:
            try:
                rows = self.pg_client.execute_many(
                    "SELECT * FROM image_derivatives WHERE image_id = %s ORDER BY preset", (image_id,)
                )
            except Exception as exc:
                raise StorageIOError(
                    f"PostgreSQL list derivatives failed: {exc}", transient=is_transient_error(exc)
                ) from exc
            return [self._row_to_entity(row) for row in rows]

        if self.in_memory:
            with self._mem_lock:
                return sorted((d for d in self._mem.values() if d.image_id == image_id), key=lambda d: d.preset)

        try:  # pragma: no cover - network
            res = (
                self.client.table("image_derivatives")  # type: ignore[union-attr]
                .select("*")
                .eq("image_id", image_id)
                .order("preset")
                .execute()
            )
        except Exception as exc:  # pragma: no cover - network
            raise StorageIOError(f"DB list derivatives failed: {exc}") from exc
        return [self._row_to_entity(row) for row in res.data or []]  # pragma: no cover

    def list_image_ids(self) -> set[str]:
        if self.use_local_db and self.pg_client:
            try:
                rows = self.pg_client.execute_many("SELECT DISTINCT image_id FROM image_derivatives")
            except Exception as exc:
                raise StorageIOError(
                    f"PostgreSQL list derivative images failed: {exc}", transient=is_transient_error(exc)
                ) from exc
            return {row["image_id"] for row in rows}

        if self.in_memory:
            with self._mem_lock:
                return {image_id for image_id, _ in self._mem}

        try:  # pragma: no cover - network
            res = self.client.table("image_derivatives").select("image_id").execute()  # type: ignore[union-attr]
        except Exception as exc:  # pragma: no cover - network
            raise StorageIOError(f"DB list derivatives failed: {exc}") from exc
        return {row["image_id"] for row in res.data or []}  # pragma: no cover

    def delete(self, image_id: str, preset: str) -> bool:
        if self.use_local_db and self.pg_client:
            try:
                affected = self.pg_client.execute_update(
                    "DELETE FROM image_derivatives WHERE image_id = %s AND preset = %s", (image_id, preset)
                )
            except Exception as exc:
                raise StorageIOError(
                    f"PostgreSQL delete derivative failed: {exc}", transient=is_transient_error(exc)
                ) from exc
            return affected > 0

        if self.in_memory:
            with self._mem_lock:
                return self._mem.pop((image_id, preset), None) is not None

        try:  # pragma: no cover - network
            res = (
                self.client.table("image_derivatives")  # type: ignore[union-attr]
                .delete()
                .eq("image_id", image_id)
                .eq("preset", preset)
                .execute()
            )
        except Exception as exc:  # pragma: no cover - network
            raise StorageIOError(f"DB delete derivative failed: {exc}") from exc
        return bool(res.data)  # pragma: no cover
