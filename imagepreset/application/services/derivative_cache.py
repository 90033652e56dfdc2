"""Derivative cache and generator.

Serves preset renderings of stored originals, generating each (identity,
preset) derivative at most once at a time:

- The first caller that misses the index becomes the generation leader for
  that key. Later callers for the same key wait for the leader's result, up
  to `wait_timeout` seconds; a waiter that gives up is served a reference to
  the original image and the generation keeps running for everyone else.
- A failed generation is re-raised to its waiters and leaves the key
  uncached, so the next request starts a fresh attempt.
- The in-flight map is guarded by one short lock that covers only dict
  bookkeeping. Storage I/O and transforms run outside it, so unrelated keys
  proceed in parallel.
"""
from __future__ import annotations

import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import TypeVar
from urllib.parse import quote

from imagepreset.application.services.image_record_manager import ImageRecordManager
from imagepreset.application.services.preset_registry import DEFAULT_HOLDER, PresetRegistry
from imagepreset.domain.entities.derivative import Derivative, DerivativeResult
from imagepreset.domain.entities.image import ImageRecord
from imagepreset.domain.entities.preset import PresetSpec
from imagepreset.domain.errors import NotFoundError, StorageIOError
from imagepreset.domain.services.transform_service import TransformService
from imagepreset.infrastructure.database.repositories.derivative_repository import DerivativeRepository
from imagepreset.infrastructure.storage.keys import derivative_prefix, make_derivative_key
from imagepreset.infrastructure.storage.supabase_storage import SupabaseStorage

_log = logging.getLogger("imagepreset.derivatives")

T = TypeVar("T")

MISSING_POLICIES = ("error", "placeholder")


@dataclass
class _Generation:
    done: threading.Event = field(default_factory=threading.Event)
    result: DerivativeResult | None = None
    error: BaseException | None = None


class DerivativeCache:
    def __init__(
        self,
        *,
        storage: SupabaseStorage,
        derivative_repo: DerivativeRepository,
        records: ImageRecordManager,
        presets: PresetRegistry,
        transform: TransformService,
        base_url: str | None = None,
        missing_policy: str | None = None,
        wait_timeout: float | None = None,
        retry_attempts: int | None = None,
        retry_backoff: float | None = None,
    ) -> None:
        self.storage = storage
        self.derivative_repo = derivative_repo
        self.records = records
        self.presets = presets
        self.transform = transform
        self.base_url = (base_url if base_url is not None else os.getenv("IMAGE_PUBLIC_BASE_URL", "")).rstrip("/")
        self.missing_policy = missing_policy or os.getenv("IMAGE_MISSING_POLICY", "error")
        if self.missing_policy not in MISSING_POLICIES:
            raise ValueError(f"IMAGE_MISSING_POLICY must be one of {MISSING_POLICIES}, got {self.missing_policy!r}")
        self.wait_timeout = (
            wait_timeout if wait_timeout is not None else float(os.getenv("DERIVATIVE_WAIT_TIMEOUT", "30"))
        )
        self.retry_attempts = max(
            1, retry_attempts if retry_attempts is not None else int(os.getenv("STORAGE_RETRY_ATTEMPTS", "3"))
        )
        self.retry_backoff = (
            retry_backoff if retry_backoff is not None else float(os.getenv("STORAGE_RETRY_BACKOFF", "0.1"))
        )
        self._inflight: dict[tuple[str, str], _Generation] = {}
        self._inflight_lock = threading.Lock()
        # derivatives go before their original
        records.add_purge_hook(self.invalidate)

    # --------- public API ---------
    def get_or_generate(self, identity: str | None, preset_name: str, holder: str | None = None) -> DerivativeResult:
        preset = self.presets.get(preset_name)
        record = self.resolve_record(identity)
        if record is None:
            return self._placeholder(preset, holder)
        cached = self._lookup(record, preset)
        if cached is not None:
            _log.debug("derivative hit id=%s preset=%s", record.id, preset.name)
            return cached
        return self._generate_once(record, preset)

    def regenerate(self, identity: str, preset_name: str) -> DerivativeResult:
        """Render again and overwrite the stored derivative in place."""
        preset = self.presets.get(preset_name)
        record = self.records.load_record(identity)
        return self._generate_once(record, preset, force=True)

    def load_bytes(
        self, identity: str | None, preset_name: str, holder: str | None = None
    ) -> tuple[bytes | None, DerivativeResult]:
        """Derivative bytes for delivery; placeholders carry no bytes."""
        result = self.get_or_generate(identity, preset_name, holder)
        if result.path is None:
            return None, result
        data = self._with_retries("download", lambda: self.storage.download_bytes(result.path))
        return data, result

    def create_url(self, identity: str | None, preset_name: str, holder: str | None = None) -> str:
        """Stable URL for a derivative; valid before the derivative exists."""
        preset = self.presets.get(preset_name)
        if not identity:
            return self.presets.placeholder_url(holder or preset.holder)
        return self._url(identity, preset.name)

    def invalidate(self, identity: str, preset_name: str | None = None) -> int:
        """Remove cached derivatives of an identity (one preset or all); returns blobs removed.

        Index rows go before their blobs, so a reader never gets a hit that
        points at a deleted blob. With no preset given, the identity's storage
        prefix is swept as well to catch blobs the index never recorded.
        """
        if preset_name is None:
            derivatives = self.derivative_repo.list_by_image(identity)
        else:
            found = self.derivative_repo.get(identity, preset_name)
            derivatives = [found] if found is not None else []

        removed = 0
        for derivative in derivatives:
            self.derivative_repo.delete(derivative.image_id, derivative.preset)
            self.storage.delete(derivative.path)
            removed += 1
        if preset_name is None:
            for path in self.storage.list_prefix(derivative_prefix(identity)):
                _log.info("removing unindexed derivative blob %s", path)
                self.storage.delete(path)
                removed += 1
        if removed:
            _log.info("invalidated %d derivative(s) id=%s preset=%s", removed, identity, preset_name or "*")
        return removed

    def collect_garbage(self) -> int:
        """Purge derivatives whose original record no longer exists."""
        known = self.records.image_repo.list_ids()
        removed = 0
        for image_id in sorted(self.derivative_repo.list_image_ids() - known):
            removed += self.invalidate(image_id)
        return removed

    def resolve_record(self, identity: str | None) -> ImageRecord | None:
        """Record to render, or None when a placeholder should be served instead.

        A dangling identity raises NotFoundError unless the missing policy is
        "placeholder".
        """
        if not identity:
            return None
        try:
            return self.records.load_record(identity)
        except NotFoundError:
            if self.missing_policy == "placeholder":
                return None
            raise

    # --------- internals ---------
    def _lookup(self, record: ImageRecord, preset: PresetSpec) -> DerivativeResult | None:
        derivative = self.derivative_repo.get(record.id, preset.name)
        if derivative is None or derivative.fingerprint != preset.fingerprint:
            # changed preset settings make the old rendering stale
            return None
        return self._result(derivative)

    def _generate_once(self, record: ImageRecord, preset: PresetSpec, *, force: bool = False) -> DerivativeResult:
        key = (record.id, preset.name)
        with self._inflight_lock:
            generation = self._inflight.get(key)
            leader = generation is None
            if leader:
                generation = _Generation()
                self._inflight[key] = generation

        if not leader:
            return self._wait(generation, record, preset)

        try:
            # another leader may have published between our miss and taking the slot
            result = None if force else self._lookup(record, preset)
            if result is None:
                result = self._generate(record, preset)
            generation.result = result
            return result
        except BaseException as exc:
            generation.error = exc
            raise
        finally:
            with self._inflight_lock:
                self._inflight.pop(key, None)
            generation.done.set()

    def _wait(self, generation: _Generation, record: ImageRecord, preset: PresetSpec) -> DerivativeResult:
        if not generation.done.wait(self.wait_timeout):
            _log.warning(
                "derivative id=%s preset=%s not ready after %.1fs, serving original",
                record.id,
                preset.name,
                self.wait_timeout,
            )
            return self._original_fallback(record)
        # the leader sets exactly one of error and result
        if generation.error is not None:
            raise generation.error
        return generation.result

    def _generate(self, record: ImageRecord, preset: PresetSpec) -> DerivativeResult:
        previous = self.derivative_repo.get(record.id, preset.name)
        source = self._with_retries("download", lambda: self.storage.download_bytes(record.path))
        # a transform failure propagates before anything is written
        rendered = self.transform.transform(source, preset)
        path = make_derivative_key(identity=record.id, preset=preset.name, ext=preset.extension)
        self._with_retries(
            "upload", lambda: self.storage.upload_bytes(path, rendered.data, rendered.mime_type, upsert=True)
        )
        derivative = self.derivative_repo.upsert(
            Derivative(
                image_id=record.id,
                preset=preset.name,
                path=path,
                width=rendered.width,
                height=rendered.height,
                mime_type=rendered.mime_type,
                file_size=len(rendered.data),
                created_at=datetime.now(UTC),
                fingerprint=preset.fingerprint,
            )
        )
        if previous is not None and previous.path != path:
            self.storage.delete(previous.path)

        # the original may have been deleted while we were rendering
        try:
            self.records.load_record(record.id)
        except NotFoundError:
            self.invalidate(record.id, preset.name)
            raise

        _log.info(
            "generated derivative id=%s preset=%s %dx%d %d bytes",
            record.id,
            preset.name,
            derivative.width,
            derivative.height,
            derivative.file_size,
        )
        return self._result(derivative)

    def _with_retries(self, operation: str, fn: Callable[[], T]) -> T:
        attempt = 0
        while True:
            try:
                return fn()
            except StorageIOError as exc:
                attempt += 1
                if not exc.transient or attempt >= self.retry_attempts:
                    raise
                delay = self.retry_backoff * (2 ** (attempt - 1))
                _log.warning(
                    "transient storage error on %s (attempt %d/%d): %s; retrying in %.2fs",
                    operation,
                    attempt,
                    self.retry_attempts,
                    exc,
                    delay,
                )
                time.sleep(delay)

    def _url(self, identity: str, preset_name: str) -> str:
        return f"{self.base_url}/images/{quote(identity, safe='')}/presets/{quote(preset_name, safe='')}"

    def _result(self, derivative: Derivative) -> DerivativeResult:
        return DerivativeResult(
            url=self._url(derivative.image_id, derivative.preset),
            path=derivative.path,
            width=derivative.width,
            height=derivative.height,
            mime_type=derivative.mime_type,
        )

    def _placeholder(self, preset: PresetSpec, holder: str | None) -> DerivativeResult:
        holder = holder or preset.holder
        return DerivativeResult(
            url=self.presets.placeholder_url(holder),
            path=None,
            width=preset.width,
            height=preset.height,
            mime_type=None,
            placeholder=True,
            holder=holder or DEFAULT_HOLDER,
        )

    def _original_fallback(self, record: ImageRecord) -> DerivativeResult:
        return DerivativeResult(
            url=self.storage.get_public_url(record.path),
            path=record.path,
            width=record.width,
            height=record.height,
            mime_type=record.mime_type,
            fallback=True,
        )
