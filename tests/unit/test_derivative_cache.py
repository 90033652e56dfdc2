"""
Tests for the derivative cache: single generation per key, placeholders,
cascading delete and storage retries.
"""
from __future__ import annotations

import io
import threading
from unittest.mock import patch

import pytest
from PIL import Image

from imagepreset.application.services.preset_registry import PresetRegistry
from imagepreset.domain.errors import (
    NotFoundError,
    StorageIOError,
    TransformError,
    UnknownPresetError,
)


@pytest.fixture()
def transform_spy(manager):
    """Count calls into the real transform engine."""
    real = manager.derivatives.transform.transform
    with patch.object(manager.derivatives.transform, "transform", side_effect=real) as spy:
        yield spy


@pytest.fixture()
def uploaded(manager, make_image):
    return manager.records.save_original(make_image(800, 600, fmt="PNG"), "photo.png")


def _derivative_files(storage, identity):
    return storage.list_prefix(f"derivatives/{identity}/")


def test_thumb_scenario(manager, uploaded, transform_spy):
    cache = manager.derivatives
    storage = manager.records.storage
    assert uploaded.id == "img-1"

    first = cache.get_or_generate("img-1", "thumb")
    data = storage.download_bytes(first.path)
    img = Image.open(io.BytesIO(data))
    assert img.format == "JPEG"
    assert img.size == (100, 100)
    assert (first.width, first.height, first.mime_type) == (100, 100, "image/jpeg")
    assert first.url == "/images/img-1/presets/thumb"

    second = cache.get_or_generate("img-1", "thumb")
    assert second == first
    assert storage.download_bytes(second.path) == data
    assert transform_spy.call_count == 1

    manager.records.delete_record("img-1")
    with pytest.raises(NotFoundError):
        cache.get_or_generate("img-1", "thumb")
    assert not storage.exists(first.path)
    assert cache.derivative_repo.get("img-1", "thumb") is None


def test_unknown_preset_touches_nothing(manager, uploaded, transform_spy):
    storage = manager.records.storage
    with patch.object(storage, "download_bytes") as download, patch.object(storage, "upload_bytes") as upload:
        with pytest.raises(UnknownPresetError):
            manager.derivatives.get_or_generate(uploaded.id, "nonexistent-preset")
    download.assert_not_called()
    upload.assert_not_called()
    transform_spy.assert_not_called()


@pytest.mark.parametrize("identity", [None, ""])
def test_absent_identity_gets_placeholder(manager, transform_spy, identity):
    result = manager.derivatives.get_or_generate(identity, "thumb")
    assert result.placeholder
    assert result.path is None
    assert result.url == "/static/placeholders/default.png"
    assert (result.width, result.height) == (100, 100)
    assert manager.derivatives.derivative_repo.list_image_ids() == set()
    transform_spy.assert_not_called()


def test_placeholder_holder_resolution(manager):
    # preset-level holder, then explicit override
    assert manager.derivatives.get_or_generate(None, "card").url == "/static/placeholders/avatar.png"
    assert manager.derivatives.get_or_generate(None, "thumb", holder="avatar").holder == "avatar"


def test_dangling_identity_placeholder_policy(manager):
    manager.derivatives.missing_policy = "placeholder"
    result = manager.derivatives.get_or_generate("img-404", "thumb")
    assert result.placeholder


def test_concurrent_requests_generate_once(manager, uploaded, transform_spy):
    real = transform_spy.side_effect

    def slow_transform(source, preset):
        threading.Event().wait(0.2)
        return real(source, preset)

    transform_spy.side_effect = slow_transform
    n = 8
    start = threading.Barrier(n)
    results, errors = [], []

    def worker():
        start.wait()
        try:
            results.append(manager.derivatives.get_or_generate(uploaded.id, "thumb"))
        except Exception as exc:  # pragma: no cover - reported below
            errors.append(exc)

    threads = [threading.Thread(target=worker) for _ in range(n)]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert errors == []
    assert len(results) == n
    assert transform_spy.call_count == 1
    assert all(r == results[0] for r in results)
    assert not any(r.fallback for r in results)


def test_unrelated_keys_generate_in_parallel(manager, uploaded, transform_spy):
    real = transform_spy.side_effect
    both_inside = threading.Barrier(2, timeout=5)

    def meeting_transform(source, preset):
        # only returns if the other preset is being rendered at the same time
        both_inside.wait()
        return real(source, preset)

    transform_spy.side_effect = meeting_transform
    results = {}

    def worker(preset):
        results[preset] = manager.derivatives.get_or_generate(uploaded.id, preset)

    threads = [threading.Thread(target=worker, args=(p,)) for p in ("thumb", "card")]
    for t in threads:
        t.start()
    for t in threads:
        t.join(10)

    assert set(results) == {"thumb", "card"}
    assert transform_spy.call_count == 2


def test_waiter_falls_back_to_original_after_timeout(manager, uploaded, transform_spy):
    real = transform_spy.side_effect
    release = threading.Event()
    entered = threading.Event()

    def blocked_transform(source, preset):
        entered.set()
        release.wait(5)
        return real(source, preset)

    transform_spy.side_effect = blocked_transform
    manager.derivatives.wait_timeout = 0.05
    leader_result = {}
    leader = threading.Thread(
        target=lambda: leader_result.setdefault("r", manager.derivatives.get_or_generate(uploaded.id, "thumb"))
    )
    leader.start()
    assert entered.wait(5)

    waiter = manager.derivatives.get_or_generate(uploaded.id, "thumb")
    assert waiter.fallback
    assert waiter.path == uploaded.path
    assert (waiter.width, waiter.height) == (800, 600)

    release.set()
    leader.join(5)
    assert not leader_result["r"].fallback
    assert transform_spy.call_count == 1


def test_failed_transform_leaves_no_entry_and_next_call_retries(manager, uploaded, transform_spy):
    real = transform_spy.side_effect
    calls = []

    def flaky_transform(source, preset):
        calls.append(preset.name)
        if len(calls) == 1:
            raise TransformError("encoder exploded")
        return real(source, preset)

    transform_spy.side_effect = flaky_transform
    storage = manager.records.storage

    with pytest.raises(TransformError):
        manager.derivatives.get_or_generate(uploaded.id, "thumb")
    assert manager.derivatives.derivative_repo.get(uploaded.id, "thumb") is None
    assert _derivative_files(storage, uploaded.id) == []

    result = manager.derivatives.get_or_generate(uploaded.id, "thumb")
    assert storage.exists(result.path)
    assert len(calls) == 2


def test_transient_storage_errors_are_retried(manager, uploaded):
    storage = manager.records.storage
    real_upload = storage.upload_bytes
    attempts = []

    def flaky_upload(*args, **kwargs):
        attempts.append(args[0])
        if len(attempts) < 3:
            raise StorageIOError("503 from backend", transient=True)
        return real_upload(*args, **kwargs)

    with patch.object(storage, "upload_bytes", side_effect=flaky_upload):
        result = manager.derivatives.get_or_generate(uploaded.id, "thumb")
    assert len(attempts) == 3
    assert storage.exists(result.path)


def test_permanent_storage_errors_surface_immediately(manager, uploaded):
    storage = manager.records.storage
    with patch.object(storage, "upload_bytes", side_effect=StorageIOError("bucket gone")) as upload:
        with pytest.raises(StorageIOError):
            manager.derivatives.get_or_generate(uploaded.id, "thumb")
    assert upload.call_count == 1
    assert manager.derivatives.derivative_repo.get(uploaded.id, "thumb") is None


def test_retries_are_bounded(manager, uploaded):
    storage = manager.records.storage
    with patch.object(storage, "download_bytes", side_effect=StorageIOError("timeout", transient=True)) as download:
        with pytest.raises(StorageIOError):
            manager.derivatives.get_or_generate(uploaded.id, "thumb")
    assert download.call_count == manager.derivatives.retry_attempts


def test_cascading_delete_removes_every_preset(manager, uploaded):
    storage = manager.records.storage
    generated = [manager.derivatives.get_or_generate(uploaded.id, p) for p in ("thumb", "card", "banner")]
    # a blob the index never heard of
    storage.upload_bytes(f"derivatives/{uploaded.id}/stale.jpg", b"junk", "image/jpeg")

    manager.records.delete_record(uploaded.id)

    for result in generated:
        assert not storage.exists(result.path)
    assert _derivative_files(storage, uploaded.id) == []
    assert manager.derivatives.derivative_repo.list_by_image(uploaded.id) == []
    assert not storage.exists(uploaded.path)


def test_invalidate_one_preset(manager, uploaded, transform_spy):
    thumb = manager.derivatives.get_or_generate(uploaded.id, "thumb")
    card = manager.derivatives.get_or_generate(uploaded.id, "card")

    assert manager.derivatives.invalidate(uploaded.id, "thumb") == 1
    assert not manager.records.storage.exists(thumb.path)
    assert manager.records.storage.exists(card.path)

    manager.derivatives.get_or_generate(uploaded.id, "thumb")
    assert transform_spy.call_count == 3


def test_regenerate_overwrites_in_place(manager, uploaded, transform_spy):
    first = manager.derivatives.get_or_generate(uploaded.id, "thumb")
    again = manager.derivatives.regenerate(uploaded.id, "thumb")
    assert again.path == first.path
    assert transform_spy.call_count == 2
    assert len(manager.derivatives.derivative_repo.list_by_image(uploaded.id)) == 1


def test_collect_garbage_removes_orphans(manager, uploaded):
    result = manager.derivatives.get_or_generate(uploaded.id, "thumb")
    # metadata vanished behind our back
    manager.records.image_repo.delete(uploaded.id)

    assert manager.derivatives.collect_garbage() == 1
    assert not manager.records.storage.exists(result.path)


def test_load_bytes(manager, uploaded):
    data, result = manager.derivatives.load_bytes(uploaded.id, "banner")
    assert Image.open(io.BytesIO(data)).size == (300, 100)
    assert result.mime_type == "image/webp"

    data, result = manager.derivatives.load_bytes(None, "banner")
    assert data is None
    assert result.placeholder


def test_create_url_is_lazy_and_stable(manager, uploaded, transform_spy):
    url = manager.derivatives.create_url(uploaded.id, "thumb")
    assert url == "/images/img-1/presets/thumb"
    assert manager.derivatives.create_url(uploaded.id, "thumb") == url
    assert manager.derivatives.create_url(None, "card") == "/static/placeholders/avatar.png"
    transform_spy.assert_not_called()
    with pytest.raises(UnknownPresetError):
        manager.derivatives.create_url(uploaded.id, "huge")


def test_create_url_with_base_url(manager):
    manager.derivatives.base_url = "https://img.example.com"
    assert manager.derivatives.create_url("a b", "thumb") == "https://img.example.com/images/a%20b/presets/thumb"


def test_delete_during_generation_leaves_nothing_behind(manager, uploaded, transform_spy):
    real = transform_spy.side_effect
    entered = threading.Event()
    release = threading.Event()

    def blocked_transform(source, preset):
        entered.set()
        release.wait(5)
        return real(source, preset)

    transform_spy.side_effect = blocked_transform
    outcome = {}

    def render():
        try:
            outcome["result"] = manager.derivatives.get_or_generate(uploaded.id, "thumb")
        except Exception as exc:
            outcome["error"] = exc

    worker = threading.Thread(target=render)
    worker.start()
    assert entered.wait(5)

    manager.records.delete_record(uploaded.id)
    release.set()
    worker.join(5)

    assert isinstance(outcome.get("error"), NotFoundError)
    assert manager.derivatives.derivative_repo.list_by_image(uploaded.id) == []
    assert _derivative_files(manager.records.storage, uploaded.id) == []


def test_changed_preset_settings_trigger_regeneration(manager, uploaded, transform_spy):
    first = manager.derivatives.get_or_generate(uploaded.id, "thumb")
    assert (first.width, first.height) == (100, 100)

    # same name and format, new size
    manager.derivatives.presets = PresetRegistry(
        {"thumb": {"width": 50, "height": 100, "fit": "cover", "format": "jpeg", "quality": 85}},
        {"default": "/static/placeholders/default.png"},
    )
    second = manager.derivatives.get_or_generate(uploaded.id, "thumb")

    assert (second.width, second.height) == (50, 100)
    assert second.path == first.path
    assert Image.open(io.BytesIO(manager.records.storage.download_bytes(second.path))).size == (50, 100)
    assert transform_spy.call_count == 2
    assert manager.derivatives.get_or_generate(uploaded.id, "thumb") == second
    assert transform_spy.call_count == 2


def test_preset_options_follow_missing_policy(manager):
    with pytest.raises(NotFoundError):
        manager.create_preset_options("img-404", "card")

    manager.derivatives.missing_policy = "placeholder"
    assert manager.create_preset_options("img-404", "card") == {
        "src": "/static/placeholders/avatar.png",
        "width": 200,
        "height": 200,
    }
    assert manager.get_or_generate("img-404", "card").url == "/static/placeholders/avatar.png"
