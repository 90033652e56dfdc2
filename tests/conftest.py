import io
import os
import sys
from pathlib import Path

import numpy as np
import pytest
from fastapi.testclient import TestClient
from PIL import Image

# Ensure project root is on sys.path so 'imagepreset' is importable during tests
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("SUPABASE_DISABLED", "1")
os.environ.setdefault("USE_LOCAL_DB", "0")

PRESETS = {
    "thumb": {"width": 100, "height": 100, "fit": "cover", "format": "jpeg", "quality": 85},
    "card": {"width": 200, "height": 200, "fit": "contain", "format": "png", "holder": "avatar"},
    "banner": {"width": 300, "height": 100, "fit": "stretch", "format": "webp", "quality": 80},
}
PLACEHOLDERS = {
    "default": "/static/placeholders/default.png",
    "avatar": "/static/placeholders/avatar.png",
}


def image_bytes(w=8, h=6, fmt="PNG", mode="RGB") -> bytes:
    arr = np.zeros((h, w, len(mode)), dtype=np.uint8)
    # a gradient keeps resampling and cropping observable
    arr[..., 0] = np.linspace(0, 255, w, dtype=np.uint8)[None, :]
    arr[..., 1] = np.linspace(0, 255, h, dtype=np.uint8)[:, None]
    arr[..., 2] = 64
    if mode == "RGBA":
        arr[..., 3] = 128
    buf = io.BytesIO()
    Image.fromarray(arr).save(buf, format=fmt)
    return buf.getvalue()


@pytest.fixture()
def make_image():
    return image_bytes


@pytest.fixture()
def storage(tmp_path):
    from imagepreset.infrastructure.storage.supabase_storage import SupabaseStorage

    return SupabaseStorage(None, local_dir=tmp_path / "storage")


@pytest.fixture()
def presets():
    from imagepreset.application.services.preset_registry import PresetRegistry

    return PresetRegistry(PRESETS, PLACEHOLDERS)


@pytest.fixture()
def manager(storage, presets):
    from imagepreset.application.services.image_manager import build_image_manager

    mgr = build_image_manager(
        storage=storage,
        presets=presets,
        base_url="",
        missing_policy="error",
        wait_timeout=5.0,
        retry_backoff=0.0,
    )
    counter = iter(range(1, 10_000))
    mgr.records.id_factory = lambda: f"img-{next(counter)}"
    return mgr


@pytest.fixture()
def client(manager) -> TestClient:
    # lazy import after env configured
    from imagepreset.infrastructure.api.dependencies import get_image_manager
    from imagepreset.main import create_app

    app = create_app()
    app.dependency_overrides[get_image_manager] = lambda: manager
    return TestClient(app)
