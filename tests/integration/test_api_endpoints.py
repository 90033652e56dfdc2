import io

from PIL import Image

essentials = {}


def test_root_and_health(client):
    assert client.get("/").json()["service"] == "imagepreset"
    assert client.get("/health").json() == {"status": "healthy"}


def test_upload_and_metadata(client, make_image):
    png = make_image(800, 600)
    files = {"file": ("sample.png", png, "image/png")}
    r = client.post("/images/upload", files=files, data={"name": "Sample"})
    assert r.status_code == 201, r.text
    data = r.json()["image"]
    assert data["width"] == 800
    assert data["mime_type"] == "image/png"
    assert data["name"] == "Sample"
    essentials["image_id"] = data["id"]

    r2 = client.get(f"/images/{data['id']}")
    assert r2.status_code == 200
    assert r2.json()["checksum"] == data["checksum"]

    r3 = client.get(f"/images/{data['id']}/original")
    assert r3.status_code == 200
    assert r3.content == png
    assert r3.headers["content-type"] == "image/png"


def test_preset_rendering(client, make_image):
    files = {"file": ("sample.png", make_image(800, 600), "image/png")}
    image_id = client.post("/images/upload", files=files).json()["image"]["id"]

    r = client.get(f"/images/{image_id}/presets/thumb")
    assert r.status_code == 200, r.text
    assert r.headers["content-type"] == "image/jpeg"
    assert r.headers["cache-control"] == "public, max-age=86400"
    assert Image.open(io.BytesIO(r.content)).size == (100, 100)

    # served from cache the second time
    assert client.get(f"/images/{image_id}/presets/thumb").content == r.content


def test_preset_options(client, make_image):
    files = {"file": ("sample.png", make_image(800, 600), "image/png")}
    image_id = client.post("/images/upload", files=files).json()["image"]["id"]

    r = client.get(f"/images/{image_id}/presets/card/options")
    assert r.status_code == 200
    assert r.json() == {"src": f"/images/{image_id}/presets/card", "width": 200, "height": 150}


def test_list_presets(client):
    r = client.get("/presets")
    assert r.status_code == 200
    presets = {p["name"]: p for p in r.json()["presets"]}
    assert set(presets) == {"thumb", "card", "banner"}
    assert presets["card"]["fit"] == "contain"


def test_delete_removes_image_and_renderings(client, manager, make_image):
    files = {"file": ("sample.png", make_image(), "image/png")}
    image_id = client.post("/images/upload", files=files).json()["image"]["id"]
    thumb = manager.get_or_generate(image_id, "thumb")

    r = client.delete(f"/images/{image_id}")
    assert r.status_code == 200
    assert r.json()["ok"] is True
    assert not manager.records.storage.exists(thumb.path)

    assert client.get(f"/images/{image_id}").status_code == 404
    assert client.get(f"/images/{image_id}/presets/thumb").status_code == 404
    assert client.delete(f"/images/{image_id}").status_code == 404


def test_invalid_upload_rejected(client):
    files = {"file": ("fake.png", b"this is not an image", "image/png")}
    r = client.post("/images/upload", files=files)
    assert r.status_code == 400
    assert r.json()["error"] == "InvalidImageError"


def test_unknown_preset(client, make_image):
    files = {"file": ("sample.png", make_image(), "image/png")}
    image_id = client.post("/images/upload", files=files).json()["image"]["id"]
    r = client.get(f"/images/{image_id}/presets/huge")
    assert r.status_code == 404
    assert r.json()["error"] == "UnknownPresetError"
