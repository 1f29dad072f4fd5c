import base64
import os

import pytest

import media_storage
from asset_protection import check_hotlink, parse_allowed_domains

IMAGE_BYTES = b"\x89PNG\r\n\x1a\nnot-really-a-png"
DATA_URL = "data:image/png;base64," + base64.b64encode(IMAGE_BYTES).decode("ascii")


@pytest.fixture
def uploaded(client, admin_headers):
    response = client.post(
        "/api/media",
        headers=admin_headers,
        json={"items": [{"name": "Hero banner", "altText": "Models in linen", "url": DATA_URL}]},
    )
    assert response.status_code == 201
    return response.get_json()[0]


def stored_file(app, db, asset):
    document = db.media_assets.find_one({})
    assert str(document["_id"]) == asset["id"]
    return os.path.join(app.config["MEDIA_STORAGE_DIR"], document["storage_path"])


def test_data_url_upload_is_written_to_disk(app, db, uploaded):
    path = stored_file(app, db, uploaded)

    assert uploaded["url"].startswith("/storage/media/")
    assert uploaded["url"].endswith(".png")
    assert uploaded["mimeType"] == "image/png"
    assert uploaded["sizeBytes"] == len(IMAGE_BYTES)
    with open(path, "rb") as handle:
        assert handle.read() == IMAGE_BYTES


def test_remote_urls_are_stored_as_is(client, db, admin_headers):
    response = client.post(
        "/api/media",
        headers=admin_headers,
        json={"url": "https://cdn.example.com/look.jpg", "name": "Look"},
    )

    assert response.status_code == 201
    assert response.get_json()[0]["url"] == "https://cdn.example.com/look.jpg"
    assert "storage_path" not in db.media_assets.find_one({})


def test_upload_validation(client, admin_headers):
    empty = client.post("/api/media", headers=admin_headers, json={"items": []})
    bad_url = client.post(
        "/api/media", headers=admin_headers, json={"items": [{"url": "ftp://files/x.png"}]}
    )
    bad_mime = client.post(
        "/api/media",
        headers=admin_headers,
        json={"items": [{"url": "data:image/tiff;base64,AAAA"}]},
    )

    assert empty.status_code == 400
    assert empty.get_json()["message"] == "At least one media item is required"
    assert bad_url.status_code == 400
    assert bad_mime.status_code == 400


def test_media_requires_admin(client, user_headers):
    assert client.get("/api/media", headers=user_headers).status_code == 403


def test_list_and_search(client, admin_headers, uploaded):
    client.post(
        "/api/media",
        headers=admin_headers,
        json={"url": "https://cdn.example.com/denim.jpg", "name": "Denim"},
    )

    everything = client.get("/api/media", headers=admin_headers).get_json()
    search = client.get("/api/media?q=linen", headers=admin_headers).get_json()

    assert len(everything) == 2
    assert [asset["name"] for asset in search] == ["Hero banner"]


def test_update_replaces_file(app, client, db, admin_headers, uploaded):
    old_path = stored_file(app, db, uploaded)
    new_data_url = "data:image/webp;base64," + base64.b64encode(b"webp-bytes").decode("ascii")

    response = client.put(
        f"/api/media/{uploaded['id']}",
        headers=admin_headers,
        json={"name": "Hero v2", "url": new_data_url},
    )
    body = response.get_json()

    assert response.status_code == 200
    assert body["name"] == "Hero v2"
    assert body["url"].endswith(".webp")
    assert body["mimeType"] == "image/webp"
    assert not os.path.exists(old_path)


def test_update_validation(client, admin_headers, uploaded):
    blank_name = client.put(
        f"/api/media/{uploaded['id']}", headers=admin_headers, json={"name": ""}
    )
    bad_url = client.put(
        f"/api/media/{uploaded['id']}", headers=admin_headers, json={"url": "nope"}
    )
    missing = client.put(
        "/api/media/64b7f0c2a1b2c3d4e5f60718", headers=admin_headers, json={"name": "x"}
    )

    assert blank_name.get_json()["message"] == "Media name is required"
    assert bad_url.get_json()["message"] == "Media URL must be a valid image URL or data URL"
    assert missing.status_code == 404


def test_delete_removes_file(app, client, db, admin_headers, uploaded):
    path = stored_file(app, db, uploaded)

    response = client.delete(f"/api/media/{uploaded['id']}", headers=admin_headers)

    assert response.get_json()["message"] == "Media asset deleted"
    assert not os.path.exists(path)
    assert db.media_assets.count_documents({}) == 0


def test_static_route_serves_with_cache_headers(client, uploaded):
    response = client.get(uploaded["url"])

    assert response.status_code == 200
    assert response.data == IMAGE_BYTES
    assert response.headers["Cache-Control"] == "public, max-age=31536000, immutable"
    assert response.headers["X-Robots-Tag"] == "noimageindex, nofollow"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    response.close()


def test_static_route_blocks_hotlinks(client, uploaded):
    foreign = client.get(uploaded["url"], headers={"Referer": "https://evil.example/page"})
    partner = client.get(uploaded["url"], headers={"Referer": "https://cdn.partner.example/a"})
    same_site = client.get(uploaded["url"], headers={"Referer": "http://localhost/shop"})

    assert foreign.status_code == 403
    assert foreign.get_json()["message"] == "Hotlinking is not allowed for media assets"
    assert partner.status_code == 200
    assert same_site.status_code == 200
    partner.close()
    same_site.close()


def test_static_route_missing_file(client):
    response = client.get("/storage/media/2026/01/01/missing.png")

    assert response.status_code == 404
    assert response.get_json()["message"] == "Media not found"


def test_storage_path_cannot_escape_root(tmp_path):
    with pytest.raises(media_storage.MediaStorageError):
        media_storage.resolve_absolute_storage_path(str(tmp_path), "../outside.png")


def test_public_base_prefers_cdn():
    assert media_storage.get_public_base("storage/media/") == "/storage/media"
    assert media_storage.get_public_base("/storage/media", "https://cdn.example.com/") == (
        "https://cdn.example.com"
    )


def test_hotlink_rules():
    domains = parse_allowed_domains(" Partner.example , ,other.example")

    assert domains == ["partner.example", "other.example"]
    assert check_hotlink(None, "shop.example.com", domains) == (True, None)
    assert check_hotlink("not a url", "shop.example.com", domains) == (False, "Invalid referer")
    assert check_hotlink("https://evil.example", "shop.example.com", domains, enabled=False) == (
        True,
        None,
    )


def test_malformed_data_url_is_rejected(client, db, admin_headers):
    response = client.post(
        "/api/media",
        headers=admin_headers,
        json={"url": "data:image/png;base64,@@@notbase64@@@", "name": "Broken"},
    )
    not_an_image = client.post(
        "/api/media",
        headers=admin_headers,
        json={"url": "data:text/html;base64,PGI+aGk8L2I+", "name": "Page"},
    )

    assert response.status_code == 400
    assert response.get_json()["message"] == "Invalid image data URL"
    assert not_an_image.status_code == 400
    assert db.media_assets.count_documents({}) == 0


def test_update_rejects_malformed_data_url(app, client, db, admin_headers, uploaded):
    path = stored_file(app, db, uploaded)

    response = client.put(
        f"/api/media/{uploaded['id']}",
        headers=admin_headers,
        json={"url": "data:image/png;base64,@@@notbase64@@@"},
    )
    stored = db.media_assets.find_one({})

    assert response.status_code == 400
    assert response.get_json()["message"] == "Invalid image data URL"
    assert stored["url"] == uploaded["url"]
    assert os.path.exists(path)
