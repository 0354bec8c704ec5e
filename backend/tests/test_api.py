import io

import fitz
import pytest
from fastapi.testclient import TestClient
from PIL import Image

from conftest import image_bytes, noise_image, write_pdf
from optimizer.main import create_app


@pytest.fixture
def client(history, service):
    with TestClient(create_app(history=history, service=service)) as c:
        yield c


def png_upload(name="photo.png", size=(200, 150), noise=True):
    img = noise_image(*size) if noise else Image.new("RGB", size, (10, 120, 200))
    return (name, image_bytes(img), "image/png")


def test_health(client):
    assert client.get("/api/health").json() == {"status": "ok"}


def test_formats(client):
    r = client.get("/api/formats", params={"kind": "video"})
    assert r.json() == {"kind": "video", "formats": ["mp4", "mov", "gif"]}
    everything = client.get("/api/formats").json()
    assert everything["spreadsheet"] == ["pdf"]
    assert everything["unknown_binary"] == []
    assert client.get("/api/formats", params={"kind": "audio"}).status_code == 422


def test_presets(client):
    presets = client.get("/api/presets").json()
    assert presets["mail"]["options"]["target_size_bytes"] == 25 * 1024 * 1024
    assert presets["whatsapp"]["options"]["video_quality"] == "medium"
    assert presets["custom"]["options"] is None


def test_analyze(client):
    r = client.post("/api/analyze", files={"file": png_upload()})
    assert r.status_code == 200
    body = r.json()
    assert body["kind"] == "image"
    assert body["image_density"] == "high"
    assert body["estimated_savings"] == "high"
    assert "webp" in body["available_formats"]


def test_analyze_unreadable(client):
    r = client.post("/api/analyze", files={"file": ("data.bin", b"\x00\x01\x02\x03", "application/octet-stream")})
    assert r.status_code == 400


def test_job_lifecycle(client, history):
    r = client.post(
        "/api/jobs",
        params={"format": "jpeg", "preset": "whatsapp"},
        files={"file": png_upload("scan.png")},
    )
    assert r.status_code == 200
    job_id = r.json()["job_id"]

    job = client.get(f"/api/jobs/{job_id}").json()
    assert job["stage"] == "done"
    assert job["is_converting"] is False
    assert job["artifact"]["file_name"] == "scan_optimized.jpg"

    art = client.get(f"/api/jobs/{job_id}/artifact")
    assert art.status_code == 200
    assert art.headers["content-type"] == "image/jpeg"
    assert "scan_optimized.jpg" in art.headers["content-disposition"]
    assert Image.open(io.BytesIO(art.content)).format == "JPEG"

    items = client.get("/api/history").json()["items"]
    assert len(items) == 1
    assert items[0]["id"] == job["history_id"]
    assert items[0]["preset_used"] == "whatsapp"
    assert items[0]["compressed_size"] == len(art.content)

    stats = client.get("/api/history/stats").json()
    assert stats["count"] == 1
    assert stats["best_savings_percent"] == items[0]["savings_percent"]

    cancelled = client.post(f"/api/jobs/{job_id}/cancel").json()
    assert cancelled["cancelled"] is False
    assert cancelled["stage"] == "done"


def test_job_rejections(client):
    r = client.post("/api/jobs", params={"format": "mp4"}, files={"file": png_upload()})
    assert r.status_code == 400
    assert "Cannot convert image files to MP4" in r.json()["detail"]

    r = client.post("/api/jobs", params={"format": "jpg", "quality": 5}, files={"file": png_upload()})
    assert r.status_code == 422

    r = client.post("/api/jobs", params={"format": "bmp"}, files={"file": png_upload()})
    assert r.status_code == 400

    r = client.post("/api/jobs", params={"format": "jpg", "preset": "telegram"}, files={"file": png_upload()})
    assert r.status_code == 400


def test_unknown_job(client):
    assert client.get("/api/jobs/nope").status_code == 404
    assert client.post("/api/jobs/nope/cancel").status_code == 404
    assert client.get("/api/jobs/nope/artifact").status_code == 404


def test_merge_job(client):
    files = [
        ("files", png_upload("first.png", size=(100, 50), noise=False)),
        ("files", png_upload("second.png", size=(60, 80), noise=False)),
    ]
    r = client.post("/api/jobs/merge", files=files)
    assert r.status_code == 200
    job_id = r.json()["job_id"]

    art = client.get(f"/api/jobs/{job_id}/artifact")
    assert art.headers["content-type"] == "application/pdf"
    with fitz.open(stream=art.content, filetype="pdf") as doc:
        assert [round(p.rect.width) for p in doc] == [100, 60]


def test_merge_needs_two_images(client):
    r = client.post("/api/jobs/merge", files=[("files", png_upload())])
    assert r.status_code == 400


def test_history_deletion(client):
    for name in ("a.png", "b.png"):
        client.post("/api/jobs", params={"format": "webp"}, files={"file": png_upload(name)})
    items = client.get("/api/history", params={"limit": 1}).json()["items"]
    assert [i["file_name"] for i in items] == ["b.png"]

    assert client.delete(f"/api/history/{items[0]['id']}").json() == {"ok": True}
    assert client.delete(f"/api/history/{items[0]['id']}").status_code == 404
    assert client.delete("/api/history").json() == {"ok": True, "removed": 1}
    assert client.get("/api/history/stats").json()["average_savings_percent"] == 68


def test_artifact_with_non_ascii_name(client):
    r = client.post("/api/jobs", params={"format": "jpg"}, files={"file": png_upload("報告書.png")})
    job_id = r.json()["job_id"]
    assert client.get(f"/api/jobs/{job_id}").json()["stage"] == "done"

    art = client.get(f"/api/jobs/{job_id}/artifact")
    assert art.status_code == 200
    disposition = art.headers["content-disposition"]
    assert disposition.startswith('attachment; filename="')
    assert "filename*=UTF-8''%E5%A0%B1%E5%91%8A%E6%9B%B8_optimized.jpg" in disposition
    assert Image.open(io.BytesIO(art.content)).format == "JPEG"


def test_delete_job(client):
    r = client.post("/api/jobs", params={"format": "webp"}, files={"file": png_upload()})
    job_id = r.json()["job_id"]
    assert client.delete(f"/api/jobs/{job_id}").json() == {"ok": True}
    assert client.get(f"/api/jobs/{job_id}").status_code == 404
    assert client.get(f"/api/jobs/{job_id}/artifact").status_code == 404
    assert client.delete(f"/api/jobs/{job_id}").status_code == 404
    assert len(client.get("/api/history").json()["items"]) == 1


def test_merge_pdf_job(client, tmp_path):
    uploads = []
    for name, pages in (("cover.pdf", 1), ("report.pdf", 3)):
        data = write_pdf(tmp_path / name, pages=pages).read_bytes()
        uploads.append(("files", (name, data, "application/pdf")))
    r = client.post("/api/jobs/merge", files=uploads)
    assert r.status_code == 200
    job = client.get(f"/api/jobs/{r.json()['job_id']}").json()
    assert job["stage"] == "done"
    assert job["artifact"]["file_name"] == "cover_merged.pdf"
    assert job["artifact"]["page_count"] == 4
