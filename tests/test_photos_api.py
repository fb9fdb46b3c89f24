import asyncio
import io

import pytest
from httpx import ASGITransport, AsyncClient
from PIL import Image

from app.main import app


def _png(width=80, height=60):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (30, 144, 255)).save(buffer, format="PNG")
    return buffer.getvalue()


async def _upload(client, data=None, filename="sky.png"):
    response = await client.post(
        "/api/v1/photos",
        files={"file": (filename, io.BytesIO(data or _png()), "image/png")},
    )
    return response


async def _wait_for_job(client, suggestion_id):
    for _ in range(100):
        response = await client.get(f"/api/v1/suggestions/{suggestion_id}/job")
        if response.json()["data"]["done"]:
            return response.json()["data"]
        await asyncio.sleep(0.01)
    raise AssertionError("transformation job did not finish")


@pytest.mark.asyncio
async def test_upload_photo_success():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await _upload(client)

    assert response.status_code == 201
    body = response.json()
    assert body["status"] == "success"
    assert body["data"]["width"] == 80
    assert body["data"]["height"] == 60
    assert body["data"]["aspect_ratio"] == pytest.approx(80 / 60)
    assert body["data"]["filename"] == "sky.png"
    assert body["data"]["analysis_completed"] is False


@pytest.mark.asyncio
async def test_upload_invalid_image():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await _upload(client, data=b"\xff\xd8\xff\xe0" + b"\x00" * 100, filename="broken.jpg")

    assert response.status_code == 422
    assert response.json()["status"] == "error"


@pytest.mark.asyncio
async def test_get_missing_photo():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        response = await client.get("/api/v1/photos/nonexistent")

    assert response.status_code == 404
    assert response.json()["message"] == "Photo not found"


@pytest.mark.asyncio
async def test_analyze_without_keys_uses_mock_suggestions():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        photo_id = (await _upload(client)).json()["data"]["id"]

        response = await client.post(f"/api/v1/photos/{photo_id}/analyze")
        analysis = await client.get(f"/api/v1/photos/{photo_id}/analysis")
        pipeline = await client.get(f"/api/v1/photos/{photo_id}/pipeline")

    assert response.status_code == 200
    data = response.json()["data"]
    assert data["pipeline"]["state"] == "awaiting_selection"
    assert data["pipeline"]["is_mock"] is True
    assert "GEMINI_API_KEY" in data["pipeline"]["error"]
    assert data["pipeline"]["analysis_id"] == analysis.json()["data"]["id"]
    assert data["pipeline"]["suggestion_ids"] == [s["id"] for s in data["suggestions"]]
    assert len(data["suggestions"]) == 5
    assert all(s["is_mock"] for s in data["suggestions"])
    assert [s["order_index"] for s in data["suggestions"]] == [0, 1, 2, 3, 4]
    assert data["suggestions"][2]["typed_parameters"] == {"kind": "style", "value": "Cinemagraph"}
    assert data["suggestions"][0]["typed_parameters"]["kind"] == "prompt"

    assert analysis.status_code == 200
    assert analysis.json()["data"]["is_mock"] is True
    assert pipeline.json()["data"]["id"] == data["pipeline"]["id"]


@pytest.mark.asyncio
async def test_analysis_before_analyze_is_404():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        photo_id = (await _upload(client)).json()["data"]["id"]
        response = await client.get(f"/api/v1/photos/{photo_id}/analysis")

    assert response.status_code == 404


@pytest.mark.asyncio
async def test_transform_without_keys_returns_original_as_mock():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        original = _png()
        photo_id = (await _upload(client, data=original)).json()["data"]["id"]
        analyzed = await client.post(f"/api/v1/photos/{photo_id}/analyze")
        suggestion_id = analyzed.json()["data"]["suggestions"][0]["id"]

        started = await client.post(f"/api/v1/suggestions/{suggestion_id}/transform")
        job = await _wait_for_job(client, suggestion_id)
        content = await client.get(f"/api/v1/media/{job['media_id']}/content")
        detail = await client.get(f"/api/v1/suggestions/{suggestion_id}")

    assert started.status_code == 202
    assert started.json()["data"]["media_id"] == job["media_id"]
    assert job["pipeline"]["state"] == "completed"
    assert job["pipeline"]["is_mock"] is True
    assert job["pipeline"]["media_id"] == job["media_id"]
    # finished jobs are served from the stored result
    assert app.state.orchestrator.get_job(suggestion_id) is None
    assert job["job_id"]

    assert content.status_code == 200
    assert content.headers["content-type"] == "image/png"
    assert content.content == original

    data = detail.json()["data"]
    assert data["suggestion"]["is_selected"] is True
    assert data["result"]["is_mock"] is True
    assert data["result"]["extra"]["error_type"] == "MissingCredential"


@pytest.mark.asyncio
async def test_delete_photo():
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        photo_id = (await _upload(client)).json()["data"]["id"]
        await client.post(f"/api/v1/photos/{photo_id}/analyze")

        deleted = await client.delete(f"/api/v1/photos/{photo_id}")
        suggestions = await client.get(f"/api/v1/photos/{photo_id}/suggestions")
        pipeline = await client.get(f"/api/v1/photos/{photo_id}/pipeline")

    assert deleted.status_code == 200
    assert suggestions.status_code == 404
    assert pipeline.status_code == 404
