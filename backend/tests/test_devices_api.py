"""Tests for the device registration endpoints."""
import pytest
from httpx import ASGITransport, AsyncClient

from pushflow.main import create_app
from pushflow.routers.devices import get_registry

from conftest import android_token, ios_token


@pytest.fixture
async def client(registry):
    app = create_app()
    app.dependency_overrides[get_registry] = lambda: registry
    # No lifespan: the registry fixture owns its own database
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client


def registration(**overrides) -> dict:
    body = {
        "user_id": "u1",
        "company_id": "c1",
        "token": android_token(1),
        "platform": "android",
        "device_id": "pixel",
        "device_name": "Pixel 8",
    }
    body.update(overrides)
    return body


async def test_register_returns_the_device(client):
    response = await client.post("/api/devices/register", json=registration())

    assert response.status_code == 200
    data = response.json()
    assert data["user_id"] == "u1"
    assert data["platform"] == "android"
    assert data["is_active"] is True
    assert "token" not in data


async def test_register_again_updates_in_place(client):
    first = (await client.post("/api/devices/register", json=registration())).json()
    second = (await client.post(
        "/api/devices/register", json=registration(token=android_token(2), app_version="2.0")
    )).json()

    assert second["id"] == first["id"]
    assert second["app_version"] == "2.0"

    listed = (await client.get("/api/devices/c1/u1")).json()
    assert [d["id"] for d in listed] == [first["id"]]


async def test_register_rejects_malformed_token(client):
    response = await client.post(
        "/api/devices/register", json=registration(platform="ios", token="not-hex")
    )
    assert response.status_code == 422
    assert (await client.get("/api/devices/c1/u1")).json() == []


async def test_register_rejects_unknown_platform(client):
    response = await client.post("/api/devices/register", json=registration(platform="blackberry"))
    assert response.status_code == 422


async def test_deactivate_and_reactivate(client):
    device = (await client.post(
        "/api/devices/register", json=registration(platform="ios", token=ios_token(7))
    )).json()

    response = await client.post(f"/api/devices/{device['id']}/deactivate")
    assert response.status_code == 200
    assert response.json()["is_active"] is False
    assert (await client.get("/api/devices/c1/u1")).json() == []

    response = await client.post(f"/api/devices/{device['id']}/reactivate")
    assert response.json()["is_active"] is True
    assert len((await client.get("/api/devices/c1/u1")).json()) == 1


@pytest.mark.parametrize("method,path", [
    ("post", "/api/devices/missing/deactivate"),
    ("post", "/api/devices/missing/reactivate"),
    ("delete", "/api/devices/missing"),
])
async def test_unknown_device_is_404(client, method, path):
    response = await getattr(client, method)(path)
    assert response.status_code == 404


async def test_remove_device(client):
    device = (await client.post("/api/devices/register", json=registration())).json()

    response = await client.delete(f"/api/devices/{device['id']}")
    assert response.status_code == 200
    assert response.json()["success"] is True
    assert (await client.get("/api/devices/c1/u1")).json() == []


async def test_health(client):
    response = await client.get("/health")
    assert response.json() == {"status": "healthy", "worker": False}
