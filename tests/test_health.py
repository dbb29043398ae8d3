# tests/test_health.py
from fastapi.testclient import TestClient


def test_health_responds(client: TestClient) -> None:
    r = client.get("/health")
    assert r.status_code == 200
    assert r.json() == {"status": "ok"}


def test_root_describes_service(client: TestClient) -> None:
    r = client.get("/")
    assert r.status_code == 200
    assert r.json()["docs"] == "/docs"
    assert r.json()["name"] == "QR Confirm"


def test_unknown_route_is_404(client: TestClient) -> None:
    assert client.get("/api/v1/posts").status_code == 404
