# tests/test_health.py
from fastapi import status
from fastapi.testclient import TestClient

from anons_auth.core.settings import settings


def test_health_check(client: TestClient) -> None:
    response = client.get("/health")
    assert response.status_code == status.HTTP_200_OK
    assert response.json() == {"status": "ok"}


def test_root_describes_service(client: TestClient) -> None:
    response = client.get("/")
    assert response.status_code == status.HTTP_200_OK
    body = response.json()
    assert body["name"] == settings.app_name
    assert body["domain"] == settings.api_domain


def test_startup_runs_nonce_sweeper(client: TestClient) -> None:
    sweeper = client.app.state.nonce_sweeper
    assert sweeper.running
