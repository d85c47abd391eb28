import os

os.environ.setdefault("DB_BACKEND", "sqlite")
os.environ.setdefault("VECTOR_BACKEND", "none")

import pytest
from fastapi.testclient import TestClient

from app.main import create_app
from spotter.services.coaching import CoachingService
from spotter.services.memory_store import MemoryStore


@pytest.fixture
def client(server_db, fake_provider):
    service = CoachingService(memory=MemoryStore(fake_provider, flush_interval_seconds=0))
    with TestClient(create_app(service)) as test_client:
        yield test_client, service


def test_variant_status_lists_catalog(client):
    test_client, _ = client
    response = test_client.get("/variants")
    assert response.status_code == 200
    body = response.json()
    assert sorted(body) == ["v1", "v2", "v3", "v4"]
    assert body["v1"]["enabled"] is True


def test_kill_switch_round_trip(client):
    test_client, service = client
    response = test_client.post("/variants/v3/disable", params={"reason": "bad outputs"})
    assert response.status_code == 200
    assert response.json() == {"variant_id": "v3", "enabled": False, "evicted_sessions": 0}
    assert service.selector.is_enabled("v3") is False

    response = test_client.post("/variants/v3/enable")
    assert response.status_code == 200
    assert response.json()["changed"] is True
    assert service.selector.is_enabled("v3") is True


def test_unknown_variant_is_404(client):
    test_client, _ = client
    assert test_client.post("/variants/v9/disable").status_code == 404


def test_health_reports_service_state(client):
    test_client, _ = client
    response = test_client.get("/health")
    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["coaching"]["pending_memories"] == 0
