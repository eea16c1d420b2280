"""API tests for the FastAPI entry point."""

import pytest
from fastapi.testclient import TestClient

from voice_relay.config import RelayConfig
from voice_relay.server import create_app

from tests.conftest import FakeProviders


@pytest.fixture
def providers():
    return FakeProviders()


@pytest.fixture
def client(providers, monkeypatch):
    monkeypatch.delenv("VOICE_RELAY_CONFIG", raising=False)
    with TestClient(create_app(RelayConfig(), providers)) as test_client:
        yield test_client


def test_health_endpoint(client):
    """Liveness reports the active session count."""
    response = client.get("/health")

    assert response.status_code == 200
    assert response.json() == {"status": "ok", "active_sessions": 0}


def test_get_config(client):
    response = client.get("/config")

    assert response.status_code == 200
    assert response.json()["transcription"]["model"] == "nova-3"


def test_put_config_merges(client):
    response = client.put("/config", json={"generation": {"temperature": 0.3}})

    assert response.status_code == 200
    data = response.json()
    assert data["generation"]["temperature"] == 0.3
    assert data["generation"]["model"] == "llama-3.3-70b-versatile"
    assert client.get("/config").json()["generation"]["temperature"] == 0.3


def test_put_config_validation_error(client):
    response = client.put("/config", json={"transcription": {"utterance_end_ms": 10}})

    assert response.status_code == 422
    assert client.get("/config").json()["transcription"]["utterance_end_ms"] == 1000


def test_put_config_persists(tmp_path, monkeypatch):
    path = tmp_path / "relay.json"
    monkeypatch.setenv("VOICE_RELAY_CONFIG", str(path))
    with TestClient(create_app(providers=FakeProviders())) as test_client:
        test_client.put("/config", json={"synthesis": {"container": "wav"}})

    assert RelayConfig.load(path).synthesis.container == "wav"


def test_initialize_without_credentials(client, providers, no_provider_keys):
    """A configuration error is reported once and nothing connects."""
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "initialize"})
        message = ws.receive_json()

    assert message["type"] == "error"
    assert message["data"]["kind"] == "configuration"
    assert providers.created == []
    assert client.get("/health").json()["active_sessions"] == 0


def test_initialize_registers_session(client, providers, provider_keys):
    with client.websocket_connect("/ws") as ws:
        ws.send_json({"type": "initialize"})
        assert ws.receive_json() == {"type": "initialized", "data": {}}

        sessions = client.get("/sessions").json()
        assert len(sessions) == 1
        assert sessions[0]["turn"] == "IDLE"
        assert sessions[0]["history_length"] == 0

        ws.send_bytes(b"\x00\x00" * 160)
        ws.send_json({"type": "something_else"})
        ws.send_text("not json")
        ws.send_json({"type": "initialize"})

    assert client.get("/health").json()["active_sessions"] == 0
    assert providers.stt.closed
    assert providers.tts.closed
