import pytest
from fastapi.testclient import TestClient

from proof_vault import __version__
from proof_vault.config import load_settings
from proof_vault.core.database import SQLiteProofIndex
from proof_vault.main import create_app
from proof_vault.services.engine import ProofEngine
from tests.conftest import FIXED_TIME, FailingIndex


def make_client(engine, raise_server_exceptions=True, **overrides):
    settings = load_settings(**overrides)
    app = create_app(settings=settings, engine=engine)
    return TestClient(app, raise_server_exceptions=raise_server_exceptions)


@pytest.fixture
def client(engine):
    with make_client(engine) as c:
        yield c


def upload(data, name="image.png"):
    return {"image": (name, data, "image/png")}


def test_root(client):
    response = client.get("/")
    assert response.status_code == 200
    assert response.json()["version"] == __version__
    assert "/api/generate" in response.json()["endpoints"]


def test_generate_returns_proof(client, image_a):
    response = client.post("/api/generate", files=upload(image_a))

    assert response.status_code == 200
    assert response.json() == {
        "description": "a red circle",
        "model": "provider-x",
        "timestamp": FIXED_TIME,
        "address": "mem://1",
    }


def test_generate_accepts_model_field(client, provider, image_a):
    response = client.post("/api/generate", files=upload(image_a), data={"model": "x"})
    assert response.status_code == 200
    assert provider.calls == 1


def test_generate_then_verify(client, image_a):
    generated = client.post("/api/generate", files=upload(image_a)).json()
    response = client.post("/api/verify", files=upload(image_a))

    assert response.status_code == 200
    assert response.json() == {
        "valid": True,
        "address": generated["address"],
        "description": generated["description"],
        "model": generated["model"],
        "timestamp": generated["timestamp"],
    }


def test_verify_without_proof(client, image_b):
    response = client.post("/api/verify", files=upload(image_b))
    assert response.status_code == 200
    assert response.json() == {"valid": False, "reason": "no_proof_found"}


def test_verify_with_unreachable_store(client, store, image_a, store_unavailable):
    generated = client.post("/api/generate", files=upload(image_a)).json()
    store.get_error = store_unavailable

    response = client.post("/api/verify", files=upload(image_a))

    assert response.status_code == 200
    assert response.json() == {
        "valid": True,
        "caveat": "record_unavailable",
        "address": generated["address"],
    }


def test_verify_with_tampered_record(client, store, image_a):
    generated = client.post("/api/generate", files=upload(image_a)).json()
    store.blobs[generated["address"]] = b"tampered"

    response = client.post("/api/verify", files=upload(image_a))
    assert response.json() == {"valid": False, "reason": "hash_mismatch"}


@pytest.mark.parametrize("path", ["/api/generate", "/api/verify"])
def test_missing_image_is_bad_request(client, path):
    response = client.post(path, data={"model": "x"})

    assert response.status_code == 400
    assert response.json()["error"] == "input_error"


def test_unsupported_model_is_server_error(client, provider, store, image_a):
    response = client.post("/api/generate", files=upload(image_a), data={"model": "dall-e"})

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "unsupported_provider"
    assert body["message"] == "Unsupported model: dall-e"
    assert provider.calls == 0
    assert store.put_calls == 0


def test_provider_failure_is_server_error(client, provider, store, image_a, provider_failure):
    provider.error = provider_failure

    response = client.post("/api/generate", files=upload(image_a))

    assert response.status_code == 500
    assert response.json()["error"] == "provider_failure"
    assert response.json()["details"] == {"backend": "provider-x"}
    assert store.put_calls == 0


def test_store_failure_is_server_error(client, store, image_a, store_unavailable):
    store.put_error = store_unavailable

    response = client.post("/api/generate", files=upload(image_a))

    assert response.status_code == 500
    assert response.json()["error"] == "store_unavailable"


def test_index_failure_reports_address(tmp_path, registry, store, image_a):
    index = FailingIndex(tmp_path / "vault.db")
    index.initialize()
    engine = ProofEngine(index, registry, store, default_provider="provider-x", clock=lambda: FIXED_TIME)

    with make_client(engine) as c:
        response = c.post("/api/generate", files=upload(image_a))

    assert response.status_code == 500
    body = response.json()
    assert body["error"] == "index_persist_failure"
    assert body["details"]["address"] == "mem://1"


def test_oversized_upload_is_rejected(engine, provider, image_a):
    with make_client(engine, MAX_FILE_SIZE=16) as c:
        response = c.post("/api/generate", files=upload(image_a))

    assert response.status_code == 413
    assert response.json() == {
        "error": "payload_too_large",
        "message": "File size exceeds maximum allowed size of 16 bytes",
        "details": {"max_size": 16},
    }
    assert provider.calls == 0


def test_unexpected_error_is_opaque(engine, store, image_a):
    store.put_error = RuntimeError("secret internals")

    with make_client(engine, raise_server_exceptions=False) as c:
        response = c.post("/api/generate", files=upload(image_a))

    assert response.status_code == 500
    assert response.json() == {
        "error": "internal_server_error",
        "message": "An unexpected error occurred",
    }


def test_health(client):
    response = client.get("/health")

    assert response.status_code == 200
    body = response.json()
    assert body["status"] == "healthy"
    assert body["components"]["index"] == "healthy"
    assert body["components"]["providers"] == ["provider-x"]
    assert body["components"]["default_provider"] == "provider-x"


def test_verify_with_broken_index_is_opaque(tmp_path, registry, store, image_a):
    # Never initialized, so every lookup fails inside SQLite
    index = SQLiteProofIndex(tmp_path / "vault.db")
    engine = ProofEngine(index, registry, store, default_provider="provider-x")

    with make_client(engine) as c:
        response = c.post("/api/verify", files=upload(image_a))

    assert response.status_code == 500
    assert response.json() == {
        "error": "internal_server_error",
        "message": "An unexpected error occurred",
    }
    assert "vault" not in response.text
    assert store.get_calls == 0
