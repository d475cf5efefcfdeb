"""Tests for the Capture Trust server."""

from __future__ import annotations

import asyncio
import base64
import datetime as dt
import hashlib
import json

import numpy as np
import pytest
from fastapi.testclient import TestClient

from capturetrust.server import DEVICE_HEADER, SIGNATURE_HEADER, TIMESTAMP_HEADER, create_app
from factories import AttestationAuthority, DeviceKey, depth_bytes, layered_scene, sample_jpeg


def _b64(data: bytes) -> str:
    return base64.b64encode(data).decode("ascii")


@pytest.fixture
def client(pipeline):
    """Create a test client around the shared pipeline."""
    return TestClient(create_app(pipeline=pipeline))


def _capture_request(key: DeviceKey, clock, counter: int, device_id: str = "device-1", media: bytes | None = None):
    media = media or sample_jpeg()
    captured_at = clock.now - dt.timedelta(seconds=5)
    depth, color = layered_scene()
    pixels = np.clip(np.rint(color), 0, 255).astype(np.uint8)
    payload = {
        "media": _b64(media),
        "captured_at": captured_at.isoformat(),
        "device_model": "iPhone 15 Pro",
        "location": {"latitude": 37.33, "longitude": -122.03, "accuracy_m": 8.0},
        "assertion": _b64(key.sign_capture(hashlib.sha256(media).hexdigest(), captured_at)),
        "depth_map": _b64(depth_bytes(depth, compress=True)),
        "depth_width": 64,
        "depth_height": 64,
        "color_image": _b64(pixels.tobytes()),
        "color_width": 64,
        "color_height": 64,
    }
    raw = json.dumps(payload).encode()
    timestamp = clock.ms
    signature = key.sign_request(timestamp, hashlib.sha256(raw).hexdigest(), counter)
    headers = {
        DEVICE_HEADER: device_id,
        TIMESTAMP_HEADER: str(timestamp),
        SIGNATURE_HEADER: _b64(signature),
        "Content-Type": "application/json",
    }
    return raw, headers


def test_health_endpoint(client):
    """Test the health check endpoint."""
    response = client.get("/health")
    assert response.status_code == 200

    data = response.json()
    assert data["status"] == "healthy"
    assert "version" in data
    assert "timestamp" in data


def test_security_headers(client):
    response = client.get("/health", headers={"X-Request-ID": "trace-1"})
    assert response.headers["X-Request-ID"] == "trace-1"
    assert response.headers["X-Content-Type-Options"] == "nosniff"
    assert "X-Request-Duration-ms" in response.headers


def test_challenge_endpoint(client):
    response = client.post("/api/v1/devices/challenge", json={"client_id": "phone"})
    assert response.status_code == 200
    assert len(bytes.fromhex(response.json()["challenge"])) == 32


def test_challenge_rate_limited(client):
    for _ in range(10):
        assert client.post("/api/v1/devices/challenge", json={"client_id": "busy"}).status_code == 200
    response = client.post("/api/v1/devices/challenge", json={"client_id": "busy"})
    assert response.status_code == 429
    assert response.headers["Retry-After"] == "60"
    assert response.json()["error"]["code"] == "CHALLENGE_RATE_LIMITED"


def test_register_device(client, authority):
    key = DeviceKey()
    challenge = client.post("/api/v1/devices/challenge", json={"client_id": "phone"}).json()["challenge"]
    response = client.post(
        "/api/v1/devices/register",
        json={
            "device_id": "device-9",
            "attestation": _b64(authority.attest(key, bytes.fromhex(challenge))),
            "public_key": _b64(key.public_bytes),
            "challenge": challenge,
            "model": "iPhone 15 Pro",
        },
    )
    assert response.status_code == 200
    assert response.json() == {"device_id": "device-9", "attestation_level": "hardware_verified", "reasons": []}


def test_registration_runs_off_event_loop(client, pipeline, authority, monkeypatch):
    """Test that challenge and registration store work happens on worker threads."""
    on_loop = []

    def recording(func):
        def wrapper(*args, **kwargs):
            try:
                asyncio.get_running_loop()
                on_loop.append(True)
            except RuntimeError:
                on_loop.append(False)
            return func(*args, **kwargs)

        return wrapper

    monkeypatch.setattr(pipeline, "issue_challenge", recording(pipeline.issue_challenge))
    monkeypatch.setattr(pipeline, "register_device", recording(pipeline.register_device))
    key = DeviceKey()
    challenge = client.post("/api/v1/devices/challenge", json={"client_id": "phone"}).json()["challenge"]
    response = client.post(
        "/api/v1/devices/register",
        json={
            "device_id": "device-8",
            "attestation": _b64(authority.attest(key, bytes.fromhex(challenge))),
            "public_key": _b64(key.public_bytes),
            "challenge": challenge,
        },
    )
    assert response.status_code == 200
    assert on_loop == [False, False]


def test_register_malformed_attestation(client):
    key = DeviceKey()
    challenge = client.post("/api/v1/devices/challenge", json={}).json()["challenge"]
    response = client.post(
        "/api/v1/devices/register",
        json={
            "device_id": "device-9",
            "attestation": _b64(b"garbage"),
            "public_key": _b64(key.public_bytes),
            "challenge": challenge,
        },
    )
    assert response.status_code == 400
    error = response.json()["error"]
    assert error["code"] == "ATTESTATION_MALFORMED"
    assert error["category"] == "validation"


def test_register_existing_device_requires_verified_attestation(client, registered, device_key):
    intruder = DeviceKey()
    rogue = AttestationAuthority()
    challenge = client.post("/api/v1/devices/challenge", json={}).json()["challenge"]
    response = client.post(
        "/api/v1/devices/register",
        json={
            "device_id": "device-1",
            "attestation": _b64(rogue.attest(intruder, bytes.fromhex(challenge))),
            "public_key": _b64(intruder.public_bytes),
            "challenge": challenge,
        },
    )
    assert response.status_code == 409
    error = response.json()["error"]
    assert error["code"] == "DEVICE_ALREADY_REGISTERED"
    assert error["category"] == "conflict"


def test_register_missing_fields(client):
    response = client.post("/api/v1/devices/register", json={"device_id": "x"})
    assert response.status_code == 422
    assert response.json()["success"] is False


def test_capture_endpoint(client, registered, device_key, clock):
    raw, headers = _capture_request(device_key, clock, 1)
    response = client.post("/api/v1/captures", content=raw, headers=headers)
    assert response.status_code == 200

    data = response.json()
    assert data["confidence"] == "high"
    assert data["device_id"] == "device-1"
    assert data["embedded"] is True
    assert data["evidence"]["metadata"]["metrics"]["location"] == "supplied"
    assert data["evidence"]["metadata"]["metrics"]["location_coarse"] == [37.33, -122.03]
    assert data["manifest_cose"]
    assert data["request_id"] == response.headers["X-Request-ID"]

    verify = client.post("/api/v1/verify", json={"media": data["media"]})
    assert verify.status_code == 200
    assert verify.json()["valid"] is True


def test_capture_unknown_device(client, clock):
    raw, headers = _capture_request(DeviceKey(), clock, 1, device_id="nobody")
    response = client.post("/api/v1/captures", content=raw, headers=headers)
    assert response.status_code == 404
    error = response.json()["error"]
    assert error["code"] == "AUTH_UNKNOWN_DEVICE"
    assert error["category"] == "not_found"


def test_capture_bad_signature(client, registered, clock):
    raw, headers = _capture_request(DeviceKey(), clock, 1)
    response = client.post("/api/v1/captures", content=raw, headers=headers)
    assert response.status_code == 401
    assert response.json()["error"]["code"] == "AUTH_INVALID_SIGNATURE"


def test_capture_body_tampering(client, registered, device_key, clock):
    raw, headers = _capture_request(device_key, clock, 1)
    tampered = raw.replace(b'"iPhone 15 Pro"', b'"iPhone 16 Pro"')
    response = client.post("/api/v1/captures", content=tampered, headers=headers)
    assert response.status_code == 401


def test_capture_expired(client, registered, device_key, clock):
    raw, headers = _capture_request(device_key, clock, 1)
    clock.advance(301)
    response = client.post("/api/v1/captures", content=raw, headers=headers)
    assert response.status_code == 401
    error = response.json()["error"]
    assert error["code"] == "AUTH_EXPIRED"
    assert error["details"]["delta_ms"] == 301_000


def test_capture_replay(client, registered, device_key, clock):
    raw, headers = _capture_request(device_key, clock, 1)
    assert client.post("/api/v1/captures", content=raw, headers=headers).status_code == 200
    response = client.post("/api/v1/captures", content=raw, headers=headers)
    assert response.status_code == 409
    assert response.json()["error"]["code"] == "AUTH_REPLAY_DETECTED"


def test_capture_missing_headers(client, registered):
    response = client.post("/api/v1/captures", content=b"{}", headers={"Content-Type": "application/json"})
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "SUBMISSION_MALFORMED"


def test_capture_invalid_body(client, registered, device_key, clock):
    raw = b'{"media": "!!!", "captured_at": "yesterday"}'
    timestamp = clock.ms
    headers = {
        DEVICE_HEADER: "device-1",
        TIMESTAMP_HEADER: str(timestamp),
        SIGNATURE_HEADER: _b64(device_key.sign_request(timestamp, hashlib.sha256(raw).hexdigest(), 1)),
    }
    response = client.post("/api/v1/captures", content=raw, headers=headers)
    assert response.status_code == 400
    assert response.json()["error"]["code"] == "SUBMISSION_MALFORMED"


def test_verify_sidecar_manifest(client, registered, device_key, clock):
    media = sample_jpeg()
    raw, headers = _capture_request(device_key, clock, 1, media=media)
    data = client.post("/api/v1/captures", content=raw, headers=headers).json()

    response = client.post("/api/v1/verify", json={"manifest": data["manifest_cose"], "media": _b64(media)})
    assert response.json()["valid"] is True

    response = client.post(
        "/api/v1/verify",
        json={"manifest": data["manifest_cose"], "media_sha256": hashlib.sha256(b"other").hexdigest()},
    )
    result = response.json()
    assert result["valid"] is False
    assert result["hash_valid"] is False


def test_verify_requires_input(client):
    response = client.post("/api/v1/verify", json={})
    assert response.status_code == 400
    assert response.json()["error"]["category"] == "validation"
