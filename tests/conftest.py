"""Shared fixtures for Capture Trust tests."""

from __future__ import annotations

import datetime as dt

import pytest

from capturetrust.config import PipelineConfig
from capturetrust.pipeline import CapturePipeline
from capturetrust.provenance.signing import Ed25519ManifestSigner
from factories import APP_ID, AttestationAuthority, DeviceKey, FakeClock


@pytest.fixture(scope="session")
def authority():
    return AttestationAuthority(not_before=dt.datetime(2025, 1, 1, tzinfo=dt.UTC), days=3650)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def device_key():
    return DeviceKey()


@pytest.fixture
def config():
    return PipelineConfig(app_id=APP_ID)


@pytest.fixture
def signer():
    return Ed25519ManifestSigner.generate()


@pytest.fixture
def pipeline(config, signer, authority, clock):
    p = CapturePipeline(config, signer=signer, roots=[authority.root], clock=clock)
    yield p
    p.close()


@pytest.fixture
def registered(pipeline, authority, device_key):
    """A hardware-verified device registered with the pipeline."""
    challenge = pipeline.issue_challenge("test-client")
    outcome = pipeline.register_device(
        device_id="device-1",
        attestation=authority.attest(device_key, challenge.value),
        public_key=device_key.public_bytes,
        challenge=challenge.value,
        model="iPhone 15 Pro",
    )
    assert outcome.verified, outcome.reasons
    return outcome.device
