"""Signed provenance manifests (COSE_Sign1 over Ed25519 in a JUMBF container).

Provides manifest generation from evidence packages, signing behind a
replaceable signer interface, embedding into JPEG/PNG containers and
verification of embedded or sidecar manifests.
"""

from __future__ import annotations

from capturetrust.provenance.embed import embed_manifest, extract_manifest
from capturetrust.provenance.manifest import CaptureManifest, ManifestBuilder
from capturetrust.provenance.signing import (
    Ed25519ManifestSigner,
    ManifestSigner,
    SigningError,
    sign_cose,
)
from capturetrust.provenance.verifier import ManifestVerificationResult, ManifestVerifier

__all__ = [
    "CaptureManifest",
    "Ed25519ManifestSigner",
    "ManifestBuilder",
    "ManifestSigner",
    "ManifestVerificationResult",
    "ManifestVerifier",
    "SigningError",
    "embed_manifest",
    "extract_manifest",
    "sign_cose",
]
