"""Embedding signed manifests into media containers.

The container is this service's own format, not C2PA: a COSE_Sign1 message
in a JUMBF superbox (ISO/IEC 19566-5) labelled ``capturetrust``.

- JPEG: APP11 segments (JPEG XT packetisation) inserted right after SOI
- PNG: a private ``ctMF`` chunk inserted before the first IDAT

Pixel data is never touched: stripping the inserted segments returns the
original bytes exactly. Other formats, and media that already carry a JUMBF
container, are left unchanged and the manifest is delivered as a sidecar.
"""

from __future__ import annotations

import struct
import zlib
from dataclasses import dataclass

from capturetrust.errors import ManifestError

JPEG_SOI = b"\xff\xd8"
JPEG_APP11 = 0xEB
JPEG_SOS = 0xDA
JPEG_XT_CI = b"JP"
JPEG_MAX_SEGMENT = 0xFFFF
PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
PNG_MANIFEST_CHUNK = b"ctMF"

# JUMBF description box content types
STORE_UUID = bytes.fromhex("6374737400110010800000aa00389b71")  # "ctst"
MANIFEST_UUID = bytes.fromhex("63746d6600110010800000aa00389b71")  # "ctmf"
CBOR_CONTENT_UUID = bytes.fromhex("63626f7200110010800000aa00389b71")
STORE_LABEL = "capturetrust"
SIGNATURE_LABEL = "capturetrust.signature"
_TOGGLES_REQUESTABLE_LABEL = 0x03


@dataclass(frozen=True)
class ExtractedManifest:
    """Manifest bytes and the media with the manifest removed."""

    cose: bytes
    original: bytes
    label: str


def detect_format(media: bytes) -> str:
    if media.startswith(JPEG_SOI):
        return "image/jpeg"
    if media.startswith(PNG_SIGNATURE):
        return "image/png"
    return "application/octet-stream"


# JUMBF boxes

def _box(box_type: bytes, payload: bytes) -> bytes:
    return struct.pack(">I", 8 + len(payload)) + box_type + payload


def _description(content_type: bytes, label: str) -> bytes:
    return _box(b"jumd", content_type + bytes([_TOGGLES_REQUESTABLE_LABEL]) + label.encode("utf-8") + b"\x00")


def build_jumbf(cose: bytes, manifest_label: str) -> bytes:
    """Wrap COSE bytes in a manifest-store superbox."""
    content = _box(b"jumb", _description(CBOR_CONTENT_UUID, SIGNATURE_LABEL) + _box(b"cbor", cose))
    manifest = _box(b"jumb", _description(MANIFEST_UUID, manifest_label) + content)
    return _box(b"jumb", _description(STORE_UUID, STORE_LABEL) + manifest)


def _iter_boxes(data: bytes):
    offset = 0
    while offset < len(data):
        if offset + 8 > len(data):
            raise ManifestError("Truncated JUMBF box header")
        (size,) = struct.unpack(">I", data[offset:offset + 4])
        box_type = data[offset + 4:offset + 8]
        if size < 8 or offset + size > len(data):
            raise ManifestError(f"Invalid JUMBF box size {size}")
        yield box_type, data[offset + 8:offset + size]
        offset += size


def _label(jumd_payload: bytes) -> str:
    if len(jumd_payload) < 17:
        raise ManifestError("Truncated JUMBF description box")
    toggles = jumd_payload[16]
    if not toggles & 0x02:
        return ""
    end = jumd_payload.find(b"\x00", 17)
    if end < 0:
        raise ManifestError("Unterminated JUMBF label")
    return jumd_payload[17:end].decode("utf-8", errors="replace")


def parse_jumbf(data: bytes) -> tuple[str, bytes]:
    """Return (manifest label, COSE bytes) from a manifest-store superbox."""
    boxes = list(_iter_boxes(data))
    if len(boxes) != 1 or boxes[0][0] != b"jumb":
        raise ManifestError("Expected a single JUMBF superbox")
    children = list(_iter_boxes(boxes[0][1]))
    if not children or children[0][0] != b"jumd" or _label(children[0][1]) != STORE_LABEL:
        raise ManifestError("JUMBF superbox is not a capturetrust manifest store")

    for box_type, payload in children[1:]:
        if box_type != b"jumb":
            continue
        manifest_children = list(_iter_boxes(payload))
        if not manifest_children or manifest_children[0][0] != b"jumd":
            continue
        manifest_label = _label(manifest_children[0][1])
        for inner_type, inner in manifest_children[1:]:
            if inner_type != b"jumb":
                continue
            for leaf_type, leaf in _iter_boxes(inner):
                if leaf_type == b"cbor":
                    return manifest_label, leaf
    raise ManifestError("No signed manifest found in manifest store")


# JPEG

def _jpeg_segments(media: bytes):
    """Yield (marker, start, end) for header segments up to SOS."""
    offset = 2
    while offset + 4 <= len(media):
        if media[offset] != 0xFF:
            raise ManifestError(f"Invalid JPEG marker at offset {offset}")
        marker = media[offset + 1]
        if marker == 0xFF:
            offset += 1
            continue
        if marker == 0x01 or 0xD0 <= marker <= 0xD7:
            yield marker, offset, offset + 2
            offset += 2
            continue
        (length,) = struct.unpack(">H", media[offset + 2:offset + 4])
        end = offset + 2 + length
        if length < 2 or end > len(media):
            raise ManifestError(f"Invalid JPEG segment length at offset {offset}")
        yield marker, offset, end
        if marker == JPEG_SOS:
            return
        offset = end


def _jpeg_manifest_segments(media: bytes) -> list[tuple[int, int, int, int, bytes]]:
    """APP11 JPEG XT segments as (start, end, En, Z, payload)."""
    found = []
    for marker, start, end in _jpeg_segments(media):
        if marker != JPEG_APP11:
            continue
        body = media[start + 4:end]
        if len(body) < 8 or body[:2] != JPEG_XT_CI:
            continue
        (instance,) = struct.unpack(">H", body[2:4])
        (sequence,) = struct.unpack(">I", body[4:8])
        found.append((start, end, instance, sequence, body[8:]))
    return found


def embed_jpeg(media: bytes, jumbf: bytes, instance: int = 1) -> bytes:
    if not media.startswith(JPEG_SOI):
        raise ManifestError("Not a JPEG")
    if _jpeg_manifest_segments(media):
        raise ManifestError("JPEG already carries a JUMBF manifest")

    header, body = jumbf[:8], jumbf[8:]
    # Lp(2) + CI(2) + En(2) + Z(4)
    first_room = JPEG_MAX_SEGMENT - 10
    next_room = first_room - len(header)

    chunks = [jumbf[:first_room]]
    rest = body[first_room - len(header):]
    while rest:
        chunks.append(header + rest[:next_room])
        rest = rest[next_room:]

    segments = bytearray()
    for sequence, chunk in enumerate(chunks, start=1):
        payload = JPEG_XT_CI + struct.pack(">HI", instance, sequence) + chunk
        segments += bytes([0xFF, JPEG_APP11]) + struct.pack(">H", len(payload) + 2) + payload
    return media[:2] + bytes(segments) + media[2:]


def extract_jpeg(media: bytes) -> tuple[bytes, bytes]:
    """Return (JUMBF bytes, original JPEG)."""
    segments = _jpeg_manifest_segments(media)
    if not segments:
        raise ManifestError("JPEG carries no JUMBF manifest")
    instance = segments[0][2]
    ours = sorted((s for s in segments if s[2] == instance), key=lambda s: s[3])

    jumbf = bytearray(ours[0][4])
    for _, _, _, _, payload in ours[1:]:
        jumbf += payload[8:]

    original = bytearray()
    cursor = 0
    for start, end, _, _, _ in sorted(ours):
        original += media[cursor:start]
        cursor = end
    original += media[cursor:]
    return bytes(jumbf), bytes(original)


# PNG

def _png_chunks(media: bytes):
    offset = len(PNG_SIGNATURE)
    while offset < len(media):
        if offset + 12 > len(media):
            raise ManifestError("Truncated PNG chunk")
        (length,) = struct.unpack(">I", media[offset:offset + 4])
        chunk_type = media[offset + 4:offset + 8]
        end = offset + 12 + length
        if end > len(media):
            raise ManifestError("Truncated PNG chunk data")
        yield chunk_type, offset, end
        offset = end


def embed_png(media: bytes, jumbf: bytes) -> bytes:
    if not media.startswith(PNG_SIGNATURE):
        raise ManifestError("Not a PNG")
    insert_at = None
    for chunk_type, start, _ in _png_chunks(media):
        if chunk_type == PNG_MANIFEST_CHUNK:
            raise ManifestError("PNG already carries a ctMF manifest")
        if chunk_type == b"IDAT" and insert_at is None:
            insert_at = start
    if insert_at is None:
        raise ManifestError("PNG has no IDAT chunk")
    crc = zlib.crc32(PNG_MANIFEST_CHUNK + jumbf) & 0xFFFFFFFF
    chunk = struct.pack(">I", len(jumbf)) + PNG_MANIFEST_CHUNK + jumbf + struct.pack(">I", crc)
    return media[:insert_at] + chunk + media[insert_at:]


def extract_png(media: bytes) -> tuple[bytes, bytes]:
    for chunk_type, start, end in _png_chunks(media):
        if chunk_type == PNG_MANIFEST_CHUNK:
            data = media[start + 8:end - 4]
            (crc,) = struct.unpack(">I", media[end - 4:end])
            if zlib.crc32(PNG_MANIFEST_CHUNK + data) & 0xFFFFFFFF != crc:
                raise ManifestError("ctMF chunk CRC mismatch")
            return data, media[:start] + media[end:]
    raise ManifestError("PNG carries no ctMF manifest")


def has_manifest_container(media: bytes) -> bool:
    """Whether the media already holds a JUMBF container we would collide with."""
    fmt = detect_format(media)
    if fmt == "image/jpeg":
        return bool(_jpeg_manifest_segments(media))
    if fmt == "image/png":
        return any(chunk_type == PNG_MANIFEST_CHUNK for chunk_type, _, _ in _png_chunks(media))
    return False


def embed_manifest(media: bytes, cose: bytes, manifest_label: str) -> tuple[bytes, bool]:
    """Embed a signed manifest.

    Returns:
        (media bytes, embedded flag); unsupported formats and media already
        carrying a JUMBF container come back unchanged
    """
    if has_manifest_container(media):
        return media, False
    jumbf = build_jumbf(cose, manifest_label)
    fmt = detect_format(media)
    if fmt == "image/jpeg":
        return embed_jpeg(media, jumbf), True
    if fmt == "image/png":
        return embed_png(media, jumbf), True
    return media, False


def extract_manifest(media: bytes) -> ExtractedManifest:
    """Recover the signed manifest and the original media bytes.

    Raises:
        ManifestError: If the media carries no readable manifest
    """
    fmt = detect_format(media)
    if fmt == "image/jpeg":
        jumbf, original = extract_jpeg(media)
    elif fmt == "image/png":
        jumbf, original = extract_png(media)
    else:
        raise ManifestError(f"Unsupported media format for embedded manifests: {fmt}")
    label, cose = parse_jumbf(jumbf)
    return ExtractedManifest(cose=cose, original=original, label=label)
