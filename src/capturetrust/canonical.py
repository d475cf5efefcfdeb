"""Canonical JSON for signed manifests.

The manifest signature covers these bytes, so any verifier re-serializing
the same content must get the same output: sorted keys, compact
separators, ASCII only, finite floats, arrays in order.
"""

from __future__ import annotations

import hashlib
import json
import math
from datetime import datetime
from enum import Enum
from typing import Any

import numpy as np


def to_canonical(obj: Any) -> Any:
    """Reduce evidence values to plain JSON types.

    Raises:
        ValueError: On NaN or infinite floats, or values with no JSON form
    """
    if obj is None or isinstance(obj, (bool, str)):
        return obj
    if isinstance(obj, Enum):
        return to_canonical(obj.value)
    if isinstance(obj, np.generic):
        return to_canonical(obj.item())
    if isinstance(obj, int):
        return obj
    if isinstance(obj, float):
        if not math.isfinite(obj):
            raise ValueError(f"Cannot canonicalize non-finite float: {obj}")
        return obj + 0.0  # -0.0 -> 0.0
    if isinstance(obj, bytes):
        return obj.hex()
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, dict):
        return {str(k): to_canonical(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple, np.ndarray)):
        return [to_canonical(item) for item in obj]
    if hasattr(obj, "to_dict"):
        return to_canonical(obj.to_dict())
    raise ValueError(f"Cannot canonicalize {type(obj).__name__}")


def canonical_json(data: Any) -> str:
    return json.dumps(
        to_canonical(data),
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=True,
        allow_nan=False,
    )


def canonical_bytes(data: Any) -> bytes:
    """The exact bytes a manifest signature covers."""
    return canonical_json(data).encode("ascii")


def canonical_hash(data: Any) -> str:
    return sha256_hex(canonical_bytes(data))


def sha256_hex(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()
