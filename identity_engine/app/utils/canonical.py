"""
Canonical serialization and hashing.

Canonicalization occurs here and nowhere else: the DID Issuer signs the
bytes returned by `canonicalize`, and third parties verifying a credential
must reproduce them exactly.
"""

from __future__ import annotations

import hashlib
import json
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Union


def _canonical_json_default(obj: Any) -> str:
    if isinstance(obj, datetime):
        return obj.isoformat()
    if isinstance(obj, date):
        return obj.isoformat()
    if isinstance(obj, Enum):
        return str(obj.value)
    raise TypeError(
        f"Object of type {obj.__class__.__name__} is not JSON serializable"
    )


def canonicalize(payload: Dict[str, Any]) -> bytes:
    """
    Deterministic JSON canonicalization (RFC 8785-style key ordering and
    separators). Full numeric normalization is not attempted.
    """
    return json.dumps(
        payload,
        sort_keys=True,
        ensure_ascii=False,
        separators=(",", ":"),
        default=_canonical_json_default,
    ).encode("utf-8")


def compute_sha256(data: Union[bytes, bytearray, str]) -> str:
    """Compute SHA-256 hex digest for the given bytes."""
    if isinstance(data, str):
        data = data.encode("utf-8")
    if not isinstance(data, (bytes, bytearray)):
        raise TypeError(
            "compute_sha256 expects bytes or str, "
            f"got {type(data).__name__}"
        )
    return hashlib.sha256(data).hexdigest()
