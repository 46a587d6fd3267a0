"""Request fingerprinting.

A fingerprint is the base64-encoded SHA-256 digest of the compact JSON form
of a request. Keys keep their insertion order, so callers must build requests
with a stable field order.
"""

from __future__ import annotations

import base64
import hashlib
import json
from typing import Any


def canonical_json(request: Any) -> str:
    """Serialise a request to the compact JSON text used for hashing and storage."""
    return json.dumps(request, separators=(",", ":"), ensure_ascii=False)


def fingerprint(request: Any) -> str:
    """Compute the fingerprint of a request.

    Args:
        request: JSON-serialisable request object (messages, temperature, ...).

    Returns:
        44-character base64 string (SHA-256 digest).

    Raises:
        TypeError: If the request is not JSON-serialisable.

    """
    digest = hashlib.sha256(canonical_json(request).encode("utf-8")).digest()
    return base64.b64encode(digest).decode("ascii")
