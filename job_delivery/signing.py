"""HMAC request signing for tenant callbacks."""

import hashlib
import hmac
import json
from typing import Any


def build_canonical_string(method: str, path: str, body: Any, timestamp: int) -> str:
    """
    Build the canonical string a callback signature covers.

    Example:
        build_canonical_string("POST", "/v1/callbacks/reward", {"userId": "123"}, 1640000000)
        # 'POST\\n/v1/callbacks/reward\\n{"userId":"123"}\\n1640000000'
    """
    return f"{method.upper()}\n{path}\n{serialize_body(body)}\n{timestamp}"


def serialize_body(body: Any) -> str:
    """Compact JSON form of a callback body; strings pass through unchanged."""
    if isinstance(body, str):
        return body
    return json.dumps(body, separators=(",", ":"), ensure_ascii=False)


def sign_request(secret: str, canonical: str) -> str:
    """Sign a canonical string with HMAC-SHA256, hex encoded."""
    return hmac.new(
        secret.encode("utf-8"), canonical.encode("utf-8"), hashlib.sha256
    ).hexdigest()


def verify_signature(secret: str, canonical: str, signature: str) -> bool:
    """Timing-safe signature check."""
    return hmac.compare_digest(sign_request(secret, canonical), signature)
