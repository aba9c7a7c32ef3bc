"""
Payload canonicalization and HMAC signing.

The signature covers the exact bytes that are POSTed, so receivers verify
against the raw request body.
"""
import json
import hmac
import hashlib


SIGNATURE_PREFIX = "sha256="


def canonical_json(payload: dict) -> str:
    """Serialize with sorted keys and compact separators."""
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def encode_body(payload: dict) -> bytes:
    """Canonical JSON as the UTF-8 bytes that go on the wire."""
    return canonical_json(payload).encode("utf-8")


def generate_webhook_signature(payload: str, secret: str) -> str:
    """Generate HMAC-SHA256 signature for webhook payload."""
    digest = hmac.new(
        secret.encode("utf-8"),
        payload.encode("utf-8"),
        hashlib.sha256
    ).hexdigest()
    return f"{SIGNATURE_PREFIX}{digest}"


def sign_payload(payload: dict, secret: str) -> tuple[str, str]:
    """Return (canonical body, signature) for a payload."""
    body = canonical_json(payload)
    return body, generate_webhook_signature(body, secret)


def verify_signature(body: str | bytes, secret: str, signature: str) -> bool:
    """Constant-time check of a received ``X-Signature`` header."""
    if isinstance(body, bytes):
        body = body.decode("utf-8")
    expected = generate_webhook_signature(body, secret)
    return hmac.compare_digest(expected, signature or "")
