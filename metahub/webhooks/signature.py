"""
Webhook authenticity checks.

Two signed forms arrive from Meta:

* ``X-Hub-Signature-256: sha256=<hex>`` over the raw POST body (webhooks).
* ``<b64url signature>.<b64url payload>`` signed requests (deauthorize and
  data-deletion callbacks).

Both return a :class:`VerificationResult`; neither raises for a bad input.
The subscription handshake is a separate GET check.
"""
from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
from dataclasses import dataclass
from typing import Any

from metahub.errors import InvalidPayload, InvalidSignature, MalformedToken, VerificationError

SIGNATURE_PREFIX = "sha256="


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    payload: Any = None
    error: VerificationError | None = None

    @classmethod
    def failure(cls, error: VerificationError) -> "VerificationResult":
        return cls(ok=False, error=error)


@dataclass(frozen=True)
class HandshakeResult:
    status_code: int
    body: str


def _b64url_decode(segment: str) -> bytes:
    padded = segment + "=" * (-len(segment) % 4)
    return base64.urlsafe_b64decode(padded.encode("ascii"))


def _b64url_encode(raw: bytes) -> str:
    return base64.urlsafe_b64encode(raw).rstrip(b"=").decode("ascii")


def _hmac_sha256(secret: str, message: bytes) -> bytes:
    return hmac.new(secret.encode("utf-8"), message, hashlib.sha256).digest()


def _parse_json(raw: bytes) -> VerificationResult:
    try:
        payload = json.loads(raw)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return VerificationResult.failure(InvalidPayload("body is not valid JSON"))
    if not isinstance(payload, (dict, list)):
        return VerificationResult.failure(InvalidPayload("body is not a JSON object"))
    return VerificationResult(ok=True, payload=payload)


def verify(raw_body: bytes, signature_header: str | None, app_secret: str) -> VerificationResult:
    """Check the ``X-Hub-Signature-256`` header against the raw request body."""
    if not app_secret:
        return VerificationResult.failure(InvalidSignature("app secret is not configured"))
    if not signature_header or not signature_header.startswith(SIGNATURE_PREFIX):
        return VerificationResult.failure(MalformedToken("missing sha256= signature header"))

    provided = signature_header[len(SIGNATURE_PREFIX):].strip().lower().encode("utf-8")
    expected = _hmac_sha256(app_secret, raw_body).hex().encode("ascii")
    if len(provided) != len(expected) or not hmac.compare_digest(provided, expected):
        return VerificationResult.failure(InvalidSignature("signature mismatch"))
    return _parse_json(raw_body)


def verify_signed_request(token: str, app_secret: str) -> VerificationResult:
    """Check a ``signature.payload`` token; the HMAC covers the payload segment as sent."""
    if not app_secret:
        return VerificationResult.failure(InvalidSignature("app secret is not configured"))
    segments = token.split(".") if token else []
    if len(segments) != 2 or not all(segments):
        return VerificationResult.failure(MalformedToken("expected exactly two segments"))

    encoded_sig, encoded_payload = segments
    try:
        provided = _b64url_decode(encoded_sig)
    except (binascii.Error, ValueError):
        return VerificationResult.failure(InvalidSignature("signature segment is not base64url"))

    expected = _hmac_sha256(app_secret, encoded_payload.encode("ascii", errors="replace"))
    if len(provided) != len(expected) or not hmac.compare_digest(provided, expected):
        return VerificationResult.failure(InvalidSignature("signature mismatch"))

    try:
        raw = _b64url_decode(encoded_payload)
    except (binascii.Error, ValueError):
        return VerificationResult.failure(InvalidPayload("payload segment is not base64url"))
    return _parse_json(raw)


def sign_request(payload: dict[str, Any], app_secret: str) -> str:
    """Build a signed request token. Used by tests and local tooling."""
    encoded_payload = _b64url_encode(json.dumps(payload, separators=(",", ":")).encode("utf-8"))
    signature = _hmac_sha256(app_secret, encoded_payload.encode("ascii"))
    return f"{_b64url_encode(signature)}.{encoded_payload}"


def sign_body(raw_body: bytes, app_secret: str) -> str:
    return SIGNATURE_PREFIX + _hmac_sha256(app_secret, raw_body).hex()


def verify_handshake(
    mode: str | None, verify_token: str | None, challenge: str | None, expected_token: str
) -> HandshakeResult:
    """Subscription GET: echo ``hub.challenge`` untouched or refuse."""
    if (
        mode == "subscribe"
        and expected_token
        and verify_token is not None
        and challenge is not None
        and hmac.compare_digest(verify_token.encode("utf-8"), expected_token.encode("utf-8"))
    ):
        return HandshakeResult(status_code=200, body=challenge)
    return HandshakeResult(status_code=403, body="Forbidden")
