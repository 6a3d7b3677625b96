from __future__ import annotations

from dataclasses import dataclass
import hashlib
import hmac
import json
from typing import Any, Mapping


HEADER_SIGNATURE = "X-Webhook-Signature"
HEADER_EVENT = "X-Webhook-Event"
HEADER_DELIVERY_ID = "X-Webhook-Id"
HEADER_TIMESTAMP = "X-Webhook-Timestamp"


@dataclass(frozen=True)
class ParsedSignature:
    # Keep parsed signature shape explicit so sender and receivers share one canonical schema.
    algorithm: str
    digest_hex: str


@dataclass(frozen=True)
class VerificationResult:
    ok: bool
    reason: str
    payload_sha256: str


def serialize_payload(payload: dict[str, Any]) -> bytes:
    # Serialize deterministically so signatures stay stable across retries.
    return json.dumps(payload, sort_keys=True, separators=(",", ":"), ensure_ascii=False).encode("utf-8")


def compute_hmac_sha256_hex(secret: str, raw_body: bytes) -> str:
    # Compute HMAC over raw bytes only so signatures remain canonical across sender and receivers.
    return hmac.new(secret.encode("utf-8"), raw_body, hashlib.sha256).hexdigest()


def compute_signature(raw_body: bytes, secret: str) -> str:
    return f"sha256={compute_hmac_sha256_hex(secret, raw_body)}"


def payload_sha256(raw_body: bytes) -> str:
    return hashlib.sha256(raw_body).hexdigest()


def parse_signature(header_value: str) -> ParsedSignature:
    # Parse `sha256=<hex>` signatures strictly so malformed values are rejected deterministically.
    algorithm, separator, digest = header_value.strip().partition("=")
    if separator != "=":
        raise ValueError("invalid_signature_format")
    normalized_algorithm = algorithm.strip().lower()
    digest_hex = digest.strip().lower()
    if normalized_algorithm != "sha256" or len(digest_hex) != 64:
        raise ValueError("invalid_signature_format")
    try:
        int(digest_hex, 16)
    except ValueError as exc:
        raise ValueError("invalid_signature_format") from exc
    return ParsedSignature(algorithm=normalized_algorithm, digest_hex=digest_hex)


def verify_signature(headers: Mapping[str, str], raw_body: bytes, secret: str) -> VerificationResult:
    """Check a received webhook against the subscriber's shared secret.

    Shipped for subscribers and tests; the dispatcher only signs.
    """
    digest = payload_sha256(raw_body)
    normalized = {str(key).lower(): str(value) for key, value in headers.items()}
    signature_header = normalized.get(HEADER_SIGNATURE.lower())
    if not signature_header:
        return VerificationResult(ok=False, reason="missing_signature", payload_sha256=digest)
    try:
        parsed = parse_signature(signature_header)
    except ValueError:
        return VerificationResult(ok=False, reason="invalid_signature_format", payload_sha256=digest)
    expected_hex = compute_hmac_sha256_hex(secret, raw_body)
    if not hmac.compare_digest(expected_hex, parsed.digest_hex):
        return VerificationResult(ok=False, reason="signature_mismatch", payload_sha256=digest)
    return VerificationResult(ok=True, reason="ok", payload_sha256=digest)
