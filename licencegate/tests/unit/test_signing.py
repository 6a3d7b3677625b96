from __future__ import annotations

import pytest

from licencegate.core.config import get_settings
from licencegate.services.notifications.signing import (
    HEADER_SIGNATURE,
    compute_signature,
    parse_signature,
    serialize_payload,
    verify_signature,
)
from licencegate.services.security.keyring import (
    KeyringConfigurationError,
    generate_secret,
    seal_secret,
    unseal_secret,
)


def test_signature_verifies_against_raw_body() -> None:
    body = serialize_payload({"status": "Pending", "event_type": "ComplianceStatusChanged"})
    headers = {HEADER_SIGNATURE: compute_signature(body, "shared-secret")}

    assert verify_signature(headers, body, "shared-secret").ok
    assert verify_signature(headers, body, "other-secret").reason == "signature_mismatch"
    assert verify_signature(headers, body + b" ", "shared-secret").reason == "signature_mismatch"


def test_header_lookup_is_case_insensitive() -> None:
    body = b"{}"
    headers = {HEADER_SIGNATURE.lower(): compute_signature(body, "s")}
    assert verify_signature(headers, body, "s").ok


def test_missing_and_malformed_signatures() -> None:
    assert verify_signature({}, b"{}", "s").reason == "missing_signature"
    assert verify_signature({HEADER_SIGNATURE: "md5=abc"}, b"{}", "s").reason == "invalid_signature_format"
    with pytest.raises(ValueError):
        parse_signature("sha256")


def test_serialization_is_key_order_independent() -> None:
    assert serialize_payload({"b": 1, "a": 2}) == serialize_payload({"a": 2, "b": 1})


def test_sealed_secret_round_trips() -> None:
    secret = generate_secret()
    sealed = seal_secret(secret)
    assert sealed != secret
    assert unseal_secret(sealed) == secret


def test_unseal_with_wrong_key_fails(monkeypatch) -> None:
    sealed = seal_secret("abc")
    monkeypatch.setattr(get_settings(), "webhook_secret_key", "rotated-key")
    with pytest.raises(KeyringConfigurationError):
        unseal_secret(sealed)


def test_empty_key_is_rejected(monkeypatch) -> None:
    monkeypatch.setattr(get_settings(), "webhook_secret_key", "")
    with pytest.raises(KeyringConfigurationError):
        seal_secret("abc")
