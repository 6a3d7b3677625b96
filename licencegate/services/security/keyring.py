from __future__ import annotations

from base64 import urlsafe_b64encode
import hashlib
import secrets

from cryptography.fernet import Fernet, InvalidToken

from licencegate.core.config import get_settings


class KeyringConfigurationError(RuntimeError):
    """Raised when the webhook secret sealing key is missing or a sealed value cannot be opened."""


def _build_fernet() -> Fernet:
    # Never fall back to plaintext storage when the sealing key is absent.
    source = (get_settings().webhook_secret_key or "").strip()
    if not source:
        raise KeyringConfigurationError("WEBHOOK_SECRET_KEY is required to seal subscription secrets")
    digest = hashlib.sha256(source.encode("utf-8")).digest()
    return Fernet(urlsafe_b64encode(digest))


def generate_secret() -> str:
    return secrets.token_urlsafe(32)


def seal_secret(secret: str) -> str:
    # Normalize cryptography return types to a concrete string for persistence typing.
    token = _build_fernet().encrypt(secret.encode("utf-8"))
    return str(token.decode("utf-8"))


def unseal_secret(sealed: str) -> str:
    try:
        return _build_fernet().decrypt(sealed.encode("utf-8")).decode("utf-8")
    except InvalidToken as exc:
        raise KeyringConfigurationError("sealed secret could not be decrypted with the configured key") from exc
