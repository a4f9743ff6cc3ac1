"""Fernet helpers for data-source connection params at rest."""

from __future__ import annotations

import json
from typing import Any

from cryptography.fernet import Fernet, InvalidToken

from datasource_hub.utils.config import SECRET_KEY_ENV, get_secret_key


class EncryptionError(Exception):
    pass


def get_fernet() -> Fernet:
    key = get_secret_key()
    if not key:
        raise EncryptionError(f"{SECRET_KEY_ENV} missing")
    try:
        return Fernet(key.encode())
    except ValueError as error:
        raise EncryptionError(f"invalid key: {error}") from error


def encrypt_secret(value: str) -> str:
    return get_fernet().encrypt(value.encode()).decode()


def decrypt_secret(token: str) -> str:
    try:
        return get_fernet().decrypt(token.encode()).decode()
    except InvalidToken as error:
        raise EncryptionError("decryption_failed") from error


def encrypt_json(payload: dict[str, Any]) -> str:
    return encrypt_secret(json.dumps(payload, sort_keys=True))


def decrypt_json(token: str | None) -> dict[str, Any]:
    if not token:
        return {}
    decoded = json.loads(decrypt_secret(token))
    if not isinstance(decoded, dict):
        raise EncryptionError("decrypted params must be an object")
    return decoded
