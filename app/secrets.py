"""Fernet encryption for module settings declared as ``secret``."""

from __future__ import annotations

import base64
import os

from cryptography.fernet import Fernet, InvalidToken


SECRET_MASK = "********"


class SecretStoreError(RuntimeError):
    pass


def _get_fernet() -> Fernet:
    key = os.getenv("APP_SECRET_KEY", "").strip()
    if not key:
        raise SecretStoreError("APP_SECRET_KEY is not set")
    try:
        # Accept raw 32-byte base64 or 32-byte urlsafe b64 key
        if len(key) == 32:
            key = base64.urlsafe_b64encode(key.encode("utf-8")).decode("utf-8")
        return Fernet(key.encode("utf-8"))
    except (ValueError, TypeError) as exc:
        raise SecretStoreError("Invalid APP_SECRET_KEY") from exc


def encrypt_secret(value: str) -> str:
    token = _get_fernet().encrypt(value.encode("utf-8"))
    return token.decode("utf-8")


def decrypt_secret(token: str) -> str:
    try:
        value = _get_fernet().decrypt(token.encode("utf-8"))
        return value.decode("utf-8")
    except InvalidToken as exc:
        raise SecretStoreError("Invalid secret token") from exc


def is_masked(value: object) -> bool:
    return value == SECRET_MASK
