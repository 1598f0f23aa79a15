"""Small crypto helpers."""

from __future__ import annotations

import hashlib
import secrets


def sha256_text(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def new_device_token() -> str:
    return secrets.token_urlsafe(32)


def token_fingerprint(token: str) -> str:
    return sha256_text(token)[:12]
