"""Tenant credential generation."""

from __future__ import annotations

import secrets

from .constants import TOKEN_BYTES, TOKEN_PREFIX


def generate_token() -> str:
    """Return a fresh bearer token such as ``qmd_sk_3f9c...`` (128 bits of entropy)."""
    return f"{TOKEN_PREFIX}{secrets.token_hex(TOKEN_BYTES)}"


def looks_like_token(value: str) -> bool:
    body = value[len(TOKEN_PREFIX) :] if value.startswith(TOKEN_PREFIX) else ""
    return len(body) == TOKEN_BYTES * 2 and all(ch in "0123456789abcdef" for ch in body)
