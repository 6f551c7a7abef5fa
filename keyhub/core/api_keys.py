"""API key token generation and display primitives."""

from __future__ import annotations

import secrets
from functools import lru_cache

from keyhub.config import get_settings

_TOKEN_BYTES = 20
_MASK = "*" * 8


class KeyGenerator:
    """Produce prefixed, unguessable API key tokens."""

    def __init__(self, prefix: str = "pk_") -> None:
        if not prefix:
            raise ValueError("Token prefix must not be empty.")
        self._prefix = prefix

    @property
    def prefix(self) -> str:
        """Return the fixed token prefix."""
        return self._prefix

    def generate(self) -> str:
        """Generate `<prefix><40 lowercase hex chars>` from the OS CSPRNG."""
        return f"{self._prefix}{secrets.token_hex(_TOKEN_BYTES)}"

    def is_valid_format(self, raw_key: str) -> bool:
        """Return True when a token carries the prefix and a full hex body."""
        if not raw_key.startswith(self._prefix):
            return False
        body = raw_key[len(self._prefix) :]
        if len(body) != _TOKEN_BYTES * 2:
            return False
        return all(char in "0123456789abcdef" for char in body)

    @staticmethod
    def mask(raw_key: str) -> str:
        """Obfuscate a token for display, keeping 5 leading and 4 trailing chars."""
        if len(raw_key) <= 9:
            return _MASK
        return f"{raw_key[:5]}{_MASK}{raw_key[-4:]}"


@lru_cache
def get_key_generator() -> KeyGenerator:
    """Create and cache the key generator using the configured prefix."""
    return KeyGenerator(prefix=get_settings().keys.prefix)
