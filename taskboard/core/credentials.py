"""
Credential store: password and machine-key hashing, token generation.

Pure functions with no shared state. Verification failures are ``False``,
never exceptions, so callers cannot tell "no such key" from "wrong secret".
"""

from __future__ import annotations

import secrets
import string
from functools import lru_cache

import bcrypt

from taskboard.core.config import get_settings

MACHINE_KEY_PREFIX = "tk_"
MACHINE_KEY_LENGTH = 32
MACHINE_KEY_HINT_LENGTH = 8
_KEY_ALPHABET = string.ascii_letters + string.digits

# bcrypt truncates or rejects input beyond 72 bytes, depending on version
MAX_SECRET_BYTES = 72


def fits_bcrypt(secret: str) -> bool:
    """Whether the secret's UTF-8 encoding is short enough to hash without truncation."""
    return len(secret.encode()) <= MAX_SECRET_BYTES


# ---------------------------------------------------------------------------
# Hashing
# ---------------------------------------------------------------------------

def hash_secret(plaintext: str, *, rounds: int | None = None) -> str:
    """Hash a secret with bcrypt using the configured work factor."""
    if not fits_bcrypt(plaintext):
        raise ValueError(f"secret exceeds {MAX_SECRET_BYTES} bytes")
    cost = rounds or get_settings().bcrypt_rounds
    return bcrypt.hashpw(plaintext.encode(), bcrypt.gensalt(rounds=cost)).decode()


def verify_secret(plaintext: str, hashed: str | None) -> bool:
    """Constant-time check of a secret against a bcrypt hash."""
    if not hashed or not fits_bcrypt(plaintext):
        return False
    try:
        return bcrypt.checkpw(plaintext.encode(), hashed.encode())
    except ValueError:
        # Malformed hash
        return False


def hash_password(password: str) -> str:
    return hash_secret(password)


def verify_password(password: str, hashed: str | None) -> bool:
    return verify_secret(password, hashed)


@lru_cache
def _dummy_hash() -> str:
    return hash_secret(secrets.token_urlsafe(16))


def verify_dummy(plaintext: str) -> bool:
    """Burn one hash comparison so a miss costs the same as a wrong secret."""
    verify_secret(plaintext, _dummy_hash())
    return False


# ---------------------------------------------------------------------------
# Machine keys & tokens
# ---------------------------------------------------------------------------

def generate_machine_key() -> str:
    """Generate a self-identifying machine key: ``tk_`` + 32 alphanumerics."""
    body = "".join(secrets.choice(_KEY_ALPHABET) for _ in range(MACHINE_KEY_LENGTH))
    return f"{MACHINE_KEY_PREFIX}{body}"


def is_machine_key(value: str) -> bool:
    return (
        value.startswith(MACHINE_KEY_PREFIX)
        and len(value) == len(MACHINE_KEY_PREFIX) + MACHINE_KEY_LENGTH
        and all(c in _KEY_ALPHABET for c in value[len(MACHINE_KEY_PREFIX):])
    )


def key_hint(key: str) -> str:
    """Lookup hint stored beside the hash to narrow candidates."""
    return key[: len(MACHINE_KEY_PREFIX) + MACHINE_KEY_HINT_LENGTH]


def generate_token() -> str:
    """Opaque, unguessable token for sessions, invitations and resets."""
    return secrets.token_urlsafe(32)


def generate_csrf_token() -> str:
    return secrets.token_urlsafe(32)
