"""
API key material.

Format: cp_live_<48 hex chars>. The first KEY_PREFIX_LENGTH characters are
stored in clear as the lookup handle; the full key is only kept as a bcrypt
hash and is shown to the owner exactly once.
"""
import secrets

import bcrypt

from persona.core.config import settings

KEY_PREFIX = "cp_live_"
KEY_PREFIX_LENGTH = 20


def generate_key_string() -> str:
    return KEY_PREFIX + secrets.token_hex(24)


def key_prefix(key: str) -> str:
    return key[:KEY_PREFIX_LENGTH]


def hash_api_key(key: str) -> str:
    """Hash API key with bcrypt."""
    salt = bcrypt.gensalt(rounds=settings.API_KEY_BCRYPT_ROUNDS)
    return bcrypt.hashpw(key.encode(), salt).decode("utf-8")


def verify_api_key(key: str, key_hash: str) -> bool:
    """Verify API key against stored hash."""
    try:
        return bcrypt.checkpw(key.encode(), key_hash.encode())
    except ValueError:
        return False


def mask_key(prefix: str) -> str:
    return prefix[:12] + "•" * 12
