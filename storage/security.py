"""Password hashing and opaque session tokens."""

import hashlib
import secrets

from werkzeug.security import check_password_hash, generate_password_hash


def hash_password(password: str) -> str:
    """Salted hash (werkzeug's default scrypt)."""
    return generate_password_hash(str(password or ""))


def verify_password_hash(stored_hash: str, password: str) -> bool:
    # check_password_hash compares digests with hmac.compare_digest.
    if not stored_hash:
        return False
    try:
        return check_password_hash(stored_hash, str(password or ""))
    except ValueError:
        return False


def create_session_token() -> str:
    return secrets.token_urlsafe(32)


def hash_session_token(raw_token: str) -> str:
    return hashlib.sha256(raw_token.encode("utf-8")).hexdigest()
