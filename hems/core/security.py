"""
Password hashing and verification.

All bcrypt handling lives here so services never touch the library directly.
"""

import bcrypt

# bcrypt only reads the first 72 bytes; newer releases raise instead of truncating.
BCRYPT_MAX_BYTES = 72


class MalformedHashError(ValueError):
    """Stored credential is not a bcrypt hash bcrypt can parse."""


def _encode(password: str) -> bytes:
    return password.encode("utf-8")[:BCRYPT_MAX_BYTES]


def hash_password(password: str) -> str:
    """Hash password using bcrypt."""
    salt = bcrypt.gensalt()
    return bcrypt.hashpw(_encode(password), salt).decode("utf-8")


def check_password_hash(password: str, password_hash: str) -> bool:
    """Verify password against a bcrypt hash.

    Raises:
        MalformedHashError: if ``password_hash`` is not a parseable bcrypt hash.
    """
    if not password_hash:
        raise MalformedHashError("empty hash")
    try:
        return bcrypt.checkpw(_encode(password), password_hash.encode("utf-8"))
    except ValueError as e:
        raise MalformedHashError(str(e)) from e


def verify_password(
    password: str, password_hash: str, allow_plaintext_fallback: bool = False
) -> bool:
    """Verify password against hash.

    When ``allow_plaintext_fallback`` is set and the stored value is not a
    bcrypt hash, it is compared directly. This exists only for seeded legacy
    accounts and is off unless configured.
    """
    try:
        return check_password_hash(password, password_hash)
    except MalformedHashError:
        if allow_plaintext_fallback:
            return password_hash == password
        return False
