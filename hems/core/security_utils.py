"""
Security utilities for HEMS

This module provides centralized security functions for:
- JWT secret management
- Exam timer signing key management
- Log scrubbing
"""

import os
import re
import logging
from pathlib import Path
import secrets

logger = logging.getLogger(__name__)


# Security configuration
SECURITY_DIR = Path.home() / ".hems"
JWT_SECRET_FILE = SECURITY_DIR / "jwt.secret"
TIMER_KEY_FILE = SECURITY_DIR / "timer.key"


def _get_or_create_secret(env_var: str, secret_file: Path) -> str:
    """Read a secret from the environment or a 0600 file, creating it once."""
    env_secret = os.getenv(env_var)
    if env_secret:
        return env_secret

    SECURITY_DIR.mkdir(parents=True, exist_ok=True)

    if secret_file.exists():
        with open(secret_file, "r") as f:
            return f.read().strip()

    secret = secrets.token_urlsafe(32)

    with open(secret_file, "w") as f:
        f.write(secret)

    try:
        os.chmod(secret_file, 0o600)
    except (OSError, AttributeError) as e:
        # Windows doesn't support chmod in the same way
        logger.debug(
            f"Cannot set file permissions on {secret_file}: {e} (expected on Windows)"
        )

    return secret


def get_or_create_jwt_secret() -> str:
    """
    Get or create persistent JWT secret.

    The secret is stored in ~/.hems/jwt.secret with restricted permissions.
    ``HEMS_JWT_SECRET`` takes precedence when set.

    Returns:
        str: The JWT secret
    """
    return _get_or_create_secret("HEMS_JWT_SECRET", JWT_SECRET_FILE)


def get_or_create_timer_key() -> str:
    """
    Get or create the key used to sign exam timer timestamps.

    The key is stored in ~/.hems/timer.key with restricted permissions.
    ``HEMS_TIMER_KEY`` takes precedence when set.

    Returns:
        str: The timer signing key
    """
    return _get_or_create_secret("HEMS_TIMER_KEY", TIMER_KEY_FILE)


def scrub_sensitive_data(message: str) -> str:
    """
    Remove sensitive data from log messages.

    This function redacts:
    - Passwords
    - Bearer tokens
    - JWT tokens

    Args:
        message: The log message to scrub

    Returns:
        str: Scrubbed message with sensitive data replaced
    """
    patterns = [
        (r'password["\']?\s*[:=]\s*["\']?([^\s"\']+)', "password=***"),
        (r"Bearer\s+([A-Za-z0-9\-_\.]+)", "Bearer ***"),
        (r"eyJ[A-Za-z0-9\-_]+\.eyJ[A-Za-z0-9\-_]+\.[A-Za-z0-9\-_]+", "jwt_token=***"),
    ]

    scrubbed = message
    for pattern, replacement in patterns:
        scrubbed = re.sub(pattern, replacement, scrubbed, flags=re.IGNORECASE)

    return scrubbed
