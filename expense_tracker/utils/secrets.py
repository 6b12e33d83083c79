"""
Secret lookup for the authentication service.

Secrets can come from:
1. A file named by {NAME}_FILE (Docker / Kubernetes secrets)
2. The {NAME} environment variable (development)
3. /run/secrets/{name} (Docker secrets default mount)

Usage:
    from expense_tracker.utils.secrets import get_secret

    signing_key = get_secret("JWT_SECRET")
"""
import os
import logging
from typing import Optional
from functools import lru_cache

logger = logging.getLogger(__name__)


def _read_secret_file(path: str) -> Optional[str]:
    try:
        with open(path, 'r') as f:
            return f.read().strip()
    except OSError as e:
        logger.warning(f"Failed to read secret file {path}: {e}")
        return None


@lru_cache(maxsize=32)
def get_secret(name: str, default: Optional[str] = None) -> Optional[str]:
    """
    Get a secret value from the first source that has it.

    Priority:
    1. {NAME}_FILE environment variable (path to file containing secret)
    2. {NAME} environment variable (direct value)
    3. /run/secrets/{name.lower()} file
    4. Default value

    Args:
        name: Secret name (e.g., "JWT_SECRET")
        default: Default value if secret not found

    Returns:
        Secret value or default
    """
    file_path = os.environ.get(f"{name}_FILE")
    if file_path and os.path.isfile(file_path):
        secret = _read_secret_file(file_path)
        if secret:
            logger.debug(f"Loaded secret {name} from file")
            return secret

    env_value = os.environ.get(name)
    if env_value:
        logger.debug(f"Loaded secret {name} from environment")
        return env_value

    docker_secret_path = f"/run/secrets/{name.lower()}"
    if os.path.isfile(docker_secret_path):
        secret = _read_secret_file(docker_secret_path)
        if secret:
            logger.debug(f"Loaded secret {name} from Docker secrets")
            return secret

    if default is None:
        logger.debug(f"Secret {name} not found, no default provided")
    return default


def get_required_secret(name: str) -> str:
    """
    Get a required secret, raising an error if not found.

    Raises:
        ValueError: If secret not found
    """
    value = get_secret(name)
    if value is None:
        raise ValueError(
            f"Required secret '{name}' not found. "
            f"Set {name} or {name}_FILE environment variable."
        )
    return value


def get_database_password() -> Optional[str]:
    """Get PostgreSQL password."""
    return get_secret("POSTGRES_PASSWORD")


def get_bootstrap_key() -> Optional[str]:
    """Get the one-time key that guards admin bootstrap."""
    return get_secret("BOOTSTRAP_SECRET_KEY")


def mask_secret(secret: str, visible_chars: int = 4) -> str:
    """
    Mask a secret for safe logging.

    Args:
        secret: The secret to mask
        visible_chars: Number of characters to show at start and end

    Returns:
        Masked string like "abc...xyz"
    """
    if not secret or len(secret) <= visible_chars * 2:
        return "***"
    return f"{secret[:visible_chars]}...{secret[-visible_chars:]}"
