"""
Shared utilities: secrets lookup and process configuration.
"""
from .secrets import get_secret, get_required_secret, mask_secret
from .config import Settings, load_settings

__all__ = ["get_secret", "get_required_secret", "mask_secret", "Settings", "load_settings"]
