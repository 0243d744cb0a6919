"""Photoforge - quota-metered AI image transformation service."""

__version__ = "0.3.0"

from photoforge.core.config import PhotoforgeConfig, config

__all__ = [
    "PhotoforgeConfig",
    "config",
]
