"""Caverna Image Engine - validated, cached, asynchronous character image generation."""

__version__ = "0.1.0"

from caverna.core.config import CavernaConfig, config

__all__ = [
    "CavernaConfig",
    "config",
]
