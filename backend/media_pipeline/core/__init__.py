"""Core module for configuration and utilities."""

from media_pipeline.core.config import settings

__all__ = [
    "settings",
]
