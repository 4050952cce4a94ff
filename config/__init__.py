"""Configuration package for the marketplace escrow service."""
from .settings import get_settings, Settings

__all__ = ["Settings", "get_settings"]
