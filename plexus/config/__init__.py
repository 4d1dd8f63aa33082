"""Plexus configuration: environment settings and per-service configuration files."""

from .settings import Settings, settings
from .service_config import FileConfigurationSource

__all__ = [
    "FileConfigurationSource",
    "Settings",
    "settings",
]
