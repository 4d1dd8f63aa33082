"""Plexus: plugin dependency resolution and versioned service routing."""

__version__ = "0.1.0"
