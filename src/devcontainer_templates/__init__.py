"""
DevContainer Templates - Discover and assemble devcontainer templates and features

This package provides a command-line interface for browsing the published
collection index, fetching templates and features from OCI registries,
and assembling them into a devcontainer.json for a workspace.
"""

__version__ = "0.1.0"

from .cli import cli

__all__ = ["cli"]
