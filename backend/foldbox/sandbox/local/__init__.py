"""Local filesystem-based sandbox implementation.

This module provides the LocalSandboxManager for development and tests,
running sandboxes as directories on the local filesystem.
"""

from foldbox.sandbox.local.manager import LocalSandboxManager

__all__ = [
    "LocalSandboxManager",
]
