"""
Sandbox module for isolated, network-less execution against a checked out repository.

Usage:
    from foldbox.sandbox import get_sandbox_manager

    # Get the appropriate sandbox manager based on SANDBOX_BACKEND config
    sandbox_manager = get_sandbox_manager()

    sandbox_id = sandbox_manager.create("owner", "repo", ref="main", credential=token)
    before = sandbox_manager.snapshot(sandbox_id)
    result = sandbox_manager.run_command(sandbox_id, "npm test")
    diff = compare_snapshots(before, sandbox_manager.snapshot(sandbox_id))
    sandbox_manager.destroy(sandbox_id)
"""

from foldbox.sandbox.base import get_sandbox_manager
from foldbox.sandbox.base import SandboxManager
from foldbox.sandbox.base import SandboxNotFoundError
from foldbox.sandbox.models import ExecResult
from foldbox.sandbox.models import FileSnapshot
from foldbox.sandbox.models import SandboxInfo
from foldbox.sandbox.models import SnapshotDiff
from foldbox.sandbox.models import SnapshotSet
from foldbox.sandbox.snapshot import compare_snapshots

__all__ = [
    # Factory function (preferred)
    "get_sandbox_manager",
    # Interface
    "SandboxManager",
    "SandboxNotFoundError",
    "compare_snapshots",
    # Models
    "ExecResult",
    "FileSnapshot",
    "SandboxInfo",
    "SnapshotDiff",
    "SnapshotSet",
]
