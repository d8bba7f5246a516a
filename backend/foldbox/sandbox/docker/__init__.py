"""Container-backed sandbox manager (production backend)."""

from foldbox.sandbox.docker.manager import DockerSandboxManager

__all__ = ["DockerSandboxManager"]
