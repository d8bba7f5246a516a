"""Abstract container runtime used by the sandbox core.

All process arguments are passed as argv lists. Implementations must never build
shell command strings out of caller input.
"""

import threading
from abc import ABC
from abc import abstractmethod
from pathlib import Path

from foldbox.sandbox.models import ContainerInfo
from foldbox.sandbox.models import ContainerSpec
from foldbox.sandbox.models import ExecResult
from foldbox.utils.logger import setup_logger

logger = setup_logger()

# Exit code reported when a command is cut off by its timeout (coreutils timeout
# without -s KILL; backends translate the 137 reported after a KILL into this)
EXEC_TIMEOUT_EXIT_CODE = 124


class ContainerNotFoundError(RuntimeError):
    """Raised when the addressed container does not exist (anymore)."""


class RuntimeUnavailableError(RuntimeError):
    """Raised when the container engine cannot be reached."""


class ContainerRuntime(ABC):
    """Typed interface over the host container engine."""

    @abstractmethod
    def create_container(self, spec: ContainerSpec) -> str:
        """Create (but do not start) a container.

        Returns:
            The runtime's identifier for the new container
        """
        ...

    @abstractmethod
    def start(self, container_ref: str) -> None: ...

    @abstractmethod
    def exec(
        self,
        container_ref: str,
        argv: list[str],
        *,
        stdin: bytes | None = None,
        workdir: str | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        """Run argv inside a running container.

        A non-zero exit is returned as a result. When the timeout expires the
        partial output is returned with a non-zero exit code.

        Raises:
            ContainerNotFoundError: If the container does not exist
        """
        ...

    @abstractmethod
    def copy_in(
        self,
        container_ref: str,
        src_dir: Path,
        dst_dir: str,
        timeout: float | None = None,
    ) -> None:
        """Copy the contents of a host directory into dst_dir inside the container.

        Raises:
            RuntimeError: If the copy fails
        """
        ...

    @abstractmethod
    def remove(self, container_ref: str) -> bool:
        """Force-remove a container.

        Returns:
            True if a container was removed, False if it did not exist
        """
        ...

    @abstractmethod
    def inspect(self, container_ref: str) -> ContainerInfo:
        """Raises ContainerNotFoundError if the container does not exist."""
        ...

    @abstractmethod
    def list_containers(self, name_prefix: str) -> list[ContainerInfo]:
        """List all containers (running or not) whose name starts with name_prefix.

        Raises:
            RuntimeUnavailableError: If the container engine cannot be reached
        """
        ...


_runtime_instance: ContainerRuntime | None = None
_runtime_lock = threading.Lock()


def get_container_runtime() -> ContainerRuntime:
    """Get the process-wide container runtime (Docker)."""
    global _runtime_instance

    if _runtime_instance is None:
        with _runtime_lock:
            if _runtime_instance is None:
                from foldbox.sandbox.runtime.docker_runtime import (
                    DockerContainerRuntime,
                )

                _runtime_instance = DockerContainerRuntime()
                logger.info("Using DockerContainerRuntime for container operations")

    return _runtime_instance
