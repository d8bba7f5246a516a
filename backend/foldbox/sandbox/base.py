"""Abstract base class and factory for sandbox operations.

SandboxManager is the abstract interface for sandbox lifecycle management.
Use get_sandbox_manager() to get the appropriate implementation based on SANDBOX_BACKEND.

Operations on different sandbox ids are independent and may run in parallel.
Calls against the same sandbox id must be issued sequentially by the caller.
"""

import re
import threading
import time
from abc import ABC
from abc import abstractmethod
from pathlib import PurePosixPath

from foldbox.configs import SANDBOX_BACKEND
from foldbox.configs import SANDBOX_BENCHMARK_ENABLED
from foldbox.configs import SANDBOX_MAX_OUTPUT_CHARS
from foldbox.configs import SandboxBackend
from foldbox.sandbox.models import ExecResult
from foldbox.sandbox.models import SandboxInfo
from foldbox.sandbox.models import SnapshotSet
from foldbox.sandbox.models import ValidationResult
from foldbox.sandbox.models import ValidationStepResult
from foldbox.sandbox.snapshot import compare_snapshots
from foldbox.sandbox.validation import build_baseline_missing_step
from foldbox.sandbox.validation import build_default_steps
from foldbox.sandbox.validation import build_diff_step
from foldbox.sandbox.validation import CommandRunner
from foldbox.sandbox.validation import run_benchmark
from foldbox.sandbox.validation import run_file_typecheck
from foldbox.sandbox.validation import run_validation_step
from foldbox.sandbox.validation import ValidationStep
from foldbox.utils.logger import setup_logger

logger = setup_logger()

_SANDBOX_ID_RE = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]*$")


class SandboxNotFoundError(RuntimeError):
    """Raised when an operation addresses a sandbox that does not exist."""


def validate_sandbox_id(sandbox_id: str) -> str:
    if not sandbox_id or not _SANDBOX_ID_RE.match(sandbox_id):
        raise ValueError(f"invalid sandbox ID: {sandbox_id!r}")
    return sandbox_id


def normalize_workspace_path(path: str) -> str:
    """Validate a caller-supplied path and return it relative to the workspace.

    Raises:
        ValueError: If the path is empty, absolute or climbs out with '..'
    """
    candidate = PurePosixPath(path)
    if candidate.is_absolute() or ".." in candidate.parts:
        raise ValueError(f"path escapes sandbox: {path}")
    if not candidate.parts:
        raise ValueError("path must not be empty")
    return candidate.as_posix()


def bound_output(result: ExecResult) -> ExecResult:
    """Apply the output cap. Used on every path that returns an ExecResult to a caller."""
    return result.truncated(SANDBOX_MAX_OUTPUT_CHARS)


class SandboxManager(ABC):
    """Abstract interface for sandbox operations.

    Defines the contract for:
    - Provisioning (clone, materialize, install) and destruction
    - Command execution
    - File mutation inside the workspace
    - Snapshotting the workspace

    Use get_sandbox_manager() to get the appropriate implementation.
    """

    @abstractmethod
    def create(
        self,
        repo_owner: str,
        repo_name: str,
        ref: str | None = None,
        credential: str = "",
    ) -> str:
        """Provision a new sandbox with the repository materialized in its workspace.

        Args:
            repo_owner: Repository owner (non-empty)
            repo_name: Repository name (non-empty)
            ref: Branch or tag; the repository's primary branch when omitted
            credential: Single-use access token for cloning

        Returns:
            The new sandbox id

        Raises:
            ValueError: If the repository coordinates are invalid
            Exception: The original provisioning error, after partial resources
                have been removed
        """
        ...

    @abstractmethod
    def get_sandbox(self, sandbox_id: str) -> SandboxInfo:
        """Raises SandboxNotFoundError (ContainerNotFoundError for docker) if missing."""
        ...

    @abstractmethod
    def run_command(
        self,
        sandbox_id: str,
        command: str,
        timeout: float | None = None,
    ) -> ExecResult:
        """Run command as one shell invocation in the sandbox's repository directory.

        Failures of the command itself (non-zero exit, timeout) are reported in the
        returned ExecResult. stdout and stderr are capped at SANDBOX_MAX_OUTPUT_CHARS.

        Raises:
            SandboxNotFoundError: If the sandbox does not exist
                (ContainerNotFoundError for the docker backend)
        """
        ...

    @abstractmethod
    def write_file(self, sandbox_id: str, path: str, content: bytes | str) -> None:
        """Write content as the complete body of path, creating parent directories.

        Raises:
            ValueError: If path escapes the workspace
            SandboxNotFoundError: If the sandbox does not exist
                (ContainerNotFoundError for the docker backend)
        """
        ...

    @abstractmethod
    def delete_file(self, sandbox_id: str, path: str) -> None:
        """Remove path if present. A missing file is not an error."""
        ...

    @abstractmethod
    def destroy(self, sandbox_id: str) -> None:
        """Remove the sandbox. Idempotent: a missing sandbox is treated as success."""
        ...

    @abstractmethod
    def snapshot(self, sandbox_id: str) -> SnapshotSet:
        """Snapshot the sandbox workspace. Degrades to an empty set on any failure."""
        ...

    @abstractmethod
    def get_baseline_snapshot(self, sandbox_id: str) -> SnapshotSet | None:
        """Snapshot recorded right after provisioning, None if none was recorded."""
        ...

    def _command_runner(self, sandbox_id: str) -> CommandRunner:
        def _run(command: str, timeout: float) -> ExecResult:
            return self.run_command(sandbox_id, command, timeout=timeout)

        return _run

    def validate(
        self, sandbox_id: str, steps: list[ValidationStep] | None = None
    ) -> ValidationResult:
        """Run the validation pipeline and report changes since provisioning.

        Steps run in order (typecheck, lint, test by default), followed by the
        optional benchmark and the diff against the baseline snapshot. Failing
        steps are reported in the result; they never stop the pipeline.

        Raises:
            SandboxNotFoundError: If the sandbox does not exist
                (ContainerNotFoundError for the docker backend)
        """
        self.get_sandbox(sandbox_id)
        start_time = time.monotonic()
        run = self._command_runner(sandbox_id)

        results: list[ValidationStepResult] = [
            run_validation_step(run, step)
            for step in (build_default_steps() if steps is None else steps)
        ]
        if SANDBOX_BENCHMARK_ENABLED:
            results.append(run_benchmark(run))

        diff = None
        baseline = self.get_baseline_snapshot(sandbox_id)
        if baseline is None:
            results.append(build_baseline_missing_step())
        else:
            diff = compare_snapshots(baseline, self.snapshot(sandbox_id))
            results.append(build_diff_step(diff))

        validation = ValidationResult(
            success=all(result.success for result in results),
            steps=results,
            diff=diff,
            duration_ms=int((time.monotonic() - start_time) * 1000),
        )
        logger.info(
            f"Validated sandbox {sandbox_id}: success={validation.success} "
            f"in {validation.duration_ms}ms"
        )
        return validation

    def validate_file(self, sandbox_id: str, path: str) -> ValidationStepResult:
        """Typecheck the project and report only the errors of one file.

        Raises:
            ValueError: If path escapes the workspace
            SandboxNotFoundError: If the sandbox does not exist
                (ContainerNotFoundError for the docker backend)
        """
        relative_path = normalize_workspace_path(path)
        self.get_sandbox(sandbox_id)
        return run_file_typecheck(self._command_runner(sandbox_id), relative_path)


# Singleton instance cache for the factory
_sandbox_manager_instance: SandboxManager | None = None
_sandbox_manager_lock = threading.Lock()


def get_sandbox_manager() -> SandboxManager:
    """Get the appropriate SandboxManager implementation based on SANDBOX_BACKEND.

    Returns:
        SandboxManager instance:
        - DockerSandboxManager for docker backend (production)
        - LocalSandboxManager for local backend (development)
    """
    global _sandbox_manager_instance

    if _sandbox_manager_instance is None:
        with _sandbox_manager_lock:
            if _sandbox_manager_instance is None:
                if SANDBOX_BACKEND == SandboxBackend.DOCKER:
                    from foldbox.sandbox.docker.manager import DockerSandboxManager

                    _sandbox_manager_instance = DockerSandboxManager()
                    logger.info("Using DockerSandboxManager for sandbox operations")
                elif SANDBOX_BACKEND == SandboxBackend.LOCAL:
                    from foldbox.sandbox.local.manager import LocalSandboxManager

                    _sandbox_manager_instance = LocalSandboxManager()
                    logger.info("Using LocalSandboxManager for sandbox operations")
                else:
                    raise ValueError(f"Unknown sandbox backend: {SANDBOX_BACKEND}")

    return _sandbox_manager_instance
