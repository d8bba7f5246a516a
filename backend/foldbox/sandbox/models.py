"""Pydantic models for sandbox module communication."""

from datetime import datetime

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import Field


class RepoBinding(BaseModel):
    """The repository a sandbox was materialized from. Fixed for its lifetime."""

    model_config = ConfigDict(frozen=True)

    owner: str
    name: str
    ref: str


class SandboxInfo(BaseModel):
    """Handle to one isolated execution environment.

    Returned by SandboxManager.get_sandbox().
    """

    id: str
    container_ref: str
    created_at: datetime
    repo_binding: RepoBinding


class ExecResult(BaseModel):
    """Outcome of one command execution.

    A non-zero exit_code is a normal result, not an error.
    """

    stdout: str = ""
    stderr: str = ""
    exit_code: int
    duration_ms: int = 0

    def truncated(self, max_chars: int) -> "ExecResult":
        """Return a copy with both streams cut to at most max_chars, keeping the prefix."""
        return self.model_copy(
            update={
                "stdout": self.stdout[:max_chars],
                "stderr": self.stderr[:max_chars],
            }
        )


class FileSnapshot(BaseModel):
    """One file's identity at a point in time.

    Two snapshots of the same path with equal hash represent identical content.
    """

    model_config = ConfigDict(frozen=True)

    path: str
    hash: str = Field(pattern=r"^[0-9a-f]{64}$")
    size: int = Field(ge=0)


# Point-in-time view of a tree, keyed by FileSnapshot.path. Never mutated after creation.
SnapshotSet = dict[str, FileSnapshot]


class SnapshotDiff(BaseModel):
    """Classified difference between a before and an after SnapshotSet."""

    created: list[str] = Field(default_factory=list)
    modified: list[str] = Field(default_factory=list)
    deleted: list[str] = Field(default_factory=list)
    unchanged_count: int = 0
    total_diff_bytes: int = 0


class ValidationStepResult(BaseModel):
    """Outcome of one validation step. Only errors make a step fail."""

    step: str
    success: bool = True
    skipped: bool = False
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    metrics: dict[str, int] = Field(default_factory=dict)
    duration_ms: int = 0


class ValidationResult(BaseModel):
    """Outcome of a full validation run against one sandbox."""

    success: bool
    steps: list[ValidationStepResult]
    # Changes since the baseline recorded at provisioning, None without a baseline
    diff: SnapshotDiff | None = None
    duration_ms: int = 0


class ContainerSpec(BaseModel):
    """Everything the runtime needs to create one sandbox container."""

    name: str
    image: str
    command: list[str]
    working_dir: str
    memory_limit: str
    cpu_limit: float
    network_disabled: bool = True
    read_only_root: bool = True
    # mount point -> tmpfs options
    tmpfs: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)


class ContainerInfo(BaseModel):
    """Runtime metadata for an existing container."""

    id: str
    name: str
    created_at: datetime
    labels: dict[str, str] = Field(default_factory=dict)
    running: bool = False
