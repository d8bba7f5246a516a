"""Docker-based sandbox manager for production deployments.

Each sandbox is one long-lived container named SANDBOX_CONTAINER_PREFIX + id,
created with no network, a read-only root filesystem and tmpfs mounts for /tmp
and the workspace. The repository is cloned on the host and copied in, so the
container never needs network access.

The manager keeps no in-process registry: everything needed to address or
describe a sandbox is derived from its id and the container's labels.
"""

import posixpath
from pathlib import Path
from uuid import uuid4

from pydantic import ValidationError

from foldbox.configs import SANDBOX_CONTAINER_PREFIX
from foldbox.configs import SANDBOX_COPY_TIMEOUT_SECONDS
from foldbox.configs import SANDBOX_CPU_LIMIT
from foldbox.configs import SANDBOX_DEFAULT_EXEC_TIMEOUT_SECONDS
from foldbox.configs import SANDBOX_IMAGE
from foldbox.configs import SANDBOX_INSTALL_COMMAND
from foldbox.configs import SANDBOX_INSTALL_TIMEOUT_SECONDS
from foldbox.configs import SANDBOX_LABEL_PREFIX
from foldbox.configs import SANDBOX_MEMORY_LIMIT
from foldbox.configs import SANDBOX_RECORD_BASELINE
from foldbox.configs import SANDBOX_REPO_PATH
from foldbox.configs import SANDBOX_TMP_SIZE
from foldbox.configs import SANDBOX_WORKSPACE_ROOT
from foldbox.configs import SANDBOX_WORKSPACE_SIZE
from foldbox.configs import SNAPSHOT_TIMEOUT_SECONDS
from foldbox.sandbox.base import bound_output
from foldbox.sandbox.base import normalize_workspace_path
from foldbox.sandbox.base import SandboxManager
from foldbox.sandbox.base import validate_sandbox_id
from foldbox.sandbox.internal.build_context import get_staging_path
from foldbox.sandbox.internal.build_context import prepare_build_context
from foldbox.sandbox.internal.build_context import remove_build_context
from foldbox.sandbox.internal.build_context import validate_repo_part
from foldbox.sandbox.models import ContainerSpec
from foldbox.sandbox.models import ExecResult
from foldbox.sandbox.models import RepoBinding
from foldbox.sandbox.models import SandboxInfo
from foldbox.sandbox.models import SnapshotSet
from foldbox.sandbox.runtime.base import ContainerRuntime
from foldbox.sandbox.runtime.base import get_container_runtime
from foldbox.sandbox.snapshot import dump_snapshot_set
from foldbox.sandbox.snapshot import load_snapshot_set
from foldbox.sandbox.snapshot import take_container_snapshot
from foldbox.utils.logger import setup_logger

logger = setup_logger()

LABEL_SANDBOX_ID = f"{SANDBOX_LABEL_PREFIX}.sandbox-id"
LABEL_REPO_OWNER = f"{SANDBOX_LABEL_PREFIX}.repo-owner"
LABEL_REPO_NAME = f"{SANDBOX_LABEL_PREFIX}.repo-name"
LABEL_REPO_REF = f"{SANDBOX_LABEL_PREFIX}.repo-ref"

# Outside the repository so snapshots of the repository never include it
BASELINE_PATH = posixpath.join(SANDBOX_WORKSPACE_ROOT, ".foldbox-baseline.json")


def get_container_name(sandbox_id: str) -> str:
    return f"{SANDBOX_CONTAINER_PREFIX}{sandbox_id}"


def build_container_spec(sandbox_id: str, binding: RepoBinding) -> ContainerSpec:
    """Security posture of every sandbox container. Not overridable per call."""
    return ContainerSpec(
        name=get_container_name(sandbox_id),
        image=SANDBOX_IMAGE,
        # keeps the container alive; all work happens through exec
        command=["sleep", "infinity"],
        working_dir=SANDBOX_WORKSPACE_ROOT,
        memory_limit=SANDBOX_MEMORY_LIMIT,
        cpu_limit=SANDBOX_CPU_LIMIT,
        network_disabled=True,
        read_only_root=True,
        tmpfs={
            "/tmp": f"rw,noexec,nosuid,size={SANDBOX_TMP_SIZE}",
            SANDBOX_WORKSPACE_ROOT: f"rw,size={SANDBOX_WORKSPACE_SIZE}",
        },
        labels={
            LABEL_SANDBOX_ID: sandbox_id,
            LABEL_REPO_OWNER: binding.owner,
            LABEL_REPO_NAME: binding.name,
            LABEL_REPO_REF: binding.ref,
        },
    )


def _check_step(result: ExecResult, step: str) -> None:
    if result.exit_code != 0:
        raise RuntimeError(
            f"Sandbox {step} failed with exit code {result.exit_code}: "
            f"{result.stderr.strip() or result.stdout.strip()}"
        )


class DockerSandboxManager(SandboxManager):
    """Docker-based sandbox manager.

    Sandboxes are network-less containers on the local Docker daemon. Stale ones
    are removed by the reaper (see foldbox.sandbox.reaper).
    """

    def __init__(
        self,
        runtime: ContainerRuntime | None = None,
        staging_root: Path | None = None,
    ) -> None:
        self._runtime = runtime or get_container_runtime()
        self._staging_root = staging_root

    def create(
        self,
        repo_owner: str,
        repo_name: str,
        ref: str | None = None,
        credential: str = "",
    ) -> str:
        validate_repo_part(repo_owner, "repository owner")
        validate_repo_part(repo_name, "repository name")

        sandbox_id = str(uuid4())
        sandbox_logger = setup_logger(extra={"sandbox_id": sandbox_id})
        container_name = get_container_name(sandbox_id)
        container_ref: str | None = None

        sandbox_logger.info(f"Provisioning sandbox for {repo_owner}/{repo_name}")

        try:
            # 1. Clone on the host; the container has no network
            context = prepare_build_context(
                sandbox_id,
                repo_owner,
                repo_name,
                ref,
                credential,
                staging_root=self._staging_root,
            )
            binding = RepoBinding(owner=repo_owner, name=repo_name, ref=context.ref)

            # 2. Create and start the isolated container
            container_ref = self._runtime.create_container(
                build_container_spec(sandbox_id, binding)
            )
            self._runtime.start(container_ref)

            # 3. Materialize the tree into the workspace
            _check_step(
                self._runtime.exec(container_ref, ["mkdir", "-p", SANDBOX_REPO_PATH]),
                "workspace setup",
            )
            self._runtime.copy_in(
                container_ref,
                context.repo_path,
                SANDBOX_REPO_PATH,
                timeout=SANDBOX_COPY_TIMEOUT_SECONDS,
            )
            remove_build_context(context.staging_path)

            # 4. Optional offline install
            if SANDBOX_INSTALL_COMMAND:
                sandbox_logger.info("Running dependency install")
                _check_step(
                    self._runtime.exec(
                        container_ref,
                        ["sh", "-c", SANDBOX_INSTALL_COMMAND],
                        workdir=SANDBOX_REPO_PATH,
                        timeout=SANDBOX_INSTALL_TIMEOUT_SECONDS,
                    ),
                    "dependency install",
                )

            # 5. Baseline for the diff reported by validate()
            if SANDBOX_RECORD_BASELINE:
                self._record_baseline(container_ref)

        except Exception as e:
            sandbox_logger.error(f"Sandbox provisioning failed: {e}")
            self._rollback(sandbox_id, container_ref or container_name)
            raise

        sandbox_logger.info(f"Provisioned sandbox in container {container_name}")
        return sandbox_id

    def _rollback(self, sandbox_id: str, container_ref: str) -> None:
        """Remove whatever a failed create left behind. Never raises."""
        try:
            self._runtime.remove(container_ref)
        except Exception as e:
            logger.warning(f"Error removing container {container_ref} on rollback: {e}")
        remove_build_context(get_staging_path(sandbox_id, self._staging_root))

    def _record_baseline(self, container_ref: str) -> None:
        baseline = self._snapshot_container(container_ref)
        result = self._runtime.exec(
            container_ref,
            ["sh", "-c", 'cat > "$1"', "sh", BASELINE_PATH],
            stdin=dump_snapshot_set(baseline),
            timeout=SANDBOX_DEFAULT_EXEC_TIMEOUT_SECONDS,
        )
        if result.exit_code != 0:
            logger.warning(
                f"Could not record baseline snapshot in {container_ref}: "
                f"{result.stderr.strip()}"
            )

    def get_sandbox(self, sandbox_id: str) -> SandboxInfo:
        validate_sandbox_id(sandbox_id)
        info = self._runtime.inspect(get_container_name(sandbox_id))
        return SandboxInfo(
            id=sandbox_id,
            container_ref=info.id,
            created_at=info.created_at,
            repo_binding=RepoBinding(
                owner=info.labels.get(LABEL_REPO_OWNER, ""),
                name=info.labels.get(LABEL_REPO_NAME, ""),
                ref=info.labels.get(LABEL_REPO_REF, ""),
            ),
        )

    def run_command(
        self,
        sandbox_id: str,
        command: str,
        timeout: float | None = None,
    ) -> ExecResult:
        validate_sandbox_id(sandbox_id)
        result = self._runtime.exec(
            get_container_name(sandbox_id),
            ["sh", "-c", command],
            workdir=SANDBOX_REPO_PATH,
            timeout=timeout or SANDBOX_DEFAULT_EXEC_TIMEOUT_SECONDS,
        )
        return bound_output(result)

    def write_file(self, sandbox_id: str, path: str, content: bytes | str) -> None:
        validate_sandbox_id(sandbox_id)
        target = posixpath.join(SANDBOX_REPO_PATH, normalize_workspace_path(path))
        container_name = get_container_name(sandbox_id)
        data = content.encode("utf-8") if isinstance(content, str) else content

        _check_step(
            self._runtime.exec(
                container_name, ["mkdir", "-p", posixpath.dirname(target)]
            ),
            f"mkdir for {path}",
        )
        # content and path are passed as data, never as shell text
        _check_step(
            self._runtime.exec(
                container_name,
                ["sh", "-c", 'cat > "$1"', "sh", target],
                stdin=data,
                timeout=SANDBOX_DEFAULT_EXEC_TIMEOUT_SECONDS,
            ),
            f"write of {path}",
        )

    def delete_file(self, sandbox_id: str, path: str) -> None:
        validate_sandbox_id(sandbox_id)
        target = posixpath.join(SANDBOX_REPO_PATH, normalize_workspace_path(path))
        _check_step(
            self._runtime.exec(get_container_name(sandbox_id), ["rm", "-f", target]),
            f"delete of {path}",
        )

    def destroy(self, sandbox_id: str) -> None:
        validate_sandbox_id(sandbox_id)
        if self._runtime.remove(get_container_name(sandbox_id)):
            logger.info(f"Destroyed sandbox {sandbox_id}")
        else:
            logger.debug(f"Sandbox {sandbox_id} already gone")

    def _snapshot_container(self, container_ref: str) -> SnapshotSet:
        # Untruncated: a capped listing would silently drop files from the manifest
        def _exec(command: str, timeout: float) -> ExecResult:
            return self._runtime.exec(
                container_ref,
                ["sh", "-c", command],
                workdir=SANDBOX_REPO_PATH,
                timeout=timeout,
            )

        return take_container_snapshot(
            _exec, root=SANDBOX_REPO_PATH, timeout=SNAPSHOT_TIMEOUT_SECONDS
        )

    def snapshot(self, sandbox_id: str) -> SnapshotSet:
        validate_sandbox_id(sandbox_id)
        return self._snapshot_container(get_container_name(sandbox_id))

    def get_baseline_snapshot(self, sandbox_id: str) -> SnapshotSet | None:
        validate_sandbox_id(sandbox_id)
        result = self._runtime.exec(
            get_container_name(sandbox_id),
            ["cat", BASELINE_PATH],
            timeout=SANDBOX_DEFAULT_EXEC_TIMEOUT_SECONDS,
        )
        if result.exit_code != 0:
            return None
        try:
            return load_snapshot_set(result.stdout)
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable baseline of sandbox {sandbox_id}: {e}")
            return None
