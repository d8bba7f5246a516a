"""Filesystem-based sandbox manager for local/dev environments.

LocalSandboxManager manages sandboxes as directories on the local filesystem.
Suitable for development and testing. Commands run directly on the host, so
there is no isolation of any kind.
"""

import shutil
import subprocess
import time
from datetime import datetime
from datetime import timezone
from pathlib import Path
from uuid import uuid4

from pydantic import ValidationError

from foldbox.configs import SANDBOX_BASE_PATH
from foldbox.configs import SANDBOX_DEFAULT_EXEC_TIMEOUT_SECONDS
from foldbox.configs import SANDBOX_INSTALL_COMMAND
from foldbox.configs import SANDBOX_INSTALL_TIMEOUT_SECONDS
from foldbox.configs import SANDBOX_RECORD_BASELINE
from foldbox.sandbox.base import bound_output
from foldbox.sandbox.base import normalize_workspace_path
from foldbox.sandbox.base import SandboxManager
from foldbox.sandbox.base import SandboxNotFoundError
from foldbox.sandbox.base import validate_sandbox_id
from foldbox.sandbox.internal.build_context import build_clone_url
from foldbox.sandbox.internal.build_context import clone_repository
from foldbox.sandbox.internal.build_context import validate_repo_part
from foldbox.sandbox.models import ExecResult
from foldbox.sandbox.models import RepoBinding
from foldbox.sandbox.models import SandboxInfo
from foldbox.sandbox.models import SnapshotSet
from foldbox.sandbox.runtime.base import EXEC_TIMEOUT_EXIT_CODE
from foldbox.sandbox.snapshot import dump_snapshot_set
from foldbox.sandbox.snapshot import load_snapshot_set
from foldbox.sandbox.snapshot import take_host_snapshot
from foldbox.utils.logger import setup_logger

logger = setup_logger()

SANDBOX_METADATA_FILE = "sandbox.json"
SANDBOX_BASELINE_FILE = "baseline.json"


def _decode(output: bytes | str | None) -> str:
    if output is None:
        return ""
    if isinstance(output, str):
        return output
    return output.decode("utf-8", errors="replace")


class LocalSandboxManager(SandboxManager):
    """Filesystem-based sandbox manager for local/dev environments.

    Key characteristics:
    - Sandboxes are directories under SANDBOX_BASE_PATH
    - The repository lives in <sandbox>/repo, metadata in <sandbox>/sandbox.json
    - The provisioning baseline snapshot lives in <sandbox>/baseline.json
    - No container isolation, no network restrictions
    - Not visited by the reaper
    """

    def __init__(self, base_path: Path | None = None) -> None:
        self._base_path = base_path or Path(SANDBOX_BASE_PATH)

    def _get_sandbox_path(self, sandbox_id: str) -> Path:
        return self._base_path / validate_sandbox_id(sandbox_id)

    def _get_repo_path(self, sandbox_id: str) -> Path:
        repo_path = self._get_sandbox_path(sandbox_id) / "repo"
        if not repo_path.is_dir():
            raise SandboxNotFoundError(f"Sandbox {sandbox_id} not found")
        return repo_path

    def _resolve_in_repo(self, sandbox_id: str, path: str) -> Path:
        repo_path = self._get_repo_path(sandbox_id)
        target = repo_path / normalize_workspace_path(path)
        # Catches escapes through symlinks inside the repository
        try:
            target.resolve().relative_to(repo_path.resolve())
        except ValueError:
            raise ValueError(f"path escapes sandbox: {path}")
        return target

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
        sandbox_path = self._get_sandbox_path(sandbox_id)
        repo_path = sandbox_path / "repo"

        logger.info(
            f"Provisioning local sandbox {sandbox_id} for {repo_owner}/{repo_name}"
        )

        try:
            sandbox_path.mkdir(parents=True, exist_ok=False)
            resolved_ref = clone_repository(
                build_clone_url(repo_owner, repo_name, credential),
                repo_path,
                ref=ref,
                credential=credential,
            )

            if SANDBOX_INSTALL_COMMAND:
                result = self._run(
                    repo_path, SANDBOX_INSTALL_COMMAND, SANDBOX_INSTALL_TIMEOUT_SECONDS
                )
                if result.exit_code != 0:
                    raise RuntimeError(
                        f"Sandbox dependency install failed with exit code "
                        f"{result.exit_code}: {result.stderr.strip()}"
                    )

            info = SandboxInfo(
                id=sandbox_id,
                container_ref=str(repo_path),
                created_at=datetime.now(timezone.utc),
                repo_binding=RepoBinding(
                    owner=repo_owner, name=repo_name, ref=resolved_ref
                ),
            )
            if SANDBOX_RECORD_BASELINE:
                (sandbox_path / SANDBOX_BASELINE_FILE).write_bytes(
                    dump_snapshot_set(take_host_snapshot(repo_path))
                )
            (sandbox_path / SANDBOX_METADATA_FILE).write_text(info.model_dump_json())

        except Exception as e:
            logger.error(f"Local sandbox provisioning failed for {sandbox_id}: {e}")
            shutil.rmtree(sandbox_path, ignore_errors=True)
            raise

        logger.info(f"Provisioned local sandbox {sandbox_id} at {sandbox_path}")
        return sandbox_id

    def get_sandbox(self, sandbox_id: str) -> SandboxInfo:
        metadata_path = self._get_sandbox_path(sandbox_id) / SANDBOX_METADATA_FILE
        if not metadata_path.is_file():
            raise SandboxNotFoundError(f"Sandbox {sandbox_id} not found")
        return SandboxInfo.model_validate_json(metadata_path.read_text())

    def _run(self, cwd: Path, command: str, timeout: float) -> ExecResult:
        start_time = time.monotonic()
        try:
            completed = subprocess.run(
                ["sh", "-c", command],
                cwd=str(cwd),
                capture_output=True,
                timeout=timeout,
            )
        except subprocess.TimeoutExpired as e:
            logger.warning(f"Command exceeded {timeout}s in {cwd}")
            return ExecResult(
                stdout=_decode(e.stdout),
                stderr=_decode(e.stderr),
                exit_code=EXEC_TIMEOUT_EXIT_CODE,
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )

        return ExecResult(
            stdout=_decode(completed.stdout),
            stderr=_decode(completed.stderr),
            exit_code=completed.returncode,
            duration_ms=int((time.monotonic() - start_time) * 1000),
        )

    def run_command(
        self,
        sandbox_id: str,
        command: str,
        timeout: float | None = None,
    ) -> ExecResult:
        repo_path = self._get_repo_path(sandbox_id)
        result = self._run(
            repo_path, command, timeout or SANDBOX_DEFAULT_EXEC_TIMEOUT_SECONDS
        )
        return bound_output(result)

    def write_file(self, sandbox_id: str, path: str, content: bytes | str) -> None:
        target = self._resolve_in_repo(sandbox_id, path)
        target.parent.mkdir(parents=True, exist_ok=True)
        data = content.encode("utf-8") if isinstance(content, str) else content
        target.write_bytes(data)

    def delete_file(self, sandbox_id: str, path: str) -> None:
        self._resolve_in_repo(sandbox_id, path).unlink(missing_ok=True)

    def destroy(self, sandbox_id: str) -> None:
        sandbox_path = self._get_sandbox_path(sandbox_id)
        if not sandbox_path.exists():
            logger.debug(f"Local sandbox {sandbox_id} already gone")
            return
        shutil.rmtree(sandbox_path, ignore_errors=True)
        logger.info(f"Destroyed local sandbox {sandbox_id}")

    def snapshot(self, sandbox_id: str) -> SnapshotSet:
        try:
            repo_path = self._get_repo_path(sandbox_id)
        except SandboxNotFoundError as e:
            logger.warning(f"Snapshot skipped: {e}")
            return {}
        return take_host_snapshot(repo_path)

    def get_baseline_snapshot(self, sandbox_id: str) -> SnapshotSet | None:
        baseline_path = self._get_sandbox_path(sandbox_id) / SANDBOX_BASELINE_FILE
        if not baseline_path.is_file():
            return None
        try:
            return load_snapshot_set(baseline_path.read_bytes())
        except ValidationError as e:
            logger.warning(f"Ignoring unreadable baseline of sandbox {sandbox_id}: {e}")
            return None
