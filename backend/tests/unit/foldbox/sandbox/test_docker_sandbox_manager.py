"""Unit tests for DockerSandboxManager.

The container engine is replaced by FakeContainerRuntime and the host-side
clone by a function that writes a small tree, so these tests exercise the
provisioning order, rollback and the argv sent for every operation without
Docker or network access.
"""

import subprocess
from pathlib import Path
from typing import Any

import pytest

from foldbox.configs import SANDBOX_CONTAINER_PREFIX
from foldbox.configs import SANDBOX_CPU_LIMIT
from foldbox.configs import SANDBOX_DEFAULT_EXEC_TIMEOUT_SECONDS
from foldbox.configs import SANDBOX_MAX_OUTPUT_CHARS
from foldbox.configs import SANDBOX_MEMORY_LIMIT
from foldbox.configs import SANDBOX_REPO_PATH
from foldbox.sandbox.docker.manager import BASELINE_PATH
from foldbox.sandbox.docker.manager import DockerSandboxManager
from foldbox.sandbox.docker.manager import LABEL_REPO_NAME
from foldbox.sandbox.docker.manager import LABEL_REPO_OWNER
from foldbox.sandbox.docker.manager import LABEL_REPO_REF
from foldbox.sandbox.docker.manager import LABEL_SANDBOX_ID
from foldbox.sandbox.models import ExecResult
from foldbox.sandbox.models import FileSnapshot
from foldbox.sandbox.runtime.base import ContainerNotFoundError
from foldbox.sandbox.snapshot import dump_snapshot_set
from foldbox.sandbox.snapshot import load_snapshot_set
from foldbox.sandbox.validation import ValidationStep
from tests.unit.foldbox.conftest import FakeContainerRuntime

_BUILD_CONTEXT_MODULE = "foldbox.sandbox.internal.build_context"


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture()
def clone_calls(monkeypatch: pytest.MonkeyPatch) -> list[dict[str, Any]]:
    """Replace the host-side git clone with one that writes a fixed tree."""
    calls: list[dict[str, Any]] = []

    def _fake_clone(
        clone_url: str,
        dest: Path,
        ref: str | None = None,
        timeout: float = 0,
        credential: str = "",
    ) -> str:
        calls.append({"clone_url": clone_url, "dest": dest, "ref": ref})
        (dest / "src").mkdir(parents=True)
        (dest / "package.json").write_text('{"name": "web"}')
        (dest / "src" / "index.ts").write_text("export {}\n")
        return ref or "main"

    monkeypatch.setattr(f"{_BUILD_CONTEXT_MODULE}.clone_repository", _fake_clone)
    return calls


@pytest.fixture()
def staging_root(tmp_path: Path) -> Path:
    root = tmp_path / "staging"
    root.mkdir()
    return root


@pytest.fixture()
def manager(
    fake_runtime: FakeContainerRuntime, staging_root: Path
) -> DockerSandboxManager:
    return DockerSandboxManager(runtime=fake_runtime, staging_root=staging_root)


@pytest.fixture()
def sandbox_id(
    manager: DockerSandboxManager,
    fake_runtime: FakeContainerRuntime,
    clone_calls: list[dict[str, Any]],
) -> str:
    created = manager.create("acme", "web", ref="main", credential="tok")
    fake_runtime.exec_calls.clear()
    return created


# ---------------------------------------------------------------------------
# create
# ---------------------------------------------------------------------------


def test_create_applies_isolation_posture(
    manager: DockerSandboxManager,
    fake_runtime: FakeContainerRuntime,
    clone_calls: list[dict[str, Any]],
) -> None:
    sandbox_id = manager.create("acme", "web", ref="main", credential="tok")

    assert len(fake_runtime.specs) == 1
    spec = fake_runtime.specs[0]
    assert spec.name == f"{SANDBOX_CONTAINER_PREFIX}{sandbox_id}"
    assert spec.network_disabled is True
    assert spec.read_only_root is True
    assert spec.memory_limit == SANDBOX_MEMORY_LIMIT
    assert spec.cpu_limit == SANDBOX_CPU_LIMIT
    assert "noexec" in spec.tmpfs["/tmp"]
    assert "nosuid" in spec.tmpfs["/tmp"]
    assert "/workspace" in spec.tmpfs
    assert spec.labels == {
        LABEL_SANDBOX_ID: sandbox_id,
        LABEL_REPO_OWNER: "acme",
        LABEL_REPO_NAME: "web",
        LABEL_REPO_REF: "main",
    }


def test_create_materializes_repo_and_removes_staging(
    manager: DockerSandboxManager,
    fake_runtime: FakeContainerRuntime,
    clone_calls: list[dict[str, Any]],
    staging_root: Path,
) -> None:
    sandbox_id = manager.create("acme", "web", credential="tok")

    container = fake_runtime.containers[f"{SANDBOX_CONTAINER_PREFIX}{sandbox_id}"]
    assert container.running
    assert set(container.copied_files) == {"package.json", "src/index.ts"}
    assert fake_runtime.exec_calls[0].argv == ["mkdir", "-p", SANDBOX_REPO_PATH]
    assert list(staging_root.iterdir()) == []

    assert "x-access-token:tok@github.com/acme/web.git" in clone_calls[0]["clone_url"]
    assert clone_calls[0]["ref"] is None


def test_create_records_resolved_default_branch(
    manager: DockerSandboxManager,
    clone_calls: list[dict[str, Any]],
) -> None:
    sandbox_id = manager.create("acme", "web")

    info = manager.get_sandbox(sandbox_id)

    assert info.id == sandbox_id
    assert info.repo_binding.owner == "acme"
    assert info.repo_binding.name == "web"
    assert info.repo_binding.ref == "main"


@pytest.mark.parametrize(
    "owner, name",
    [("", "web"), ("acme", ""), ("..", "web"), ("acme", "web; rm -rf /")],
)
def test_create_rejects_invalid_repository(
    manager: DockerSandboxManager,
    fake_runtime: FakeContainerRuntime,
    clone_calls: list[dict[str, Any]],
    owner: str,
    name: str,
) -> None:
    with pytest.raises(ValueError):
        manager.create(owner, name)

    assert clone_calls == []
    assert fake_runtime.specs == []


# ---------------------------------------------------------------------------
# create: rollback
# ---------------------------------------------------------------------------


@pytest.mark.parametrize("failing_step", ["start", "copy_in"])
def test_create_rolls_back_on_materialization_failure(
    manager: DockerSandboxManager,
    fake_runtime: FakeContainerRuntime,
    clone_calls: list[dict[str, Any]],
    staging_root: Path,
    failing_step: str,
) -> None:
    fake_runtime.failures[failing_step] = RuntimeError("tar: write error")

    with pytest.raises(RuntimeError, match="tar: write error"):
        manager.create("acme", "web")

    assert fake_runtime.containers == {}
    assert len(fake_runtime.removed) == 1
    assert fake_runtime.removed[0].startswith(SANDBOX_CONTAINER_PREFIX)
    assert list(staging_root.iterdir()) == []


def test_create_rolls_back_on_clone_failure(
    manager: DockerSandboxManager,
    fake_runtime: FakeContainerRuntime,
    staging_root: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _failing_clone(*args: Any, **kwargs: Any) -> str:
        raise subprocess.CalledProcessError(128, ["git", "clone"], stderr="not found")

    monkeypatch.setattr(f"{_BUILD_CONTEXT_MODULE}.clone_repository", _failing_clone)

    with pytest.raises(subprocess.CalledProcessError):
        manager.create("acme", "missing")

    assert fake_runtime.specs == []
    assert list(staging_root.iterdir()) == []


def test_create_rollback_error_does_not_mask_original(
    manager: DockerSandboxManager,
    fake_runtime: FakeContainerRuntime,
    clone_calls: list[dict[str, Any]],
) -> None:
    fake_runtime.failures["copy_in"] = RuntimeError("copy failed")
    fake_runtime.failures["remove"] = RuntimeError("daemon hiccup")

    with pytest.raises(RuntimeError, match="copy failed"):
        manager.create("acme", "web")


def test_create_rolls_back_on_install_failure(
    manager: DockerSandboxManager,
    fake_runtime: FakeContainerRuntime,
    clone_calls: list[dict[str, Any]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "foldbox.sandbox.docker.manager.SANDBOX_INSTALL_COMMAND", "npm ci --offline"
    )

    def _handler(argv: list[str], stdin: bytes | None) -> ExecResult | None:
        if argv == ["sh", "-c", "npm ci --offline"]:
            return ExecResult(stderr="ENOTCACHED", exit_code=1)
        return None

    fake_runtime.exec_handler = _handler

    with pytest.raises(RuntimeError, match="dependency install"):
        manager.create("acme", "web")

    assert fake_runtime.containers == {}
    install_call = fake_runtime.exec_calls[-1]
    assert install_call.workdir == SANDBOX_REPO_PATH


# ---------------------------------------------------------------------------
# run_command
# ---------------------------------------------------------------------------


def test_run_command_is_single_shell_invocation_in_repo(
    manager: DockerSandboxManager, fake_runtime: FakeContainerRuntime, sandbox_id: str
) -> None:
    manager.run_command(sandbox_id, "npm test -- --watch=false && echo done")

    call = fake_runtime.exec_calls[-1]
    assert call.argv == ["sh", "-c", "npm test -- --watch=false && echo done"]
    assert call.workdir == SANDBOX_REPO_PATH
    assert call.timeout == SANDBOX_DEFAULT_EXEC_TIMEOUT_SECONDS


def test_run_command_returns_failures_as_results(
    manager: DockerSandboxManager, fake_runtime: FakeContainerRuntime, sandbox_id: str
) -> None:
    fake_runtime.exec_handler = lambda argv, stdin: ExecResult(
        stdout="partial", stderr="boom", exit_code=2
    )

    result = manager.run_command(sandbox_id, "false", timeout=5)

    assert result.exit_code == 2
    assert result.stdout == "partial"
    assert result.stderr == "boom"
    assert fake_runtime.exec_calls[-1].timeout == 5


def test_run_command_truncates_both_streams(
    manager: DockerSandboxManager, fake_runtime: FakeContainerRuntime, sandbox_id: str
) -> None:
    fake_runtime.exec_handler = lambda argv, stdin: ExecResult(
        stdout="o" * (SANDBOX_MAX_OUTPUT_CHARS + 100),
        stderr="e" * (SANDBOX_MAX_OUTPUT_CHARS + 100),
        exit_code=1,
    )

    result = manager.run_command(sandbox_id, "yes")

    assert result.stdout == "o" * SANDBOX_MAX_OUTPUT_CHARS
    assert result.stderr == "e" * SANDBOX_MAX_OUTPUT_CHARS
    assert result.exit_code == 1


def test_run_command_on_missing_sandbox_raises(
    manager: DockerSandboxManager,
) -> None:
    with pytest.raises(ContainerNotFoundError):
        manager.run_command("does-not-exist", "ls")


def test_run_command_rejects_malformed_sandbox_id(
    manager: DockerSandboxManager, fake_runtime: FakeContainerRuntime
) -> None:
    with pytest.raises(ValueError):
        manager.run_command("../other", "ls")
    assert fake_runtime.exec_calls == []


# ---------------------------------------------------------------------------
# write_file / delete_file
# ---------------------------------------------------------------------------


def test_write_file_streams_content_as_stdin(
    manager: DockerSandboxManager, fake_runtime: FakeContainerRuntime, sandbox_id: str
) -> None:
    content = "const s = `$(rm -rf /)`;\n"

    manager.write_file(sandbox_id, "src/lib/util.ts", content)

    mkdir_call, write_call = fake_runtime.exec_calls
    assert mkdir_call.argv == ["mkdir", "-p", f"{SANDBOX_REPO_PATH}/src/lib"]
    assert write_call.argv == [
        "sh",
        "-c",
        'cat > "$1"',
        "sh",
        f"{SANDBOX_REPO_PATH}/src/lib/util.ts",
    ]
    assert write_call.stdin == content.encode("utf-8")


def test_write_file_failure_raises(
    manager: DockerSandboxManager, fake_runtime: FakeContainerRuntime, sandbox_id: str
) -> None:
    def _handler(argv: list[str], stdin: bytes | None) -> ExecResult | None:
        if stdin is not None:
            return ExecResult(stderr="No space left on device", exit_code=1)
        return None

    fake_runtime.exec_handler = _handler

    with pytest.raises(RuntimeError, match="No space left"):
        manager.write_file(sandbox_id, "big.bin", b"\x00" * 10)


@pytest.mark.parametrize(
    "path", ["../escape.txt", "/etc/passwd", "src/../../escape.txt", "", "."]
)
def test_file_operations_reject_paths_outside_workspace(
    manager: DockerSandboxManager,
    fake_runtime: FakeContainerRuntime,
    sandbox_id: str,
    path: str,
) -> None:
    with pytest.raises(ValueError):
        manager.write_file(sandbox_id, path, "x")
    with pytest.raises(ValueError):
        manager.delete_file(sandbox_id, path)

    assert fake_runtime.exec_calls == []


def test_delete_file_uses_force_remove(
    manager: DockerSandboxManager, fake_runtime: FakeContainerRuntime, sandbox_id: str
) -> None:
    manager.delete_file(sandbox_id, "src/old.ts")

    assert fake_runtime.exec_calls[-1].argv == [
        "rm",
        "-f",
        f"{SANDBOX_REPO_PATH}/src/old.ts",
    ]


# ---------------------------------------------------------------------------
# destroy
# ---------------------------------------------------------------------------


def test_destroy_is_idempotent(
    manager: DockerSandboxManager, fake_runtime: FakeContainerRuntime, sandbox_id: str
) -> None:
    manager.destroy(sandbox_id)
    manager.destroy(sandbox_id)

    assert fake_runtime.containers == {}
    with pytest.raises(ContainerNotFoundError):
        manager.get_sandbox(sandbox_id)


# ---------------------------------------------------------------------------
# snapshot
# ---------------------------------------------------------------------------


def test_snapshot_is_not_subject_to_output_cap(
    manager: DockerSandboxManager, fake_runtime: FakeContainerRuntime, sandbox_id: str
) -> None:
    file_hash = "a" * 64
    lines = [
        f"10 {file_hash} {SANDBOX_REPO_PATH}/src/generated/file_{i:05d}.ts"
        for i in range(2000)
    ]
    output = "\n".join(lines) + "\n"
    assert len(output) > SANDBOX_MAX_OUTPUT_CHARS
    fake_runtime.exec_handler = lambda argv, stdin: ExecResult(
        stdout=output, exit_code=0
    )

    snapshots = manager.snapshot(sandbox_id)

    assert len(snapshots) == 2000
    call = fake_runtime.exec_calls[-1]
    assert call.argv[:2] == ["sh", "-c"]
    assert call.argv[2].startswith("find ")


def test_snapshot_of_missing_sandbox_is_empty(manager: DockerSandboxManager) -> None:
    assert manager.snapshot("does-not-exist") == {}


# ---------------------------------------------------------------------------
# baseline and validate
# ---------------------------------------------------------------------------

_HASH_A = "a" * 64
_HASH_B = "b" * 64


def _is_snapshot_command(argv: list[str]) -> bool:
    return argv[:2] == ["sh", "-c"] and argv[2].startswith("find ")


def test_create_records_baseline_outside_repository(
    manager: DockerSandboxManager,
    fake_runtime: FakeContainerRuntime,
    clone_calls: list[dict[str, Any]],
) -> None:
    def _handler(argv: list[str], stdin: bytes | None) -> ExecResult | None:
        if _is_snapshot_command(argv):
            return ExecResult(
                stdout=f"9 {_HASH_A} {SANDBOX_REPO_PATH}/src/index.ts\n", exit_code=0
            )
        return None

    fake_runtime.exec_handler = _handler

    manager.create("acme", "web")

    write_call = fake_runtime.exec_calls[-1]
    assert write_call.argv == ["sh", "-c", 'cat > "$1"', "sh", BASELINE_PATH]
    assert not BASELINE_PATH.startswith(SANDBOX_REPO_PATH + "/")
    assert write_call.stdin is not None
    baseline = load_snapshot_set(write_call.stdin)
    assert baseline == {
        "src/index.ts": FileSnapshot(path="src/index.ts", hash=_HASH_A, size=9)
    }


def test_create_without_baseline(
    manager: DockerSandboxManager,
    fake_runtime: FakeContainerRuntime,
    clone_calls: list[dict[str, Any]],
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr(
        "foldbox.sandbox.docker.manager.SANDBOX_RECORD_BASELINE", False
    )

    manager.create("acme", "web")

    assert all(BASELINE_PATH not in call.argv for call in fake_runtime.exec_calls)


def test_get_baseline_snapshot(
    manager: DockerSandboxManager, fake_runtime: FakeContainerRuntime, sandbox_id: str
) -> None:
    stored = {"a.ts": FileSnapshot(path="a.ts", hash=_HASH_A, size=1)}
    responses = [
        ExecResult(stdout=dump_snapshot_set(stored).decode(), exit_code=0),
        ExecResult(stderr="No such file or directory", exit_code=1),
        ExecResult(stdout="{not json", exit_code=0),
    ]
    fake_runtime.exec_handler = lambda argv, stdin: responses.pop(0)

    assert manager.get_baseline_snapshot(sandbox_id) == stored
    assert manager.get_baseline_snapshot(sandbox_id) is None
    assert manager.get_baseline_snapshot(sandbox_id) is None
    assert fake_runtime.exec_calls[0].argv == ["cat", BASELINE_PATH]


def test_validate_runs_steps_in_repository_and_diffs_against_baseline(
    manager: DockerSandboxManager, fake_runtime: FakeContainerRuntime, sandbox_id: str
) -> None:
    baseline = {
        "a.ts": FileSnapshot(path="a.ts", hash=_HASH_A, size=10),
        "gone.ts": FileSnapshot(path="gone.ts", hash=_HASH_A, size=4),
    }
    current = (
        f"12 {_HASH_B} {SANDBOX_REPO_PATH}/a.ts\n"
        f"3 {_HASH_B} {SANDBOX_REPO_PATH}/new.ts\n"
    )

    def _handler(argv: list[str], stdin: bytes | None) -> ExecResult | None:
        if argv == ["cat", BASELINE_PATH]:
            return ExecResult(stdout=dump_snapshot_set(baseline).decode(), exit_code=0)
        if _is_snapshot_command(argv):
            return ExecResult(stdout=current, exit_code=0)
        if argv == ["sh", "-c", "npx tsc --noEmit"]:
            return ExecResult(stdout="a.ts(1,1): error TS2304", exit_code=2)
        return None

    fake_runtime.exec_handler = _handler
    steps = [ValidationStep(name="typecheck", command="npx tsc --noEmit", timeout=60)]

    result = manager.validate(sandbox_id, steps)

    assert result.success is False
    assert result.steps[0].errors == ["a.ts(1,1): error TS2304"]
    typecheck_call = next(
        call
        for call in fake_runtime.exec_calls
        if call.argv == ["sh", "-c", "npx tsc --noEmit"]
    )
    assert typecheck_call.workdir == SANDBOX_REPO_PATH
    assert typecheck_call.timeout == 60
    assert result.diff is not None
    assert result.diff.created == ["new.ts"]
    assert result.diff.modified == ["a.ts"]
    assert result.diff.deleted == ["gone.ts"]
    assert result.diff.total_diff_bytes == 3 + 2 + 4


def test_validate_missing_sandbox_raises(manager: DockerSandboxManager) -> None:
    with pytest.raises(ContainerNotFoundError):
        manager.validate("does-not-exist", steps=[])


def test_validate_appends_benchmark_when_enabled(
    manager: DockerSandboxManager,
    fake_runtime: FakeContainerRuntime,
    sandbox_id: str,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    monkeypatch.setattr("foldbox.sandbox.base.SANDBOX_BENCHMARK_ENABLED", True)

    result = manager.validate(sandbox_id, steps=[])

    assert [step.step for step in result.steps] == ["benchmark", "diff"]
    assert result.steps[0].success is True
