"""
Pytest fixtures shared by the foldbox unit tests.

FakeContainerRuntime is an in-memory ContainerRuntime that records every
ContainerSpec and exec argv so tests can assert on exactly what would have
been sent to the container engine.
"""

from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from datetime import datetime
from datetime import timezone
from pathlib import Path
from typing import Any
from uuid import uuid4

import pytest

from foldbox.sandbox.models import ContainerInfo
from foldbox.sandbox.models import ContainerSpec
from foldbox.sandbox.models import ExecResult
from foldbox.sandbox.runtime.base import ContainerNotFoundError
from foldbox.sandbox.runtime.base import ContainerRuntime


@dataclass
class ExecCall:
    container_ref: str
    argv: list[str]
    stdin: bytes | None = None
    workdir: str | None = None
    timeout: float | None = None


@dataclass
class FakeContainer:
    id: str
    spec: ContainerSpec
    created_at: datetime
    running: bool = False
    # relative path -> content, captured at copy_in time
    copied_files: dict[str, bytes] = field(default_factory=dict)


# (argv, stdin) -> result, or None for a plain success
ExecHandler = Callable[[list[str], bytes | None], ExecResult | None]


class FakeContainerRuntime(ContainerRuntime):
    def __init__(self) -> None:
        self.containers: dict[str, FakeContainer] = {}
        self.specs: list[ContainerSpec] = []
        self.exec_calls: list[ExecCall] = []
        self.removed: list[str] = []
        self.exec_handler: ExecHandler | None = None
        # operation name -> exception raised on the next call
        self.failures: dict[str, Exception] = {}

    def _maybe_fail(self, operation: str) -> None:
        error = self.failures.pop(operation, None)
        if error is not None:
            raise error

    def _find(self, container_ref: str) -> FakeContainer:
        for name, container in self.containers.items():
            if container_ref in (name, container.id):
                return container
        raise ContainerNotFoundError(f"Container {container_ref} not found")

    def add_container(
        self, name: str, created_at: datetime, labels: dict[str, str] | None = None
    ) -> FakeContainer:
        container = FakeContainer(
            id=uuid4().hex,
            spec=ContainerSpec(
                name=name,
                image="node:20-alpine",
                command=["sleep", "infinity"],
                working_dir="/workspace",
                memory_limit="512m",
                cpu_limit=0.5,
                labels=labels or {},
            ),
            created_at=created_at,
            running=True,
        )
        self.containers[name] = container
        return container

    def create_container(self, spec: ContainerSpec) -> str:
        self._maybe_fail("create_container")
        self.specs.append(spec)
        container = FakeContainer(
            id=uuid4().hex, spec=spec, created_at=datetime.now(timezone.utc)
        )
        self.containers[spec.name] = container
        return container.id

    def start(self, container_ref: str) -> None:
        self._maybe_fail("start")
        self._find(container_ref).running = True

    def exec(
        self,
        container_ref: str,
        argv: list[str],
        *,
        stdin: bytes | None = None,
        workdir: str | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        self._find(container_ref)
        self.exec_calls.append(
            ExecCall(container_ref, list(argv), stdin, workdir, timeout)
        )
        self._maybe_fail("exec")
        if self.exec_handler is not None:
            result = self.exec_handler(argv, stdin)
            if result is not None:
                return result
        return ExecResult(exit_code=0)

    def copy_in(
        self,
        container_ref: str,
        src_dir: Path,
        dst_dir: str,
        timeout: float | None = None,
    ) -> None:
        container = self._find(container_ref)
        self._maybe_fail("copy_in")
        for path in src_dir.rglob("*"):
            if path.is_file():
                container.copied_files[path.relative_to(src_dir).as_posix()] = (
                    path.read_bytes()
                )

    def remove(self, container_ref: str) -> bool:
        self._maybe_fail("remove")
        try:
            container = self._find(container_ref)
        except ContainerNotFoundError:
            return False
        del self.containers[container.spec.name]
        self.removed.append(container.spec.name)
        return True

    def inspect(self, container_ref: str) -> ContainerInfo:
        container = self._find(container_ref)
        return ContainerInfo(
            id=container.id,
            name=container.spec.name,
            created_at=container.created_at,
            labels=container.spec.labels,
            running=container.running,
        )

    def list_containers(self, name_prefix: str) -> list[ContainerInfo]:
        self._maybe_fail("list_containers")
        return [
            self.inspect(name)
            for name in self.containers
            if name.startswith(name_prefix)
        ]


@pytest.fixture()
def fake_runtime() -> FakeContainerRuntime:
    return FakeContainerRuntime()


def make_exec_result(**params: Any) -> ExecResult:
    defaults: dict[str, Any] = {
        "stdout": "",
        "stderr": "",
        "exit_code": 0,
        "duration_ms": 1,
    }
    defaults.update(params)
    return ExecResult(**defaults)
