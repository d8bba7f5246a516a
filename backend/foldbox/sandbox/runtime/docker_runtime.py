"""Docker-backed container runtime.

Talks to the local Docker daemon through the Docker SDK. Commands are sent as
argv lists through the exec API; file payloads travel over the attached exec
socket as stdin so they are never re-encoded as shell text.
"""

import io
import math
import re
import selectors
import socket
import struct
import tarfile
import threading
import time
from datetime import datetime
from datetime import timezone
from pathlib import Path
from typing import Any

import docker
import requests
from docker.errors import APIError
from docker.errors import DockerException
from docker.errors import NotFound
from docker.utils.socket import STDOUT

from foldbox.configs import DOCKER_CLIENT_TIMEOUT_SECONDS
from foldbox.sandbox.models import ContainerInfo
from foldbox.sandbox.models import ContainerSpec
from foldbox.sandbox.models import ExecResult
from foldbox.sandbox.runtime.base import ContainerNotFoundError
from foldbox.sandbox.runtime.base import ContainerRuntime
from foldbox.sandbox.runtime.base import EXEC_TIMEOUT_EXIT_CODE
from foldbox.sandbox.runtime.base import RuntimeUnavailableError
from foldbox.utils.logger import setup_logger

logger = setup_logger()

# Extra time the host side waits on the exec socket beyond the in-container timeout
EXEC_SOCKET_GRACE_SECONDS = 5

# Exit status of `timeout -s KILL` once it has killed the command (128 + SIGKILL)
TIMEOUT_KILLED_EXIT_CODE = 137

# Multiplexed exec stream: 1 byte stream id, 3 bytes padding, 4 bytes big-endian size
_FRAME_HEADER = struct.Struct(">BxxxL")
_RECV_CHUNK_SIZE = 65536


_FRACTION_RE = re.compile(r"\.(\d+)")


def _parse_docker_timestamp(value: str) -> datetime:
    """Parse Docker's RFC 3339 timestamps (nanosecond precision, trailing Z)."""
    value = value.replace("Z", "+00:00")
    # datetime only handles microseconds
    value = _FRACTION_RE.sub(lambda m: "." + m.group(1)[:6].ljust(6, "0"), value, 1)
    return datetime.fromisoformat(value)


def _with_timeout(argv: list[str], timeout: float | None) -> list[str]:
    if not timeout:
        return argv
    return ["timeout", "-s", "KILL", str(max(1, math.ceil(timeout))), *argv]


def _read_exec_stream(
    raw_sock: socket.socket,
    deadline: float | None,
    stdout_chunks: list[bytes],
    stderr_chunks: list[bytes],
) -> bool:
    """Demultiplex an attached exec stream into stdout/stderr chunks.

    Reads until the daemon closes the stream or the deadline passes. A command can
    leave the stream open after its own timeout fired (e.g. a background child
    still holding stdout), so every read waits on the socket with the remaining
    time instead of blocking.

    Returns:
        True if the deadline passed before the stream was closed
    """
    pending = bytearray()
    with selectors.DefaultSelector() as selector:
        selector.register(raw_sock, selectors.EVENT_READ)
        while True:
            remaining = None if deadline is None else deadline - time.monotonic()
            if remaining is not None and remaining <= 0:
                return True
            if not selector.select(remaining):
                continue

            data = raw_sock.recv(_RECV_CHUNK_SIZE)
            if not data:
                return False
            pending.extend(data)

            while len(pending) >= _FRAME_HEADER.size:
                stream, size = _FRAME_HEADER.unpack_from(pending)
                frame_end = _FRAME_HEADER.size + size
                if len(pending) < frame_end:
                    break
                payload = bytes(pending[_FRAME_HEADER.size : frame_end])
                del pending[:frame_end]
                if stream == STDOUT:
                    stdout_chunks.append(payload)
                else:
                    stderr_chunks.append(payload)


class DockerContainerRuntime(ContainerRuntime):
    """ContainerRuntime implementation on top of the Docker SDK for Python."""

    def __init__(self, client: docker.DockerClient | None = None) -> None:
        self._client_instance = client
        self._client_lock = threading.Lock()

    @property
    def _client(self) -> docker.DockerClient:
        if self._client_instance is None:
            with self._client_lock:
                if self._client_instance is None:
                    try:
                        self._client_instance = docker.from_env(
                            timeout=DOCKER_CLIENT_TIMEOUT_SECONDS
                        )
                    except DockerException as e:
                        raise RuntimeUnavailableError(
                            f"Docker daemon is not reachable: {e}"
                        ) from e
        return self._client_instance

    def create_container(self, spec: ContainerSpec) -> str:
        security_opt = ["no-new-privileges"]
        container = self._client.containers.create(
            image=spec.image,
            command=spec.command,
            name=spec.name,
            working_dir=spec.working_dir,
            mem_limit=spec.memory_limit,
            # Same value for swap disables swap beyond the memory ceiling
            memswap_limit=spec.memory_limit,
            nano_cpus=int(spec.cpu_limit * 1_000_000_000),
            network_mode="none" if spec.network_disabled else None,
            network_disabled=spec.network_disabled,
            read_only=spec.read_only_root,
            tmpfs=spec.tmpfs,
            labels=spec.labels,
            security_opt=security_opt,
        )
        logger.debug(f"Created container {spec.name} ({container.id})")
        return container.id

    def start(self, container_ref: str) -> None:
        try:
            self._client.api.start(container_ref)
        except NotFound as e:
            raise ContainerNotFoundError(
                f"Container {container_ref} not found"
            ) from e

    def exec(
        self,
        container_ref: str,
        argv: list[str],
        *,
        stdin: bytes | None = None,
        workdir: str | None = None,
        timeout: float | None = None,
    ) -> ExecResult:
        api = self._client.api
        start_time = time.monotonic()

        try:
            exec_id = api.exec_create(
                container_ref,
                _with_timeout(argv, timeout),
                stdin=stdin is not None,
                stdout=True,
                stderr=True,
                tty=False,
                workdir=workdir,
            )["Id"]
            sock = api.exec_start(exec_id, socket=True)
        except NotFound as e:
            raise ContainerNotFoundError(
                f"Container {container_ref} not found"
            ) from e
        except APIError as e:
            # e.g. the container exists but is not running
            logger.warning(f"Exec in container {container_ref} rejected: {e}")
            return ExecResult(
                stderr=str(e),
                exit_code=1,
                duration_ms=int((time.monotonic() - start_time) * 1000),
            )
        except requests.exceptions.RequestException as e:
            raise RuntimeUnavailableError(f"Docker daemon unreachable: {e}") from e

        stdout_chunks: list[bytes] = []
        stderr_chunks: list[bytes] = []

        raw_sock = getattr(sock, "_sock", sock)
        deadline = (
            time.monotonic() + timeout + EXEC_SOCKET_GRACE_SECONDS if timeout else None
        )
        try:
            if stdin is not None:
                raw_sock.sendall(stdin)
            raw_sock.shutdown(socket.SHUT_WR)
            timed_out = _read_exec_stream(
                raw_sock, deadline, stdout_chunks, stderr_chunks
            )
        finally:
            sock.close()

        exit_code: int | None = None
        if timed_out:
            logger.warning(
                f"Exec in container {container_ref} exceeded {timeout}s, "
                "returning partial output"
            )
        else:
            try:
                exit_code = api.exec_inspect(exec_id).get("ExitCode")
            except NotFound as e:
                raise ContainerNotFoundError(
                    f"Container {container_ref} disappeared during exec"
                ) from e

        duration_ms = int((time.monotonic() - start_time) * 1000)
        # timeout -s KILL reports 128 + SIGKILL when it had to kill the command
        if (
            timeout
            and exit_code == TIMEOUT_KILLED_EXIT_CODE
            and duration_ms >= timeout * 1000
        ):
            exit_code = EXEC_TIMEOUT_EXIT_CODE

        return ExecResult(
            stdout=b"".join(stdout_chunks).decode("utf-8", errors="replace"),
            stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
            exit_code=EXEC_TIMEOUT_EXIT_CODE if exit_code is None else exit_code,
            duration_ms=duration_ms,
        )

    def copy_in(
        self,
        container_ref: str,
        src_dir: Path,
        dst_dir: str,
        timeout: float | None = None,
    ) -> None:
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w") as tar:
            for child in sorted(src_dir.iterdir()):
                tar.add(str(child), arcname=child.name)

        # -o: do not restore the host's file ownership inside the container
        result = self.exec(
            container_ref,
            ["tar", "-x", "-o", "-f", "-", "-C", dst_dir],
            stdin=buffer.getvalue(),
            timeout=timeout,
        )
        if result.exit_code != 0:
            raise RuntimeError(
                f"Failed to copy {src_dir} into {container_ref}:{dst_dir} "
                f"(exit code {result.exit_code}): {result.stderr.strip()}"
            )

    def remove(self, container_ref: str) -> bool:
        try:
            self._client.api.remove_container(container_ref, force=True)
        except NotFound:
            logger.debug(f"Container {container_ref} already removed")
            return False
        return True

    def inspect(self, container_ref: str) -> ContainerInfo:
        try:
            data = self._client.api.inspect_container(container_ref)
        except NotFound as e:
            raise ContainerNotFoundError(
                f"Container {container_ref} not found"
            ) from e

        return ContainerInfo(
            id=data["Id"],
            name=data["Name"].lstrip("/"),
            created_at=_parse_docker_timestamp(data["Created"]),
            labels=(data.get("Config") or {}).get("Labels") or {},
            running=bool((data.get("State") or {}).get("Running")),
        )

    def list_containers(self, name_prefix: str) -> list[ContainerInfo]:
        try:
            # The name filter is a substring match, so the prefix is re-checked below
            raw_containers: list[dict[str, Any]] = self._client.api.containers(
                all=True, filters={"name": name_prefix}
            )
        except (DockerException, requests.exceptions.RequestException) as e:
            raise RuntimeUnavailableError(f"Failed to list containers: {e}") from e

        containers: list[ContainerInfo] = []
        for raw in raw_containers:
            names = [name.lstrip("/") for name in raw.get("Names") or []]
            name = next((n for n in names if n.startswith(name_prefix)), None)
            if name is None:
                continue
            containers.append(
                ContainerInfo(
                    id=raw["Id"],
                    name=name,
                    created_at=datetime.fromtimestamp(raw["Created"], tz=timezone.utc),
                    labels=raw.get("Labels") or {},
                    running=raw.get("State") == "running",
                )
            )
        return containers
