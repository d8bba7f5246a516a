"""Content-addressed file manifests and their comparison.

A snapshot records (path, sha256, size) for every regular file under a root,
skipping the directories, extensions and oversized files named by one shared
SnapshotRules object. The host walker and the in-container command both consume
the same rules, so manifests taken either way are comparable path for path.
"""

import hashlib
import os
import re
import shlex
from collections.abc import Callable
from dataclasses import dataclass
from dataclasses import field
from pathlib import Path

from pydantic import TypeAdapter

from foldbox.configs import SANDBOX_REPO_PATH
from foldbox.configs import SNAPSHOT_MAX_FILE_BYTES
from foldbox.configs import SNAPSHOT_TIMEOUT_SECONDS
from foldbox.sandbox.models import ExecResult
from foldbox.sandbox.models import FileSnapshot
from foldbox.sandbox.models import SnapshotDiff
from foldbox.sandbox.models import SnapshotSet
from foldbox.utils.logger import setup_logger

logger = setup_logger()

_HASH_RE = re.compile(r"^[0-9a-f]{64}$")
_READ_CHUNK_BYTES = 64 * 1024
_SNAPSHOT_SET_ADAPTER = TypeAdapter(SnapshotSet)

# Runs inside the container once per batch of files handed over by find -exec ... +
_HASH_LOOP_SCRIPT = (
    'for f; do sz=$(wc -c < "$f"); '
    'h=$(sha256sum "$f" | cut -d" " -f1); '
    'printf "%s %s %s\\n" "$sz" "$h" "$f"; done'
)

# (command, timeout_seconds) -> result of running `sh -c command` in the sandbox
ExecFn = Callable[[str, float], ExecResult]


@dataclass(frozen=True)
class SnapshotRules:
    """What a snapshot leaves out. Shared by the host and in-container walkers."""

    excluded_dirs: frozenset[str] = field(
        default_factory=lambda: frozenset(
            {"node_modules", ".git", ".next", "dist", "build", ".turbo"}
        )
    )
    excluded_extensions: frozenset[str] = field(
        default_factory=lambda: frozenset(
            {
                ".png",
                ".jpg",
                ".jpeg",
                ".gif",
                ".ico",
                ".woff",
                ".woff2",
                ".ttf",
                ".eot",
                ".zip",
                ".tar",
                ".gz",
            }
        )
    )
    max_file_bytes: int = SNAPSHOT_MAX_FILE_BYTES

    def is_excluded_dir(self, name: str) -> bool:
        return name in self.excluded_dirs

    def is_excluded_file(self, name: str) -> bool:
        # Same suffix rule as find -iname "*<ext>", so ".png" itself is excluded too
        lowered = name.lower()
        return any(lowered.endswith(ext) for ext in self.excluded_extensions)


DEFAULT_SNAPSHOT_RULES = SnapshotRules()


def _sha256_file(path: str) -> str:
    digest = hashlib.sha256()
    with open(path, "rb") as f:
        for chunk in iter(lambda: f.read(_READ_CHUNK_BYTES), b""):
            digest.update(chunk)
    return digest.hexdigest()


def take_host_snapshot(
    root_dir: str | Path, rules: SnapshotRules = DEFAULT_SNAPSHOT_RULES
) -> SnapshotSet:
    """Snapshot every eligible file under root_dir on the local filesystem.

    Unreadable directories and files are skipped; they never abort the walk.
    Symlinks are not followed.
    """
    snapshots: SnapshotSet = {}

    def _walk(directory: str, prefix: str) -> None:
        try:
            with os.scandir(directory) as it:
                entries = list(it)
        except OSError:
            return

        for entry in entries:
            relative_path = f"{prefix}/{entry.name}" if prefix else entry.name

            try:
                if entry.is_dir(follow_symlinks=False):
                    if not rules.is_excluded_dir(entry.name):
                        _walk(entry.path, relative_path)
                    continue

                if not entry.is_file(follow_symlinks=False):
                    continue
                if rules.is_excluded_file(entry.name):
                    continue

                size = entry.stat(follow_symlinks=False).st_size
                if size > rules.max_file_bytes:
                    continue

                snapshots[relative_path] = FileSnapshot(
                    path=relative_path, hash=_sha256_file(entry.path), size=size
                )
            except OSError:
                logger.debug(f"Skipping unreadable path {entry.path}")

    _walk(str(root_dir), "")
    return snapshots


def build_container_snapshot_command(
    root: str = SANDBOX_REPO_PATH, rules: SnapshotRules = DEFAULT_SNAPSHOT_RULES
) -> str:
    """Build the single shell command that lists `<size> <sha256> <path>` per file."""
    parts = ["find", shlex.quote(root), "-mindepth", "1"]
    # Excluded directories are pruned by basename at any depth below root
    if rules.excluded_dirs:
        name_tests = " -o ".join(
            f"-name {shlex.quote(dir_name)}" for dir_name in sorted(rules.excluded_dirs)
        )
        parts += ["\\(", "-type", "d", "\\(", name_tests, "\\)", "-prune", "\\)", "-o"]
    parts += ["\\(", "-type", "f"]
    for extension in sorted(rules.excluded_extensions):
        parts += ["-not", "-iname", shlex.quote(f"*{extension}")]
    # -size -Nc matches files strictly smaller than N bytes
    parts += ["-size", f"-{rules.max_file_bytes + 1}c"]
    parts += ["-exec", "sh", "-c", shlex.quote(_HASH_LOOP_SCRIPT), "_", "{}", "+"]
    parts.append("\\)")
    return " ".join(parts)


def parse_container_snapshot_output(
    output: str, root: str = SANDBOX_REPO_PATH
) -> SnapshotSet:
    """Parse `<size> <sha256> <absolute-path>` lines into a SnapshotSet.

    Lines that do not have that shape are skipped, as are paths outside root.
    """
    snapshots: SnapshotSet = {}
    root_prefix = root.rstrip("/") + "/"

    # Only newlines separate records; any other whitespace may be part of a path
    for line in output.split("\n"):
        parts = line.lstrip().split(" ", 2)
        if len(parts) != 3:
            continue

        size_str, file_hash, full_path = parts
        if not size_str.isdigit() or not _HASH_RE.match(file_hash):
            continue
        if not full_path.startswith(root_prefix):
            continue

        relative_path = full_path[len(root_prefix) :]
        if not relative_path:
            continue

        snapshots[relative_path] = FileSnapshot(
            path=relative_path, hash=file_hash, size=int(size_str)
        )

    return snapshots


def take_container_snapshot(
    exec_fn: ExecFn,
    root: str = SANDBOX_REPO_PATH,
    rules: SnapshotRules = DEFAULT_SNAPSHOT_RULES,
    timeout: float = SNAPSHOT_TIMEOUT_SECONDS,
) -> SnapshotSet:
    """Snapshot the tree under root inside a running sandbox with one batched command.

    Any failure (non-zero exit, exception from exec_fn) yields an empty set:
    losing change visibility must never break the caller's flow.
    """
    command = build_container_snapshot_command(root, rules)
    try:
        result = exec_fn(command, timeout)
    except Exception as e:
        logger.warning(f"Container snapshot failed: {e}")
        return {}

    if result.exit_code != 0:
        logger.warning(
            f"Container snapshot command exited with {result.exit_code}: "
            f"{result.stderr[:500]}"
        )
        return {}

    return parse_container_snapshot_output(result.stdout, root)


def compare_snapshots(before: SnapshotSet, after: SnapshotSet) -> SnapshotDiff:
    """Classify every path of before ∪ after as created, modified, deleted or unchanged.

    Identity is the hash alone; size only feeds total_diff_bytes.
    """
    diff = SnapshotDiff()

    for path in sorted(after):
        after_snap = after[path]
        before_snap = before.get(path)
        if before_snap is None:
            diff.created.append(path)
            diff.total_diff_bytes += after_snap.size
        elif before_snap.hash != after_snap.hash:
            diff.modified.append(path)
            diff.total_diff_bytes += abs(after_snap.size - before_snap.size)
        else:
            diff.unchanged_count += 1

    for path in sorted(before):
        if path not in after:
            diff.deleted.append(path)
            diff.total_diff_bytes += before[path].size

    return diff


def dump_snapshot_set(snapshots: SnapshotSet) -> bytes:
    return _SNAPSHOT_SET_ADAPTER.dump_json(snapshots)


def load_snapshot_set(data: str | bytes) -> SnapshotSet:
    """Raises pydantic.ValidationError for anything that is not a stored SnapshotSet."""
    return _SNAPSHOT_SET_ADAPTER.validate_json(data)
