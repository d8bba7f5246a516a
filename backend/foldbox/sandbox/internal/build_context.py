"""Build-context preparation for network-isolated sandboxes.

Sandbox containers never get network access, so the source tree is cloned on
the host into a short-lived staging directory and copied into the container
from there. Nothing else in the sandbox core touches the network.
"""

import os
import re
import shutil
import subprocess
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

from foldbox.configs import GIT_CLONE_URL_TEMPLATE
from foldbox.configs import SANDBOX_CLONE_TIMEOUT_SECONDS
from foldbox.configs import SANDBOX_STAGING_PATH
from foldbox.utils.logger import setup_logger

logger = setup_logger()

_REPO_PART_RE = re.compile(r"^[A-Za-z0-9_.-]+$")
_REDACTED = "***"


@dataclass(frozen=True)
class BuildContext:
    staging_path: Path
    repo_path: Path
    ref: str


def validate_repo_part(value: str, field_name: str) -> str:
    if not value or not _REPO_PART_RE.match(value) or ".." in value:
        raise ValueError(f"invalid {field_name}: {value!r}")
    return value


def build_clone_url(owner: str, name: str, credential: str) -> str:
    return GIT_CLONE_URL_TEMPLATE.format(
        owner=owner, name=name, credential=quote(credential, safe="")
    )


def _redact(value: str | None, secrets: list[str]) -> str:
    text = value or ""
    for secret in secrets:
        if secret:
            text = text.replace(secret, _REDACTED)
    return text


def _run_git(
    args: list[str],
    cwd: Path | None = None,
    timeout: float = SANDBOX_CLONE_TIMEOUT_SECONDS,
    secrets: list[str] | None = None,
) -> str:
    """Run git without prompting. Errors are re-raised with secrets scrubbed."""
    secrets = secrets or []
    try:
        result = subprocess.run(
            ["git", *args],
            cwd=str(cwd) if cwd else None,
            capture_output=True,
            text=True,
            timeout=timeout,
            check=True,
            env={**os.environ, "GIT_TERMINAL_PROMPT": "0"},
        )
    except subprocess.CalledProcessError as e:
        raise subprocess.CalledProcessError(
            e.returncode,
            [_redact(arg, secrets) for arg in e.cmd],
            output=_redact(e.output, secrets),
            stderr=_redact(e.stderr, secrets),
        ) from None
    except subprocess.TimeoutExpired as e:
        raise subprocess.TimeoutExpired(
            [_redact(arg, secrets) for arg in e.cmd], e.timeout
        ) from None
    return result.stdout


def clone_repository(
    clone_url: str,
    dest: Path,
    ref: str | None = None,
    timeout: float = SANDBOX_CLONE_TIMEOUT_SECONDS,
    credential: str = "",
) -> str:
    """Shallow-clone clone_url into dest.

    When ref is omitted the remote's primary branch is checked out.

    Returns:
        The checked out ref
    """
    secrets = [clone_url, credential, quote(credential, safe="")]
    args = ["clone", "--depth", "1"]
    if ref:
        args += ["--branch", ref]
    args += [clone_url, str(dest)]
    _run_git(args, timeout=timeout, secrets=secrets)

    if ref:
        return ref
    return _run_git(
        ["rev-parse", "--abbrev-ref", "HEAD"], cwd=dest, timeout=timeout
    ).strip()


def get_staging_path(sandbox_id: str, staging_root: Path | None = None) -> Path:
    return (staging_root or Path(SANDBOX_STAGING_PATH)) / sandbox_id


def prepare_build_context(
    sandbox_id: str,
    repo_owner: str,
    repo_name: str,
    ref: str | None,
    credential: str,
    staging_root: Path | None = None,
    timeout: float = SANDBOX_CLONE_TIMEOUT_SECONDS,
) -> BuildContext:
    """Clone the repository into the sandbox's host-side staging directory.

    The caller owns cleanup of the staging directory (see remove_build_context),
    on success and on failure.
    """
    staging_path = get_staging_path(sandbox_id, staging_root)
    staging_path.mkdir(parents=True, exist_ok=False)
    repo_path = staging_path / "repo"

    logger.info(f"Cloning {repo_owner}/{repo_name}@{ref or 'HEAD'} into staging")
    resolved_ref = clone_repository(
        build_clone_url(repo_owner, repo_name, credential),
        repo_path,
        ref=ref,
        timeout=timeout,
        credential=credential,
    )
    return BuildContext(
        staging_path=staging_path, repo_path=repo_path, ref=resolved_ref
    )


def remove_build_context(staging_path: Path) -> None:
    if staging_path.exists():
        shutil.rmtree(staging_path, ignore_errors=True)
        logger.debug(f"Removed staging directory {staging_path}")
