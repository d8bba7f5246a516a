"""Internal HTTP boundary for the sandbox core.

All routes are POST with JSON bodies, except the lookup of a single sandbox.
"""

from collections.abc import Generator
from contextlib import contextmanager

from fastapi import APIRouter
from fastapi import Depends
from fastapi import HTTPException

from foldbox.configs import GITHUB_TOKEN
from foldbox.configs import SANDBOX_BACKEND
from foldbox.configs import SandboxBackend
from foldbox.sandbox.base import get_sandbox_manager
from foldbox.sandbox.base import SandboxManager
from foldbox.sandbox.base import SandboxNotFoundError
from foldbox.sandbox.models import ExecResult
from foldbox.sandbox.models import SandboxInfo
from foldbox.sandbox.models import SnapshotDiff
from foldbox.sandbox.models import ValidationResult
from foldbox.sandbox.models import ValidationStepResult
from foldbox.sandbox.reaper import sweep
from foldbox.sandbox.runtime.base import ContainerNotFoundError
from foldbox.sandbox.runtime.base import RuntimeUnavailableError
from foldbox.sandbox.snapshot import compare_snapshots
from foldbox.server.models import SandboxCleanupRequest
from foldbox.server.models import SandboxCleanupResponse
from foldbox.server.models import SandboxCreateRequest
from foldbox.server.models import SandboxCreateResponse
from foldbox.server.models import SandboxDiffRequest
from foldbox.server.models import SandboxFileRequest
from foldbox.server.models import SandboxRequest
from foldbox.server.models import SandboxRunRequest
from foldbox.server.models import SandboxSnapshotResponse
from foldbox.server.models import SandboxStatusResponse
from foldbox.server.models import SandboxWriteRequest
from foldbox.utils.logger import setup_logger

logger = setup_logger()

router = APIRouter(prefix="/sandbox")


@contextmanager
def _sandbox_errors() -> Generator[None, None, None]:
    """Translate sandbox-layer errors into HTTP errors."""
    try:
        yield
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except (SandboxNotFoundError, ContainerNotFoundError) as e:
        raise HTTPException(status_code=404, detail=str(e))
    except RuntimeUnavailableError as e:
        logger.error(f"Container runtime unavailable: {e}")
        raise HTTPException(status_code=503, detail="Container runtime unavailable")


# =============================================================================
# Lifecycle
# =============================================================================


@router.post("/create", response_model=SandboxCreateResponse)
def create_sandbox(
    request: SandboxCreateRequest,
    sandbox_manager: SandboxManager = Depends(get_sandbox_manager),
) -> SandboxCreateResponse:
    try:
        sandbox_id = sandbox_manager.create(
            repo_owner=request.repo_owner,
            repo_name=request.repo_name,
            ref=request.ref,
            credential=request.credential or GITHUB_TOKEN,
        )
    except ValueError as e:
        raise HTTPException(status_code=400, detail=str(e))
    except Exception as e:
        logger.exception("Sandbox creation failed")
        raise HTTPException(
            status_code=500, detail=f"Sandbox provisioning failed: {e}"
        )
    return SandboxCreateResponse(sandbox_id=sandbox_id)


@router.post("/destroy", response_model=SandboxStatusResponse)
def destroy_sandbox(
    request: SandboxRequest,
    sandbox_manager: SandboxManager = Depends(get_sandbox_manager),
) -> SandboxStatusResponse:
    with _sandbox_errors():
        sandbox_manager.destroy(request.sandbox_id)
    return SandboxStatusResponse()


@router.get("/{sandbox_id}", response_model=SandboxInfo)
def get_sandbox(
    sandbox_id: str,
    sandbox_manager: SandboxManager = Depends(get_sandbox_manager),
) -> SandboxInfo:
    with _sandbox_errors():
        return sandbox_manager.get_sandbox(sandbox_id)


@router.post("/cleanup", response_model=SandboxCleanupResponse)
def cleanup_sandboxes(request: SandboxCleanupRequest) -> SandboxCleanupResponse:
    # Local sandboxes are plain directories and are never reaped
    if SANDBOX_BACKEND == SandboxBackend.LOCAL:
        return SandboxCleanupResponse(removed=0)
    return SandboxCleanupResponse(
        removed=sweep(max_age_minutes=request.max_age_minutes)
    )


# =============================================================================
# Execution and files
# =============================================================================


@router.post("/run", response_model=ExecResult)
def run_command(
    request: SandboxRunRequest,
    sandbox_manager: SandboxManager = Depends(get_sandbox_manager),
) -> ExecResult:
    with _sandbox_errors():
        return sandbox_manager.run_command(
            request.sandbox_id, request.command, timeout=request.timeout
        )


@router.post("/write", response_model=SandboxStatusResponse)
def write_file(
    request: SandboxWriteRequest,
    sandbox_manager: SandboxManager = Depends(get_sandbox_manager),
) -> SandboxStatusResponse:
    with _sandbox_errors():
        sandbox_manager.write_file(request.sandbox_id, request.path, request.payload())
    return SandboxStatusResponse()


@router.post("/delete-file", response_model=SandboxStatusResponse)
def delete_file(
    request: SandboxFileRequest,
    sandbox_manager: SandboxManager = Depends(get_sandbox_manager),
) -> SandboxStatusResponse:
    with _sandbox_errors():
        sandbox_manager.delete_file(request.sandbox_id, request.path)
    return SandboxStatusResponse()


# =============================================================================
# Snapshots
# =============================================================================


@router.post("/snapshot", response_model=SandboxSnapshotResponse)
def snapshot_sandbox(
    request: SandboxRequest,
    sandbox_manager: SandboxManager = Depends(get_sandbox_manager),
) -> SandboxSnapshotResponse:
    with _sandbox_errors():
        return SandboxSnapshotResponse(
            files=sandbox_manager.snapshot(request.sandbox_id)
        )


@router.post("/diff", response_model=SnapshotDiff)
def diff_sandbox(
    request: SandboxDiffRequest,
    sandbox_manager: SandboxManager = Depends(get_sandbox_manager),
) -> SnapshotDiff:
    with _sandbox_errors():
        after = sandbox_manager.snapshot(request.sandbox_id)
    return compare_snapshots(request.before, after)


# =============================================================================
# Validation
# =============================================================================


@router.post("/validate", response_model=ValidationResult)
def validate_sandbox(
    request: SandboxRequest,
    sandbox_manager: SandboxManager = Depends(get_sandbox_manager),
) -> ValidationResult:
    with _sandbox_errors():
        return sandbox_manager.validate(request.sandbox_id)


@router.post("/validate-file", response_model=ValidationStepResult)
def validate_file(
    request: SandboxFileRequest,
    sandbox_manager: SandboxManager = Depends(get_sandbox_manager),
) -> ValidationStepResult:
    with _sandbox_errors():
        return sandbox_manager.validate_file(request.sandbox_id, request.path)
