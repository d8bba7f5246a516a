from pydantic import Base64Bytes
from pydantic import BaseModel
from pydantic import Field
from pydantic import model_validator

from foldbox.configs import SANDBOX_REAPER_MAX_AGE_MINUTES
from foldbox.sandbox.models import FileSnapshot


class SandboxCreateRequest(BaseModel):
    repo_owner: str
    repo_name: str
    ref: str | None = None
    # Falls back to the configured GITHUB_TOKEN when omitted
    credential: str | None = None


class SandboxCreateResponse(BaseModel):
    sandbox_id: str


class SandboxRequest(BaseModel):
    sandbox_id: str


class SandboxRunRequest(SandboxRequest):
    command: str
    timeout: float | None = Field(default=None, gt=0)


class SandboxFileRequest(SandboxRequest):
    path: str


class SandboxWriteRequest(SandboxFileRequest):
    content: str | None = None
    # Binary payloads travel base64 encoded
    content_base64: Base64Bytes | None = None

    @model_validator(mode="after")
    def validate_single_payload(self) -> "SandboxWriteRequest":
        if (self.content is None) == (self.content_base64 is None):
            raise ValueError(
                "Exactly one of 'content' or 'content_base64' must be provided"
            )
        return self

    def payload(self) -> bytes | str:
        if self.content_base64 is not None:
            return self.content_base64
        return self.content or ""


class SandboxSnapshotResponse(BaseModel):
    files: dict[str, FileSnapshot]


class SandboxDiffRequest(SandboxRequest):
    before: dict[str, FileSnapshot]


class SandboxCleanupRequest(BaseModel):
    max_age_minutes: int = Field(default=SANDBOX_REAPER_MAX_AGE_MINUTES, ge=0)


class SandboxCleanupResponse(BaseModel):
    removed: int


class SandboxStatusResponse(BaseModel):
    success: bool = True
