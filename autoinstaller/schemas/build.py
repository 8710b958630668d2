"""
Pydantic schemas for ISO build API requests and responses.
"""
from datetime import datetime
from typing import Any, Optional, List

from pydantic import BaseModel, Field, field_validator

from autoinstaller.core.jobs import Job, JobStatus, StepState
from autoinstaller.core.pipeline import BuildRequest


# =============================================================================
# Request Schemas
# =============================================================================

class GenerateISORequest(BaseModel):
    """Request body for POST /iso/generate."""

    source_type: str = Field(
        description="Where the source ISO comes from: 'local' or 'download'",
    )
    source_iso: str = Field(
        default="",
        description="Path of a local ISO on the server (source_type 'local')",
        max_length=4096,
    )
    codename: str = Field(
        default="",
        description="Ubuntu release to download: focal, jammy or noble",
        max_length=32,
    )
    destination_iso: str = Field(
        description="Output ISO file name, must end with .iso",
        max_length=4096,
    )
    user_data: str = Field(
        description="cloud-init user-data written verbatim into the ISO",
    )
    package_list: List[str] = Field(
        default_factory=list,
        description="Extra packages bundled into a local apt repository on the ISO",
        max_length=500,
    )
    use_hwe_kernel: bool = Field(default=False, description="Boot the HWE kernel when available")
    md5_checksum: bool = Field(default=False, description="Update md5sum.txt instead of clearing it")
    gpg_verify: bool = Field(default=False, description="Verify the downloaded ISO against signed SHA256SUMS")

    @field_validator("source_type", "source_iso", "codename", "destination_iso")
    @classmethod
    def strip(cls, v: str) -> str:
        return v.strip()

    @field_validator("package_list", mode="before")
    @classmethod
    def ensure_list(cls, v):
        """Accept a newline-separated string as well as a list."""
        if v is None:
            return []
        if isinstance(v, str):
            return v.splitlines()
        return v

    def to_build_request(self) -> BuildRequest:
        return BuildRequest(
            source_type=self.source_type,
            source_iso=self.source_iso,
            codename=self.codename,
            destination_iso=self.destination_iso,
            user_data=self.user_data,
            package_list=tuple(self.package_list),
            use_hwe_kernel=self.use_hwe_kernel,
            md5_checksum=self.md5_checksum,
            gpg_verify=self.gpg_verify,
        )


class UserDataRequest(BaseModel):
    """Request body for POST /userdata/validate."""
    user_data: str = Field(description="user-data YAML document", max_length=1024 * 1024)


class UserDataPreviewRequest(BaseModel):
    """Request body for POST /userdata/preview."""
    config: dict[str, Any] = Field(description="cloud-init config; must contain 'autoinstall'")


# =============================================================================
# Response Schemas
# =============================================================================

class GenerateISOResponse(BaseModel):
    """Response for POST /iso/generate."""
    build_id: str
    status: JobStatus
    created_at: datetime


class BuildStatusResponse(BaseModel):
    """Response for GET /build/status/{id}."""
    id: str
    status: JobStatus
    progress: int
    steps: dict[str, StepState]
    logs: List[str]
    error: Optional[str] = None
    output: Optional[str] = None
    source_type: str
    codename: str = ""
    destination: str
    created_at: datetime
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    cancel_requested: bool = False

    @classmethod
    def from_job(cls, job: Job) -> "BuildStatusResponse":
        return cls(
            id=job.id,
            status=job.status,
            progress=job.progress,
            steps=job.steps,
            logs=job.logs,
            error=job.error,
            output=job.output,
            source_type=job.source_type,
            codename=job.codename,
            destination=job.destination,
            created_at=job.created_at,
            completed_at=job.completed_at,
            duration_ms=job.duration_ms,
            cancel_requested=job.cancel_requested,
        )


class BuildLogsResponse(BaseModel):
    """Response for GET /build/logs/{id}."""
    id: str
    logs: List[str]


class BuildJobListItem(BaseModel):
    """Item in the job list."""
    id: str
    status: JobStatus
    progress: int
    codename: str = ""
    destination: str
    created_at: datetime
    completed_at: Optional[datetime] = None


class BuildJobListResponse(BaseModel):
    """Response for GET /build/jobs."""
    jobs: List[BuildJobListItem]
    total: int


class UserDataValidationResponse(BaseModel):
    """Response for POST /userdata/validate."""
    valid: bool
    error: Optional[str] = None


class UserDataPreviewResponse(BaseModel):
    """Response for POST /userdata/preview."""
    user_data: str
