"""
ISO build API routes.

Endpoints:
- POST /api/v1/iso/generate - Submit a build (202, returns the build id)
- GET /api/v1/build/status/{build_id} - Job status, steps, progress and logs
- GET /api/v1/build/logs/{build_id} - Job logs only
- GET /api/v1/build/download/{build_id} - Stream the finished ISO
- GET /api/v1/build/jobs - List jobs, newest first
- POST /api/v1/build/{build_id}/cancel - Stop a running build before its next stage
"""
import logging

from fastapi import APIRouter, HTTPException, Query
from fastapi.responses import FileResponse

from autoinstaller.core.jobs import (
    ArtifactMissingError,
    JobFinishedError,
    JobNotFoundError,
    JobNotReadyError,
    JobStatus,
    job_registry,
)
from autoinstaller.core.pipeline import BuildRequestError
from autoinstaller.schemas.build import (
    BuildJobListItem,
    BuildJobListResponse,
    BuildLogsResponse,
    BuildStatusResponse,
    GenerateISORequest,
    GenerateISOResponse,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", tags=["iso"])

ISO_MEDIA_TYPE = "application/octet-stream"


@router.post("/iso/generate", status_code=202, response_model=GenerateISOResponse)
async def generate_iso(request: GenerateISORequest) -> GenerateISOResponse:
    """
    Submit an ISO build.

    Returns immediately with the build id. Poll GET /api/v1/build/status/{id}
    for progress and fetch the ISO from GET /api/v1/build/download/{id}.
    """
    try:
        build_id = job_registry.submit(request.to_build_request())
    except BuildRequestError as e:
        raise HTTPException(status_code=400, detail=f"Parameter validation failed: {e}")

    job = job_registry.get_status(build_id)
    return GenerateISOResponse(
        build_id=job.id,
        status=job.status,
        created_at=job.created_at,
    )


@router.get("/build/status/{build_id}", response_model=BuildStatusResponse)
async def get_build_status(build_id: str) -> BuildStatusResponse:
    """Get the current state of a build. 404 if the id is unknown."""
    try:
        job = job_registry.get_status(build_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Build ID does not exist")
    return BuildStatusResponse.from_job(job)


@router.get("/build/logs/{build_id}", response_model=BuildLogsResponse)
async def get_build_logs(build_id: str) -> BuildLogsResponse:
    """Get the ordered log lines of a build."""
    try:
        logs = job_registry.get_logs(build_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Build ID does not exist")
    return BuildLogsResponse(id=build_id, logs=logs)


@router.get("/build/download/{build_id}")
async def download_iso(build_id: str) -> FileResponse:
    """
    Download the ISO of a completed build.

    404 if the build or its file does not exist, 409 if the build has not
    completed.
    """
    try:
        path = job_registry.resolve_artifact(build_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Build ID does not exist")
    except JobNotReadyError:
        raise HTTPException(status_code=409, detail="Build is not completed yet")
    except ArtifactMissingError as e:
        raise HTTPException(status_code=404, detail=str(e))

    logger.info(f"artifact_download build_id={build_id} size={path.stat().st_size}")
    return FileResponse(
        path,
        media_type=ISO_MEDIA_TYPE,
        filename=path.name,
        headers={"Content-Description": "File Transfer"},
    )


@router.get("/build/jobs", response_model=BuildJobListResponse)
async def list_builds(
    status: JobStatus | None = Query(default=None, description="Only jobs with this status"),
    limit: int = Query(default=50, ge=1, le=500),
) -> BuildJobListResponse:
    """List builds, newest first."""
    jobs = job_registry.list_jobs()
    if status is not None:
        jobs = [job for job in jobs if job.status == status]

    items = [
        BuildJobListItem(
            id=job.id,
            status=job.status,
            progress=job.progress,
            codename=job.codename,
            destination=job.destination,
            created_at=job.created_at,
            completed_at=job.completed_at,
        )
        for job in jobs[:limit]
    ]
    return BuildJobListResponse(jobs=items, total=len(jobs))


@router.post("/build/{build_id}/cancel", response_model=BuildStatusResponse)
async def cancel_build(build_id: str) -> BuildStatusResponse:
    """
    Request cancellation of a running build.

    The build stops before its next stage and ends up failed with error
    "cancelled". 409 if the build already finished.
    """
    try:
        job = job_registry.cancel(build_id)
    except JobNotFoundError:
        raise HTTPException(status_code=404, detail="Build ID does not exist")
    except JobFinishedError as e:
        raise HTTPException(status_code=409, detail=str(e))
    return BuildStatusResponse.from_job(job)
