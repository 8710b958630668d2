"""
In-memory registry of ISO build jobs.

Each submitted build runs on its own daemon thread. One RLock guards the
job map and every field of every job; readers always get deep copies, so
a status poll racing a progress update sees the job either before or after
the update, never in between. Jobs live for the life of the process.

Logs only job_id, status, stage, duration - never user-data contents.
"""
import copy
import logging
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from autoinstaller.core.metrics import metrics
from autoinstaller.core.pipeline import (
    CANCELLED_MESSAGE,
    BuildCancelled,
    BuildPipeline,
    BuildReporter,
    BuildRequest,
    Stage,
    StageError,
)
from autoinstaller.core.request_context import set_job_id
from autoinstaller.core.settings import Settings, get_settings
from autoinstaller.core.workspace import WorkspaceError, WorkspaceManager, WorkspacePaths

logger = logging.getLogger(__name__)

JOB_ID_PREFIX = "build_"

# Progress stays below this until the job is marked completed
MAX_RUNNING_PROGRESS = 99

COMPLETED_MESSAGE = "ISO generation completed successfully!"


class JobStatus(str, Enum):
    """Build job status."""
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


class StepState(str, Enum):
    """State of one pipeline stage within a job."""
    RUNNING = "running"
    COMPLETED = "completed"


class JobNotFoundError(Exception):
    """No job with the given id."""
    pass


class JobNotReadyError(Exception):
    """The job has not completed yet."""
    pass


class JobFinishedError(Exception):
    """The job already reached a terminal status."""
    pass


class ArtifactMissingError(Exception):
    """The job completed but its ISO cannot be found on disk."""
    pass


@dataclass
class Job:
    """One build attempt."""
    id: str
    status: JobStatus = JobStatus.RUNNING
    progress: int = 0
    steps: dict[str, StepState] = field(default_factory=dict)
    logs: list[str] = field(default_factory=list)
    error: Optional[str] = None
    output: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    completed_at: Optional[datetime] = None
    duration_ms: Optional[int] = None
    # Request summary
    source_type: str = ""
    codename: str = ""
    destination: str = ""
    workspace: Optional[str] = None
    cancel_requested: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status != JobStatus.RUNNING


class _JobReporter(BuildReporter):
    """Forwards pipeline events into a job record."""

    def __init__(self, registry: "JobRegistry", job_id: str):
        self._registry = registry
        self._job_id = job_id

    def stage_started(self, stage: Stage, message: str) -> None:
        self._registry._update(self._job_id, step=(stage.value, StepState.RUNNING), log=message)

    def stage_completed(self, stage: Stage, progress: int, message: str) -> None:
        self._registry._update(
            self._job_id,
            step=(stage.value, StepState.COMPLETED),
            progress=progress,
            log=message,
        )

    def log(self, message: str) -> None:
        self._registry._update(self._job_id, log=message)


PipelineFactory = Callable[[WorkspacePaths], BuildPipeline]


class JobRegistry:
    """Creates build jobs, runs them in the background and answers status queries."""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        workspaces: Optional[WorkspaceManager] = None,
        pipeline_factory: Optional[PipelineFactory] = None,
    ):
        self._settings = settings
        self._workspaces = workspaces
        self._lock = threading.RLock()
        self._jobs: dict[str, Job] = {}
        self._threads: dict[str, threading.Thread] = {}
        # Swappable so tests can run the registry against fake tools
        self.pipeline_factory = pipeline_factory or self._default_pipeline

    @property
    def settings(self) -> Settings:
        if self._settings is None:
            self._settings = get_settings()
        return self._settings

    @property
    def workspaces(self) -> WorkspaceManager:
        """Workspace manager, created on first use."""
        with self._lock:
            if self._workspaces is None:
                self._workspaces = WorkspaceManager(
                    self.settings.workspace_dir,
                    isolate_jobs=self.settings.isolate_jobs,
                )
            return self._workspaces

    def _default_pipeline(self, paths: WorkspacePaths) -> BuildPipeline:
        return BuildPipeline(paths, settings=self.settings)

    # -------------------------------------------------------------------------
    # Submission
    # -------------------------------------------------------------------------

    def submit(self, request: BuildRequest) -> str:
        """
        Validate a request and start its build in the background.

        Returns the job id immediately; the build is not awaited.

        Raises:
            BuildRequestError: the request is invalid; no job is created
        """
        request.validate()

        job_id = f"{JOB_ID_PREFIX}{uuid.uuid4().hex}"
        job = Job(
            id=job_id,
            source_type=request.source_type,
            codename=request.codename,
            destination=request.destination_iso,
        )
        thread = threading.Thread(
            target=self._run_job,
            args=(job_id, request),
            name=f"build-{job_id}",
            daemon=True,
        )

        with self._lock:
            self._jobs[job_id] = job
            self._threads[job_id] = thread

        metrics.inc("builds_submitted_total")
        logger.info(
            f"build_submitted job_id={job_id} source={request.source_type} "
            f"codename={request.codename or '-'}"
        )
        thread.start()
        return job_id

    def _run_job(self, job_id: str, request: BuildRequest) -> None:
        set_job_id(job_id)
        paths: Optional[WorkspacePaths] = None

        try:
            paths = self.workspaces.workspace_for(job_id)
            with self._lock:
                self._jobs[job_id].workspace = str(paths.root)

            pipeline = self.pipeline_factory(paths)
            output = pipeline.run(
                request,
                reporter=_JobReporter(self, job_id),
                cancelled=lambda: self._cancel_requested(job_id),
            )
            artifact = self._discover_artifact(paths, output, request)
        except BuildCancelled:
            self._finish_failed(job_id, CANCELLED_MESSAGE, cancelled=True)
        except StageError as e:
            logger.warning(f"build_failed job_id={job_id} stage={e.stage.value}")
            self._finish_failed(job_id, str(e))
        except WorkspaceError as e:
            logger.warning(f"build_failed job_id={job_id} stage=workspace")
            self._finish_failed(job_id, str(e))
        except Exception as e:
            logger.exception(f"build_error job_id={job_id}")
            self._finish_failed(job_id, f"Unexpected error: {type(e).__name__}: {e}")
        else:
            self._finish_completed(job_id, artifact)

    # -------------------------------------------------------------------------
    # Updates (pipeline thread)
    # -------------------------------------------------------------------------

    def _update(
        self,
        job_id: str,
        step: Optional[tuple[str, StepState]] = None,
        progress: Optional[int] = None,
        log: Optional[str] = None,
    ) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or job.is_terminal:
                return
            if step is not None:
                name, state = step
                job.steps[name] = state
            if progress is not None:
                job.progress = max(job.progress, min(progress, MAX_RUNNING_PROGRESS))
            if log:
                job.logs.append(log)

    def _finish_completed(self, job_id: str, output: str) -> None:
        with self._lock:
            job = self._jobs[job_id]
            if job.is_terminal:
                return
            job.status = JobStatus.COMPLETED
            job.progress = 100
            job.output = output
            job.error = None
            job.logs.append(COMPLETED_MESSAGE)
            self._stamp(job)
            duration_ms = job.duration_ms

        metrics.inc("builds_completed_total")
        logger.info(f"build_completed job_id={job_id} duration_ms={duration_ms}")

    def _finish_failed(self, job_id: str, message: str, cancelled: bool = False) -> None:
        with self._lock:
            job = self._jobs[job_id]
            if job.is_terminal:
                return
            job.status = JobStatus.FAILED
            job.error = message
            job.output = None
            job.logs.append(f"ERROR: {message}")
            self._stamp(job)
            duration_ms = job.duration_ms

        metrics.inc("builds_failed_total")
        if cancelled:
            metrics.inc("builds_cancelled_total")
        logger.info(f"build_failed job_id={job_id} cancelled={cancelled} duration_ms={duration_ms}")

    @staticmethod
    def _stamp(job: Job) -> None:
        job.completed_at = datetime.now(timezone.utc)
        job.duration_ms = int((job.completed_at - job.created_at).total_seconds() * 1000)

    def _discover_artifact(
        self,
        paths: WorkspacePaths,
        output: Optional[Path],
        request: BuildRequest,
    ) -> str:
        """
        Pick where the finished ISO actually is.

        Tries the workspace download dir, the destination as an absolute
        path, the destination resolved from here and joined to the working
        directory. Falls back to the download dir path without failing;
        a missing file only matters once someone asks for it.
        """
        destination = Path(request.destination_iso)
        canonical = Path(output) if output else paths.download_file(destination.name)

        candidates = [canonical]
        try:
            if destination.is_absolute():
                candidates.append(destination)
            candidates.append(destination.resolve())
            candidates.append(Path.cwd() / destination)
        except (OSError, ValueError) as e:
            logger.warning(f"artifact_probe_skipped destination={request.destination_iso!r} error={e}")

        for candidate in candidates:
            if _is_file(candidate):
                return str(candidate)

        logger.warning(
            f"artifact_not_found candidates={','.join(str(c) for c in candidates)}"
        )
        return str(canonical)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def _get(self, job_id: str) -> Job:
        job = self._jobs.get(job_id)
        if job is None:
            raise JobNotFoundError(f"build {job_id} does not exist")
        return job

    def get_status(self, job_id: str) -> Job:
        with self._lock:
            return copy.deepcopy(self._get(job_id))

    def get_logs(self, job_id: str) -> list[str]:
        with self._lock:
            return list(self._get(job_id).logs)

    def get_output(self, job_id: str) -> str:
        """
        Raises:
            JobNotFoundError: unknown id
            JobNotReadyError: the job has not completed
        """
        with self._lock:
            job = self._get(job_id)
            if job.status != JobStatus.COMPLETED:
                raise JobNotReadyError(f"build {job_id} is not completed yet")
            return job.output

    def resolve_artifact(self, job_id: str) -> Path:
        """
        Path of the finished ISO, looking in the workspace download dir and
        the working directory if the recorded path is gone.

        Raises:
            JobNotFoundError, JobNotReadyError
            ArtifactMissingError: the file is nowhere to be found
        """
        recorded = Path(self.get_output(job_id))
        if _is_file(recorded):
            return recorded

        with self._lock:
            workspace = self._jobs[job_id].workspace
        candidates = []
        if workspace:
            candidates.append(WorkspacePaths(Path(workspace)).download_file(recorded.name))
        candidates.append(Path(recorded.name).resolve())
        candidates.append(Path.cwd() / recorded.name)

        for candidate in candidates:
            if _is_file(candidate):
                logger.info(f"artifact_relocated job_id={job_id} path={candidate}")
                with self._lock:
                    self._jobs[job_id].output = str(candidate)
                return candidate

        logger.error(f"artifact_missing job_id={job_id} path={recorded}")
        raise ArtifactMissingError("ISO file not found on server")

    def count_by_status(self) -> dict[JobStatus, int]:
        with self._lock:
            counts = {status: 0 for status in JobStatus}
            for job in self._jobs.values():
                counts[job.status] += 1
        return counts

    def list_jobs(self) -> list[Job]:
        """Snapshots of every job, newest first."""
        with self._lock:
            jobs = [copy.deepcopy(job) for job in self._jobs.values()]
        return sorted(jobs, key=lambda j: j.created_at, reverse=True)

    # -------------------------------------------------------------------------
    # Cancellation
    # -------------------------------------------------------------------------

    def cancel(self, job_id: str) -> Job:
        """
        Ask a running build to stop before its next stage.

        The external command in flight, if any, runs to completion.

        Raises:
            JobNotFoundError: unknown id
            JobFinishedError: the job is already terminal
        """
        with self._lock:
            job = self._get(job_id)
            if job.is_terminal:
                raise JobFinishedError(f"build {job_id} already {job.status.value}")
            if not job.cancel_requested:
                job.cancel_requested = True
                job.logs.append("Cancellation requested")
            snapshot = copy.deepcopy(job)

        logger.info(f"build_cancel_requested job_id={job_id}")
        return snapshot

    def _cancel_requested(self, job_id: str) -> bool:
        with self._lock:
            return self._jobs[job_id].cancel_requested

    def wait(self, job_id: str, timeout: Optional[float] = None) -> Job:
        """Block until the job's thread exits (or timeout) and return its status."""
        with self._lock:
            self._get(job_id)
            thread = self._threads.get(job_id)
        if thread is not None:
            thread.join(timeout)
        return self.get_status(job_id)


def _is_file(path: Path) -> bool:
    try:
        return path.is_file()
    except (OSError, ValueError):
        return False


# Global registry instance
job_registry = JobRegistry()
