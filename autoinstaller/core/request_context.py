"""
Context variables for tracking request_id and job_id across calls.
"""
import uuid
from contextvars import ContextVar

# Context variable for request ID
request_id_var: ContextVar[str] = ContextVar("request_id", default="")

# Build job currently executing in this thread
job_id_var: ContextVar[str] = ContextVar("job_id", default="")


def get_request_id() -> str:
    """Get the current request ID."""
    return request_id_var.get()


def set_request_id(request_id: str | None = None) -> str:
    """Set the request ID (generates new one if not provided)."""
    rid = request_id or str(uuid.uuid4())
    request_id_var.set(rid)
    return rid


def get_job_id() -> str:
    """Get the build job bound to the current context."""
    return job_id_var.get()


def set_job_id(job_id: str) -> str:
    """Bind a build job to the current context."""
    job_id_var.set(job_id)
    return job_id
