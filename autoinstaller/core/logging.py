"""
Structured JSON logging configuration.
NEVER logs: user-data contents, request payloads.
"""
import json
import logging
import sys
from datetime import datetime, timezone
from typing import Any

from autoinstaller.core.request_context import get_job_id, get_request_id

# Optional LogRecord attributes copied into the JSON line
EXTRA_FIELDS = (
    "request_id",
    "method",
    "path",
    "status_code",
    "duration_ms",
    "client_ip",
    "job_id",
    "stage",
    "cmd",
)


class JSONFormatter(logging.Formatter):
    """Format log records as JSON lines."""
    
    def format(self, record: logging.LogRecord) -> str:
        log_data: dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        
        # Add extra fields if present
        for name in EXTRA_FIELDS:
            if hasattr(record, name):
                log_data[name] = getattr(record, name)
        
        # Records emitted while serving a request carry its id
        if "request_id" not in log_data:
            request_id = get_request_id()
            if request_id:
                log_data["request_id"] = request_id
        
        # Records emitted from a build thread carry the job id
        if "job_id" not in log_data:
            job_id = get_job_id()
            if job_id:
                log_data["job_id"] = job_id
        
        # Include exception info if present
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        
        return json.dumps(log_data, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure structured JSON logging."""
    # Remove existing handlers
    root = logging.getLogger()
    for handler in root.handlers[:]:
        root.removeHandler(handler)
    
    # Create JSON handler
    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(JSONFormatter())
    
    # Configure root logger
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.addHandler(handler)
    
    # Reduce noise from uvicorn access logs (we log ourselves)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.error").setLevel(logging.INFO)
    
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
