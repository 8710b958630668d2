#!/usr/bin/env python3
"""
ubuntu-autoinstaller: FastAPI service that builds Ubuntu Server autoinstall ISOs.
Builds run as background jobs; clients poll status and download the result.
"""
import os

from fastapi import FastAPI, Request

from autoinstaller.api.iso import router as iso_router
from autoinstaller.api.metrics import router as metrics_router
from autoinstaller.api.userdata import router as userdata_router
from autoinstaller.core.logging import setup_logging
from autoinstaller.core.releases import SUPPORTED_CODENAMES
from autoinstaller.core.request_logging import RequestLoggingMiddleware
from autoinstaller.core.settings import get_settings

settings = get_settings()

# Setup structured JSON logging
setup_logging(settings.log_level)

# =============================================================================
# Configuration from environment
# =============================================================================
PUBLIC_BASE_URL = os.environ.get("PUBLIC_BASE_URL", "").rstrip("/")
LISTEN_HOST = os.environ.get("LISTEN_HOST", "0.0.0.0")
PORT = int(os.environ.get("PORT", "8080"))
VERSION = "1.0.0"


def get_base_url(request: Request | None = None) -> str:
    """
    Get the base URL for building absolute URLs.

    Priority:
    1. PUBLIC_BASE_URL environment variable (if set)
    2. Request host (if request provided)
    3. Fallback to localhost with configured port
    """
    if PUBLIC_BASE_URL:
        return PUBLIC_BASE_URL
    if request:
        scheme = request.headers.get("x-forwarded-proto", request.url.scheme)
        host = request.headers.get("x-forwarded-host", request.headers.get("host", ""))
        if host:
            return f"{scheme}://{host}"
    return f"http://localhost:{PORT}"


# Create app
app = FastAPI(
    title="ubuntu-autoinstaller",
    description="Build Ubuntu Server autoinstall ISOs as background jobs",
    version=VERSION,
)

# Add request logging middleware
app.add_middleware(RequestLoggingMiddleware)

# Include routes
app.include_router(iso_router)
app.include_router(userdata_router)
app.include_router(metrics_router)


@app.get("/health")
def health():
    """Health check endpoint."""
    return {"status": "healthy", "message": "Service is running normally"}


@app.get("/meta")
def meta(request: Request):
    """
    Service metadata endpoint.

    Returns configuration info useful for diagnostics and client setup.
    """
    base_url = get_base_url(request)
    return {
        "service": "ubuntu-autoinstaller",
        "public_base_url": PUBLIC_BASE_URL or None,
        "computed_base_url": base_url,
        "listen_host": LISTEN_HOST,
        "port": PORT,
        "version": VERSION,
        "docs_url": f"{base_url}/docs",
        "health_url": f"{base_url}/health",
        "supported_releases": list(SUPPORTED_CODENAMES),
        "workspace": {
            "base_dir": str(settings.workspace_dir),
            "isolate_jobs": settings.isolate_jobs,
        },
        "releases_url": settings.release_base_url,
    }

