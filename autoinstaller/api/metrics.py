"""
Metrics endpoint for Prometheus scraping.
"""
from fastapi import APIRouter
from fastapi.responses import PlainTextResponse

from autoinstaller.api import iso
from autoinstaller.core.metrics import metrics

router = APIRouter(tags=["metrics"])

JOBS_GAUGE = "autoinstaller_build_jobs"


def _jobs_gauge() -> str:
    lines = [
        f"# HELP {JOBS_GAUGE} Build jobs currently held, by status",
        f"# TYPE {JOBS_GAUGE} gauge",
    ]
    for status, count in iso.job_registry.count_by_status().items():
        lines.append(f'{JOBS_GAUGE}{{status="{status.value}"}} {count}')
    return "\n".join(lines) + "\n"


@router.get("/metrics", response_class=PlainTextResponse)
async def get_metrics() -> str:
    """Export request, build and command counters plus a job gauge in Prometheus text format."""
    return metrics.to_prometheus() + _jobs_gauge()
