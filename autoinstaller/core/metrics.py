"""
Simple in-memory metrics for Prometheus exposition.
Thread-safe counters.
"""
import threading
from typing import Dict

# name -> help text, in exposition order
COUNTERS = {
    "requests_total": "Total HTTP requests",
    "requests_2xx": "HTTP requests with 2xx status",
    "requests_4xx": "HTTP requests with 4xx status",
    "requests_5xx": "HTTP requests with 5xx status",
    "builds_submitted_total": "Total ISO builds submitted",
    "builds_completed_total": "Total ISO builds completed successfully",
    "builds_failed_total": "Total ISO builds failed",
    "builds_cancelled_total": "Total ISO builds cancelled",
    "commands_total": "Total external commands executed",
    "command_failures_total": "Total external commands that failed",
}


class Metrics:
    """Thread-safe metrics collection."""
    
    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {name: 0 for name in COUNTERS}
    
    def inc(self, name: str, value: int = 1) -> None:
        """Increment a counter."""
        with self._lock:
            if name not in self._counters:
                self._counters[name] = 0
            self._counters[name] += value
    
    def get(self, name: str) -> int:
        """Get a counter value."""
        with self._lock:
            return self._counters.get(name, 0)
    
    def get_all(self) -> Dict[str, int]:
        """Get all counter values."""
        with self._lock:
            return self._counters.copy()
    
    def to_prometheus(self) -> str:
        """Export metrics in Prometheus text format."""
        lines = []
        counters = self.get_all()
        
        for name, help_text in COUNTERS.items():
            metric = f"autoinstaller_{name}"
            lines.append(f"# HELP {metric} {help_text}")
            lines.append(f"# TYPE {metric} counter")
            lines.append(f"{metric} {counters.get(name, 0)}")
        
        return "\n".join(lines) + "\n"


# Global metrics instance
metrics = Metrics()
