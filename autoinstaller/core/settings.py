"""
Service configuration from environment variables.
All settings are optional with safe defaults.
"""
import os
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path

PROJECT_ROOT = Path(__file__).parent.parent.parent

DEFAULT_WORKSPACE_DIR = PROJECT_ROOT / "data" / "workspaces"
DEFAULT_RELEASES_URL = "https://releases.ubuntu.com/"

_TRUE_VALUES = {"1", "true", "yes", "on"}
_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


@dataclass(frozen=True)
class Settings:
    """Service configuration (immutable)."""
    workspace_dir: Path = DEFAULT_WORKSPACE_DIR
    isolate_jobs: bool = True
    log_level: str = "INFO"
    log_commands: bool = False
    command_log_level: str = "INFO"
    command_timeout_s: int = 3600
    retry_attempts: int = 3
    retry_delay_s: float = 5.0
    releases_url: str = DEFAULT_RELEASES_URL
    download_timeout_s: int = 60
    keyserver: str = "hkp://keyserver.ubuntu.com"

    @property
    def release_base_url(self) -> str:
        """Releases URL, always with a trailing slash."""
        return self.releases_url.rstrip("/") + "/"


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in _TRUE_VALUES


def _env_level(name: str, default: str) -> str:
    level = os.getenv(name, default).upper()
    if level == "WARN":
        level = "WARNING"
    if level not in _LOG_LEVELS:
        return default
    return level


def load_settings() -> Settings:
    """Load settings from the environment."""
    return Settings(
        workspace_dir=Path(os.getenv("AUTOINSTALLER_WORKSPACE", str(DEFAULT_WORKSPACE_DIR))),
        isolate_jobs=_env_bool("AUTOINSTALLER_ISOLATE_JOBS", True),
        log_level=_env_level("LOG_LEVEL", "INFO"),
        log_commands=_env_bool("AUTOINSTALLER_LOG_COMMANDS", False),
        command_log_level=_env_level("AUTOINSTALLER_COMMAND_LOG_LEVEL", "INFO"),
        command_timeout_s=int(os.getenv("AUTOINSTALLER_COMMAND_TIMEOUT", "3600")),
        retry_attempts=max(1, int(os.getenv("AUTOINSTALLER_RETRY_ATTEMPTS", "3"))),
        retry_delay_s=float(os.getenv("AUTOINSTALLER_RETRY_DELAY", "5")),
        releases_url=os.getenv("AUTOINSTALLER_RELEASES_URL", DEFAULT_RELEASES_URL),
        download_timeout_s=int(os.getenv("AUTOINSTALLER_DOWNLOAD_TIMEOUT", "60")),
        keyserver=os.getenv("AUTOINSTALLER_KEYSERVER", "hkp://keyserver.ubuntu.com"),
    )


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Process-wide settings, read once."""
    return load_settings()
