"""
cloud-init user-data checks and rendering.

The build pipeline copies user-data verbatim; these helpers back the
validate/preview endpoints so a client can check a document before it
submits a build.
"""
from collections.abc import Mapping
from typing import Any, Union

import yaml

CLOUD_CONFIG_HEADER = "#cloud-config"
REQUIRED_KEY = "autoinstall"


class UserDataError(Exception):
    """User-data is empty, not YAML, or lacks the autoinstall section."""
    pass


def load_user_data(content: Union[str, bytes]) -> dict[str, Any]:
    """
    Parse a user-data document into a mapping.

    Raises:
        UserDataError: if the document is empty, invalid YAML, not a mapping,
            or missing the top-level `autoinstall` key
    """
    if isinstance(content, bytes):
        content = content.decode("utf-8", errors="replace")
    if not content or not content.strip():
        raise UserDataError("user-data must not be empty")

    try:
        payload = yaml.safe_load(content)
    except yaml.YAMLError as exc:
        raise UserDataError(f"invalid YAML syntax: {exc}") from exc

    if not isinstance(payload, Mapping):
        raise UserDataError("user-data must be a YAML mapping")
    if REQUIRED_KEY not in payload:
        raise UserDataError(f"missing required '{REQUIRED_KEY}' field")
    return dict(payload)


def validate_user_data(content: Union[str, bytes]) -> None:
    load_user_data(content)


def render_user_data(config: Mapping[str, Any]) -> str:
    """Serialize a config mapping as a #cloud-config document."""
    if REQUIRED_KEY not in config:
        raise UserDataError(f"missing required '{REQUIRED_KEY}' field")
    body = yaml.safe_dump(dict(config), default_flow_style=False, sort_keys=False)
    return f"{CLOUD_CONFIG_HEADER}\n{body}"
