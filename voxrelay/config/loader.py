"""Settings loading and validation.

Reads an optional voxrelay.yaml, overlays environment variables, validates
the result against the pydantic schema and returns a frozen Settings
object. Errors are always actionable.
"""

from __future__ import annotations

import os
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from voxrelay.config.schema import Settings

# Environment variable → top-level settings field.
ENV_OVERRIDES: dict[str, str] = {
    "API_KEY": "api_key",
    "HOST": "listen_host",
    "PORT": "listen_port",
    "VOXRELAY_MOUNT_PREFIX": "mount_prefix",
    "VOXRELAY_REMOTE_HTTP_BASE": "remote_http_base",
    "VOXRELAY_REMOTE_WS_BASE": "remote_ws_base",
    "VOXRELAY_STATIC_DIR": "static_dir",
    "VOXRELAY_PUBLIC_DIR": "public_dir",
}


class SettingsError(Exception):
    """Raised when the settings file is malformed or fails validation.

    Attributes:
        path: The settings file involved, or None if only the environment was read.
        details: Structured error details from YAML parsing or pydantic validation.
    """

    def __init__(self, path: Path | None, details: list[dict[str, Any]], message: str) -> None:
        self.path = path
        self.details = details
        super().__init__(message)


def _read_yaml(path: Path) -> dict[str, Any]:
    if not path.exists():
        raise SettingsError(
            path=path,
            details=[{"type": "not_found"}],
            message=f"Settings file not found at {path}. Pass an existing file with --config.",
        )

    try:
        raw_data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as e:
        raise SettingsError(
            path=path,
            details=[{"type": "yaml_parse_error", "msg": str(e)}],
            message=f"Failed to parse YAML in {path}: {e}",
        ) from e

    if raw_data is None:
        return {}

    if not isinstance(raw_data, dict):
        raise SettingsError(
            path=path,
            details=[{"type": "not_a_mapping", "got": type(raw_data).__name__}],
            message=(
                f"Settings file {path} must contain a YAML mapping at the top level, "
                f"got {type(raw_data).__name__}."
            ),
        )
    return raw_data


def load_settings(
    path: Path | None = None,
    environ: Mapping[str, str] | None = None,
) -> Settings:
    """Build the process settings from an optional YAML file and the environment.

    Environment variables listed in ``ENV_OVERRIDES`` win over the file.

    Args:
        path: Optional path to a voxrelay.yaml file.
        environ: Environment mapping. Defaults to ``os.environ``.

    Returns:
        A validated, frozen Settings instance.

    Raises:
        SettingsError: If the file is missing, is not valid YAML, or the merged
            values fail schema validation.
    """
    if environ is None:
        environ = os.environ

    raw_data: dict[str, Any] = _read_yaml(path) if path is not None else {}

    for env_name, field_name in ENV_OVERRIDES.items():
        value = environ.get(env_name)
        if value is not None:
            raw_data[field_name] = value

    try:
        return Settings.model_validate(raw_data)
    except ValidationError as e:
        error_details = e.errors()
        error_lines = []
        for err in error_details:
            loc = " → ".join(str(part) for part in err["loc"])
            error_lines.append(f"  - {loc}: {err['msg']}")

        summary = "\n".join(error_lines)
        source = str(path) if path is not None else "environment"
        raise SettingsError(
            path=path,
            details=[dict(err) for err in error_details],
            message=f"Settings validation failed ({source}):\n{summary}",
        ) from e
