"""Runtime configuration for the sandbox core.

Settings live under the ``sandbox`` section of ``config.yaml``.  Every field
has a default, so a missing file (or a missing section) yields a usable
configuration.  ``DEVSANDBOX_<FIELD>`` environment variables override the file.
"""

from __future__ import annotations

import json
import os
from pathlib import Path
from typing import Any, Dict, List, Mapping

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from .errors import ConfigError

MAX_LOG_LINES_CEILING = 10_000
DEFAULT_CONFIG_PATH = Path("config.yaml")
ENV_PREFIX = "DEVSANDBOX_"

DEFAULT_CONFIG_TEMPLATE = """# devsandbox configuration
sandbox:
  workspace_root_pattern: /app/workspace/{project}
  cooldown_ms: 10000
  max_restarts: 5
  max_output_bytes: 10485760
  default_timeout_ms: 30000
  max_log_lines: 3000
  kill_grace_ms: 2000
  dev_command: npm run dev
  dev_process_patterns:
    - npm run dev
    - next dev
  log_dir: logs
  dev_log_file: dev.log
  start_wait_ms: 30000
  poll_interval_ms: 1000
  launcher: []
  max_repair_attempts: 3
"""


class SandboxSettings(BaseModel):
    """Validated sandbox configuration."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    workspace_root_pattern: str = "/app/workspace/{project}"
    cooldown_ms: int = Field(default=10_000, ge=0)
    max_restarts: int = Field(default=5, ge=0)
    max_output_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    default_timeout_ms: int = Field(default=30_000, gt=0)
    max_log_lines: int = Field(default=3_000, gt=0, le=MAX_LOG_LINES_CEILING)
    kill_grace_ms: int = Field(default=2_000, ge=0)
    dev_command: str = "npm run dev"
    dev_process_patterns: List[str] = Field(default_factory=lambda: ["npm run dev", "next dev"])
    log_dir: str = "logs"
    dev_log_file: str = "dev.log"
    start_wait_ms: int = Field(default=30_000, ge=0)
    poll_interval_ms: int = Field(default=1_000, gt=0)
    launcher: List[str] = Field(default_factory=list)
    max_repair_attempts: int = Field(default=3, ge=0)

    @field_validator("workspace_root_pattern")
    @classmethod
    def _require_project_placeholder(cls, value: str) -> str:
        if "{project}" not in value:
            raise ValueError("workspace_root_pattern must contain a '{project}' placeholder")
        return value

    @field_validator("dev_process_patterns")
    @classmethod
    def _require_patterns(cls, value: List[str]) -> List[str]:
        cleaned = [item.strip() for item in value if item and item.strip()]
        if not cleaned:
            raise ValueError("dev_process_patterns must list at least one pattern")
        return cleaned

    def clamp_log_lines(self, requested: int | None) -> int:
        """Return ``requested`` bounded by the configured default and the hard ceiling."""

        if requested is None or requested <= 0:
            return self.max_log_lines
        return min(requested, MAX_LOG_LINES_CEILING)


def _read_yaml(config_path: Path) -> Dict[str, Any]:
    """Load the YAML mapping at ``config_path``."""
    try:
        with config_path.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except yaml.YAMLError as error:
        raise ConfigError(f"Failed to parse config: {error}", details={"path": str(config_path)}) from error
    if not isinstance(data, dict):
        raise ConfigError(
            "Configuration must be a mapping at the top level.",
            details={"path": str(config_path)},
        )
    return data


def _env_overrides(environ: Mapping[str, str]) -> Dict[str, Any]:
    """Collect ``DEVSANDBOX_*`` overrides for known settings fields."""
    overrides: Dict[str, Any] = {}
    for name, field in SandboxSettings.model_fields.items():
        raw = environ.get(ENV_PREFIX + name.upper())
        if raw is None or not raw.strip():
            continue
        if field.annotation in (List[str], list):
            try:
                parsed = json.loads(raw)
            except json.JSONDecodeError:
                parsed = [part.strip() for part in raw.split(",") if part.strip()]
            overrides[name] = parsed
        else:
            overrides[name] = raw.strip()
    return overrides


def load_settings(
    config_path: Path | str | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> SandboxSettings:
    """Load settings from ``config_path`` (if it exists) and the environment."""

    data: Dict[str, Any] = {}
    if config_path is not None:
        path = Path(config_path)
        if path.exists():
            section = _read_yaml(path).get("sandbox") or {}
            if not isinstance(section, dict):
                raise ConfigError("The 'sandbox' section must be a mapping.", details={"path": str(path)})
            data.update(section)

    data.update(_env_overrides(os.environ if environ is None else environ))

    try:
        return SandboxSettings.model_validate(data)
    except ValidationError as error:
        raise ConfigError(
            f"Invalid sandbox configuration: {error}",
            details={"errors": error.errors(include_url=False, include_context=False)},
        ) from error


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "DEFAULT_CONFIG_TEMPLATE",
    "ENV_PREFIX",
    "MAX_LOG_LINES_CEILING",
    "SandboxSettings",
    "load_settings",
]
