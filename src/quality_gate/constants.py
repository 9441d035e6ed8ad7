"""Stable constants shared across the runner, config and CLI."""

from __future__ import annotations

from typing import Final

CONFIG_SCHEMA_VERSION: Final[int] = 1
REPORT_SCHEMA_VERSION: Final[int] = 1

DEFAULT_CONFIG_FILE: Final[str] = "qgate.toml"
DEFAULT_PIPELINE_FILE: Final[str] = "pipeline.toml"
DEFAULT_REPORT_FILE: Final[str] = ".qgate/report.json"
DEFAULT_LOG_DIR: Final[str] = ".qgate/logs"

DEFAULT_STAGE_TIMEOUT_SECONDS: Final[float] = 1800.0
DEFAULT_PROVISION_TIMEOUT_SECONDS: Final[float] = 900.0
DEFAULT_MAX_OUTPUT_CHARS: Final[int] = 200_000

__all__ = [
    "CONFIG_SCHEMA_VERSION",
    "DEFAULT_CONFIG_FILE",
    "DEFAULT_LOG_DIR",
    "DEFAULT_MAX_OUTPUT_CHARS",
    "DEFAULT_PIPELINE_FILE",
    "DEFAULT_PROVISION_TIMEOUT_SECONDS",
    "DEFAULT_REPORT_FILE",
    "DEFAULT_STAGE_TIMEOUT_SECONDS",
    "REPORT_SCHEMA_VERSION",
]
