"""
Configuration schema, defaults and validation for ``qgate.toml``.

Validation never raises on the first problem: every issue is collected with a
dotted field path, so one run reports everything that is wrong with a file.
Unknown keys are rejected. Profile overlays (``[profiles.<name>]``) are partial
configs validated with the same rules and deep-merged onto the base.
"""

from __future__ import annotations

import copy
import math
import re
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass
from typing import Any, Final, Literal, TypedDict

import psutil

from quality_gate.constants import (
    CONFIG_SCHEMA_VERSION,
    DEFAULT_LOG_DIR,
    DEFAULT_MAX_OUTPUT_CHARS,
    DEFAULT_PIPELINE_FILE,
    DEFAULT_REPORT_FILE,
    DEFAULT_STAGE_TIMEOUT_SECONDS,
)

ConfigSchemaVersion: Final[int] = CONFIG_SCHEMA_VERSION
BUILTIN_PROFILE_NAMES: Final[tuple[str, ...]] = ("local", "ci")
FAILURE_POLICIES: Final[tuple[str, ...]] = ("fail_fast", "isolated")
LOG_LEVELS: Final[tuple[str, ...]] = ("DEBUG", "INFO", "WARNING", "ERROR")

_PROFILE_NAME_PATTERN = re.compile(r"^[a-z][a-z0-9_-]*$")
_SENSITIVE_KEY_TERMS: Final[tuple[str, ...]] = ("secret", "token", "password", "api_key")

# Config paths that are normalized relative to the config file location.
PATH_FIELDS: Final[tuple[tuple[str, ...], ...]] = (
    ("paths", "pipeline"),
    ("paths", "report"),
    ("paths", "log_dir"),
)

_SECTION_KEYS: Final[dict[str, frozenset[str]]] = {
    "meta": frozenset({"schema_version"}),
    "runner": frozenset(
        {"max_concurrency", "default_timeout_seconds", "failure_policy", "strict_partial_failure"}
    ),
    "executor": frozenset({"max_output_chars", "stream_output", "inherit_env"}),
    "paths": frozenset({"pipeline", "report", "log_dir"}),
    "observability": frozenset({"log_level", "log_to_stdout", "redact_secrets"}),
}


class MetaConfig(TypedDict):
    schema_version: int


class RunnerConfig(TypedDict):
    max_concurrency: int
    default_timeout_seconds: float
    failure_policy: Literal["fail_fast", "isolated"]
    strict_partial_failure: bool


class ExecutorConfig(TypedDict):
    max_output_chars: int
    stream_output: bool
    inherit_env: bool


class PathsConfig(TypedDict):
    pipeline: str
    report: str
    log_dir: str


class ObservabilityConfig(TypedDict):
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"]
    log_to_stdout: bool
    redact_secrets: bool


class ProfileOverlay(TypedDict, total=False):
    runner: dict[str, object]
    executor: dict[str, object]
    paths: dict[str, object]
    observability: dict[str, object]


class QualityGateConfig(TypedDict):
    meta: MetaConfig
    runner: RunnerConfig
    executor: ExecutorConfig
    paths: PathsConfig
    observability: ObservabilityConfig
    profiles: dict[str, ProfileOverlay]


def _default_max_concurrency() -> int:
    return max(1, psutil.cpu_count(logical=True) or 1)


DEFAULT_CONFIG: Final[QualityGateConfig] = {
    "meta": {
        "schema_version": ConfigSchemaVersion,
    },
    "runner": {
        "max_concurrency": _default_max_concurrency(),
        "default_timeout_seconds": DEFAULT_STAGE_TIMEOUT_SECONDS,
        "failure_policy": "fail_fast",
        "strict_partial_failure": False,
    },
    "executor": {
        "max_output_chars": DEFAULT_MAX_OUTPUT_CHARS,
        "stream_output": False,
        "inherit_env": True,
    },
    "paths": {
        "pipeline": DEFAULT_PIPELINE_FILE,
        "report": DEFAULT_REPORT_FILE,
        "log_dir": DEFAULT_LOG_DIR,
    },
    "observability": {
        "log_level": "INFO",
        "log_to_stdout": False,
        "redact_secrets": True,
    },
    "profiles": {
        "local": {
            "executor": {"stream_output": True},
        },
        "ci": {
            "runner": {"max_concurrency": 1, "strict_partial_failure": True},
            "observability": {"log_to_stdout": True},
        },
    },
}


@dataclass(frozen=True, slots=True)
class ConfigValidationIssue:
    """Single structured validation failure."""

    path: str
    message: str


@dataclass(frozen=True, slots=True)
class ConfigValidationResult:
    """Validation result with normalized config when no issues were found."""

    config: dict[str, Any] | None
    issues: tuple[ConfigValidationIssue, ...]

    @property
    def is_valid(self) -> bool:
        return self.config is not None and not self.issues


class ConfigValidationError(ValueError):
    """Raised when strict config validation fails."""

    def __init__(self, issues: Sequence[ConfigValidationIssue]) -> None:
        self.issues = tuple(issues)
        if not self.issues:
            rendered = "unknown validation failure"
        else:
            rendered = "\n".join(f"- {item.path}: {item.message}" for item in self.issues)
        super().__init__(f"invalid config:\n{rendered}")


class _IssueCollector:
    __slots__ = ("_items",)

    def __init__(self) -> None:
        self._items: list[ConfigValidationIssue] = []

    def add(self, path: str, message: str) -> None:
        self._items.append(ConfigValidationIssue(path=path, message=message))

    def items(self) -> tuple[ConfigValidationIssue, ...]:
        return tuple(self._items)

    @property
    def has_issues(self) -> bool:
        return bool(self._items)


def default_config() -> QualityGateConfig:
    """Return a deep copy of the built-in defaults."""

    return copy.deepcopy(DEFAULT_CONFIG)


def migration_guidance(found_version: int) -> str:
    """Explain a schema version mismatch."""

    if found_version < ConfigSchemaVersion:
        return (
            f"schema version {found_version} is older than supported {ConfigSchemaVersion}; "
            "upgrade qgate.toml to the current schema"
        )
    if found_version > ConfigSchemaVersion:
        return (
            f"schema version {found_version} is newer than supported {ConfigSchemaVersion}; "
            "upgrade quality-gate"
        )
    return "schema version is current"


def merge_config(base: Mapping[str, object], overlay: Mapping[str, object]) -> dict[str, Any]:
    """Deterministically deep-merge ``overlay`` onto ``base``."""

    merged = _deep_copy_mapping(base)
    _merge_into(merged, overlay)
    return merged


def apply_profile_overlay(config: Mapping[str, object], profile: str | None) -> dict[str, Any]:
    """Apply a named profile overlay and re-validate the resulting config."""

    materialized = _deep_copy_mapping(config)
    selected = profile.strip() if profile is not None else ""
    if not selected:
        return materialized

    profiles_raw = materialized.get("profiles")
    overlay_raw = profiles_raw.get(selected) if isinstance(profiles_raw, Mapping) else None
    if overlay_raw is None:
        raise ConfigValidationError(
            (ConfigValidationIssue("profiles", f"profile {selected!r} is not defined"),)
        )
    if not isinstance(overlay_raw, Mapping):
        raise ConfigValidationError(
            (ConfigValidationIssue(f"profiles.{selected}", "profile overlay must be an object"),)
        )

    return assert_valid_config(merge_config(materialized, overlay_raw))


def validate_config(config: Mapping[str, object] | object) -> ConfigValidationResult:
    """Validate config and return structured issues with dotted paths."""

    issues = _IssueCollector()
    root = _as_object(config, "<root>", issues)
    if root is None:
        return ConfigValidationResult(config=None, issues=issues.items())

    normalized = _validate_root(root, issues)
    if issues.has_issues:
        return ConfigValidationResult(config=None, issues=issues.items())
    return ConfigValidationResult(config=normalized, issues=())


def assert_valid_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Validate config and raise ``ConfigValidationError`` on failure."""

    result = validate_config(config)
    if result.config is None:
        raise ConfigValidationError(result.issues)
    return result.config


def redact_config(config: Mapping[str, object] | object) -> dict[str, Any]:
    """Return a copy safe to print or log."""

    if not isinstance(config, Mapping):
        return {}
    redacted = _redact_value(config, parent_key=None)
    if isinstance(redacted, dict):
        return redacted
    return {}


def _validate_root(payload: Mapping[str, object], issues: _IssueCollector) -> dict[str, Any]:
    _reject_unknown_keys(payload, set(_SECTION_KEYS) | {"profiles"}, "", issues)
    _require_keys(payload, set(_SECTION_KEYS), "", issues)

    out: dict[str, Any] = {}
    for section, validator in _SECTION_VALIDATORS.items():
        raw = payload.get(section)
        if raw is None:
            continue
        section_obj = _as_object(raw, section, issues)
        if section_obj is not None:
            out[section] = validator(section_obj, section, issues, False)

    profiles_raw = payload.get("profiles")
    if profiles_raw is not None:
        profiles_obj = _as_object(profiles_raw, "profiles", issues)
        if profiles_obj is not None:
            out["profiles"] = _validate_profiles(profiles_obj, "profiles", issues)
    return out


def _validate_meta(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _check_keys(payload, path, issues, partial=partial)
    out: dict[str, Any] = {}
    if "schema_version" in payload:
        parsed = _as_int(
            payload["schema_version"], _join(path, "schema_version"), issues, minimum=1
        )
        if parsed is not None:
            out["schema_version"] = parsed
            if parsed != ConfigSchemaVersion:
                issues.add(_join(path, "schema_version"), migration_guidance(parsed))
    return out


def _validate_runner(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _check_keys(payload, path, issues, partial=partial)
    out: dict[str, Any] = {}
    if "max_concurrency" in payload:
        _store(
            out,
            "max_concurrency",
            _as_int(payload["max_concurrency"], _join(path, "max_concurrency"), issues, minimum=1),
        )
    if "default_timeout_seconds" in payload:
        parsed_timeout = _as_float(
            payload["default_timeout_seconds"],
            _join(path, "default_timeout_seconds"),
            issues,
            minimum=0.0,
        )
        if parsed_timeout == 0.0:
            issues.add(_join(path, "default_timeout_seconds"), "must be > 0")
            parsed_timeout = None
        _store(out, "default_timeout_seconds", parsed_timeout)
    if "failure_policy" in payload:
        _store(
            out,
            "failure_policy",
            _as_enum(
                payload["failure_policy"],
                _join(path, "failure_policy"),
                issues,
                allowed_values=FAILURE_POLICIES,
            ),
        )
    if "strict_partial_failure" in payload:
        _store(
            out,
            "strict_partial_failure",
            _as_bool(
                payload["strict_partial_failure"], _join(path, "strict_partial_failure"), issues
            ),
        )
    return out


def _validate_executor(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _check_keys(payload, path, issues, partial=partial)
    out: dict[str, Any] = {}
    if "max_output_chars" in payload:
        _store(
            out,
            "max_output_chars",
            _as_int(
                payload["max_output_chars"], _join(path, "max_output_chars"), issues, minimum=1
            ),
        )
    for key in ("stream_output", "inherit_env"):
        if key in payload:
            _store(out, key, _as_bool(payload[key], _join(path, key), issues))
    return out


def _validate_paths(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _check_keys(payload, path, issues, partial=partial)
    out: dict[str, Any] = {}
    for key in sorted(_SECTION_KEYS["paths"]):
        if key in payload:
            _store(out, key, _as_path_text(payload[key], _join(path, key), issues))
    return out


def _validate_observability(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, partial: bool
) -> dict[str, Any]:
    _check_keys(payload, path, issues, partial=partial)
    out: dict[str, Any] = {}
    if "log_level" in payload:
        raw_level = payload["log_level"]
        if isinstance(raw_level, str):
            raw_level = raw_level.strip().upper()
        _store(
            out,
            "log_level",
            _as_enum(raw_level, _join(path, "log_level"), issues, allowed_values=LOG_LEVELS),
        )
    for key in ("log_to_stdout", "redact_secrets"):
        if key in payload:
            _store(out, key, _as_bool(payload[key], _join(path, key), issues))
    return out


_SectionValidator = Callable[[Mapping[str, object], str, _IssueCollector, bool], dict[str, Any]]

_SECTION_VALIDATORS: Final[dict[str, _SectionValidator]] = {
    "meta": _validate_meta,
    "runner": _validate_runner,
    "executor": _validate_executor,
    "paths": _validate_paths,
    "observability": _validate_observability,
}


def _validate_profiles(
    payload: Mapping[str, object],
    path: str,
    issues: _IssueCollector,
) -> dict[str, Any]:
    out: dict[str, Any] = {}
    for profile_name in sorted(payload):
        profile_path = _join(path, profile_name)
        if not _PROFILE_NAME_PATTERN.fullmatch(profile_name):
            issues.add(profile_path, "profile name must match ^[a-z][a-z0-9_-]*$")
            continue
        profile_obj = _as_object(payload[profile_name], profile_path, issues)
        if profile_obj is None:
            continue

        overlay_sections = set(_SECTION_VALIDATORS) - {"meta"}
        _reject_unknown_keys(profile_obj, overlay_sections, profile_path, issues)
        overlay: dict[str, Any] = {}
        for section in sorted(overlay_sections):
            raw = profile_obj.get(section)
            if raw is None:
                continue
            section_path = _join(profile_path, section)
            section_obj = _as_object(raw, section_path, issues)
            if section_obj is not None:
                validator = _SECTION_VALIDATORS[section]
                overlay[section] = validator(section_obj, section_path, issues, True)
        out[profile_name] = overlay
    return out


def _check_keys(
    payload: Mapping[str, object], path: str, issues: _IssueCollector, *, partial: bool
) -> None:
    allowed = _SECTION_KEYS[path.rsplit(".", 1)[-1]]
    _reject_unknown_keys(payload, set(allowed), path, issues)
    if not partial:
        _require_keys(payload, set(allowed), path, issues)


def _store(out: dict[str, Any], key: str, value: object) -> None:
    if value is not None:
        out[key] = value


def _as_object(value: object, path: str, issues: _IssueCollector) -> dict[str, object] | None:
    if not isinstance(value, Mapping):
        issues.add(path, f"expected object, got {type(value).__name__}")
        return None
    out: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            issues.add(path, f"object key must be string, got {type(key).__name__}")
            continue
        out[key] = item
    return out


def _as_str(value: object, path: str, issues: _IssueCollector) -> str | None:
    if not isinstance(value, str):
        issues.add(path, f"expected string, got {type(value).__name__}")
        return None
    parsed = value.strip()
    if not parsed:
        issues.add(path, "must not be empty")
        return None
    return parsed


def _as_path_text(value: object, path: str, issues: _IssueCollector) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if "\x00" in parsed:
        issues.add(path, "must not contain NUL bytes")
        return None
    return parsed


def _as_bool(value: object, path: str, issues: _IssueCollector) -> bool | None:
    if isinstance(value, bool):
        return value
    issues.add(path, f"expected boolean, got {type(value).__name__}")
    return None


def _as_int(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: int | None = None,
) -> int | None:
    if isinstance(value, bool) or not isinstance(value, int):
        issues.add(path, f"expected integer, got {type(value).__name__}")
        return None
    if minimum is not None and value < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return value


def _as_float(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    minimum: float | None = None,
) -> float | None:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        issues.add(path, f"expected number, got {type(value).__name__}")
        return None
    parsed = float(value)
    if not math.isfinite(parsed):
        issues.add(path, "must be finite")
        return None
    if minimum is not None and parsed < minimum:
        issues.add(path, f"must be >= {minimum}")
        return None
    return parsed


def _as_enum(
    value: object,
    path: str,
    issues: _IssueCollector,
    *,
    allowed_values: tuple[str, ...],
) -> str | None:
    parsed = _as_str(value, path, issues)
    if parsed is None:
        return None
    if parsed not in allowed_values:
        expected = ", ".join(sorted(allowed_values))
        issues.add(path, f"invalid value {parsed!r}; expected one of: {expected}")
        return None
    return parsed


def _reject_unknown_keys(
    payload: Mapping[str, object],
    allowed: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(payload):
        if key not in allowed:
            issues.add(_join(path, key), "unknown field")


def _require_keys(
    payload: Mapping[str, object],
    required: set[str],
    path: str,
    issues: _IssueCollector,
) -> None:
    for key in sorted(required):
        if key not in payload:
            issues.add(_join(path, key), "missing required field")


def _join(path: str, key: str) -> str:
    if not path:
        return key
    return f"{path}.{key}"


def _merge_into(target: dict[str, Any], overlay: Mapping[str, object]) -> None:
    for key in sorted(overlay):
        value = overlay[key]
        if isinstance(value, Mapping):
            existing = target.get(key)
            if isinstance(existing, dict):
                _merge_into(existing, value)
            else:
                nested: dict[str, Any] = {}
                _merge_into(nested, value)
                target[key] = nested
        else:
            target[key] = copy.deepcopy(value)


def _deep_copy_mapping(value: Mapping[str, object]) -> dict[str, Any]:
    return {key: copy.deepcopy(value[key]) for key in sorted(value)}


def _redact_value(value: object, parent_key: str | None) -> object:
    if isinstance(value, Mapping):
        return {
            key: "<redacted>" if _looks_sensitive_key(key) else _redact_value(value[key], key)
            for key in sorted(value)
        }
    if isinstance(value, (list, tuple)):
        return [_redact_value(item, parent_key) for item in value]
    return value


def _looks_sensitive_key(key: str) -> bool:
    lowered = key.lower()
    return any(term in lowered for term in _SENSITIVE_KEY_TERMS)


__all__ = [
    "BUILTIN_PROFILE_NAMES",
    "DEFAULT_CONFIG",
    "FAILURE_POLICIES",
    "LOG_LEVELS",
    "PATH_FIELDS",
    "ConfigSchemaVersion",
    "ConfigValidationError",
    "ConfigValidationIssue",
    "ConfigValidationResult",
    "ProfileOverlay",
    "QualityGateConfig",
    "apply_profile_overlay",
    "assert_valid_config",
    "default_config",
    "merge_config",
    "migration_guidance",
    "redact_config",
    "validate_config",
]
