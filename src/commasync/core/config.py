"""Configuration helpers for commasync."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
from pathlib import Path
from typing import Any, Mapping

import yaml

from commasync.core.models import PROTOCOLS, ROLES

PROJECT_ROOT = Path(__file__).resolve().parents[3]
DEFAULT_LOCAL_CONFIG = PROJECT_ROOT / "config" / "local.yml"

DEFAULT_ROUTES_DIR = Path("/data/media/0/realdata")
DEFAULT_CONFIG_DIR = Path("/data/commautil")
DEFAULT_PARAMS_DIR = Path("/data/params/d")


class ConfigError(ValueError):
    """Raised when local.yml cannot be parsed or validated."""


class LocationConfigError(ValueError):
    """Raised when network location parameters are invalid."""


@dataclass(slots=True)
class PathsConfig:
    """Filesystem locations used on the device."""

    routes_dir: Path = DEFAULT_ROUTES_DIR
    config_dir: Path = DEFAULT_CONFIG_DIR
    credentials_dir: Path = DEFAULT_CONFIG_DIR / "credentials"
    state_dir: Path = DEFAULT_CONFIG_DIR / "state"
    network_config: Path = DEFAULT_CONFIG_DIR / "network_locations.json"
    transfer_log: Path = DEFAULT_CONFIG_DIR / "transfer_logs.json"
    summary_dir: Path = DEFAULT_CONFIG_DIR / "summary"
    concat_work_dir: Path = Path("/data/tmp/concat_tmp")
    concat_output_dir: Path = DEFAULT_ROUTES_DIR / "concatenated"
    launch_env: Path = Path("/data/openpilot/launch_env.sh")
    key_file: Path = DEFAULT_PARAMS_DIR / "GithubSshKeys"
    device_id_file: Path = DEFAULT_PARAMS_DIR / "HardwareSerial"
    onroad_file: Path = DEFAULT_PARAMS_DIR / "IsOnroad"
    backup_base_dir: Path = Path("/data/device_backup")


@dataclass(slots=True)
class TransferConfig:
    """Retry, timeout and history policy for network operations."""

    retries: int = 3
    retry_delay: float = 5.0
    connect_timeout: float = 5.0
    command_timeout: float = 3600.0
    poll_interval: float = 2.0
    log_failed_transfers: bool = False
    min_free_bytes: int = 64 * 1024 * 1024
    history_retention_days: int = 30


@dataclass(slots=True)
class JobsConfig:
    """Launch-environment job settings."""

    command: str = "/data/commasync/scripts/run.py"
    startup_delay: int = 60


@dataclass(slots=True)
class Settings:
    """Complete runtime configuration."""

    paths: PathsConfig = field(default_factory=PathsConfig)
    transfer: TransferConfig = field(default_factory=TransferConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)
    source_path: Path | None = None


def _require_string(mapping: Mapping[str, Any], field: str, context: str) -> str:
    value = mapping.get(field)
    if value is None or value == "":
        raise LocationConfigError(f"{context}: missing required field '{field}'.")
    if not isinstance(value, str):
        raise LocationConfigError(f"{context}: field '{field}' must be a string.")
    return value


def _optional_string(mapping: Mapping[str, Any], field: str, context: str) -> str:
    value = mapping.get(field)
    if value is None:
        return ""
    if not isinstance(value, str):
        raise LocationConfigError(f"{context}: field '{field}' must be a string when provided.")
    return value


def _validate_port(value: Any, context: str) -> int:
    if value is None or value == "":
        return 22
    if isinstance(value, str) and value.isdigit():
        value = int(value)
    if isinstance(value, bool) or not isinstance(value, int):
        raise LocationConfigError(f"{context}: port must be an integer.")
    if value <= 0 or value > 65535:
        raise LocationConfigError(f"{context}: port must be between 1 and 65535.")
    return value


def validate_role(value: str) -> str:
    if value not in ROLES:
        raise LocationConfigError(f"invalid role '{value}'. Allowed values: {', '.join(ROLES)}.")
    return value


def validate_protocol(value: str) -> str:
    if value not in PROTOCOLS:
        raise LocationConfigError(f"invalid protocol '{value}'. Allowed values: {', '.join(PROTOCOLS)}.")
    return value


def parse_location_params(protocol: str, raw: Mapping[str, Any]) -> dict[str, Any]:
    """Validate caller-supplied location parameters and return a normalized copy.

    SMB locations need ``server``, ``share``, ``label``, ``username`` and a
    ``password``. SSH locations need ``server``, ``label``, ``username`` and
    either a ``password`` or a ``key_path``; ``port`` defaults to 22.
    """

    protocol = validate_protocol(protocol)
    context = f"{protocol} location"

    params: dict[str, Any] = {
        "server": _require_string(raw, "server", context),
        "label": _require_string(raw, "label", context),
        "username": _require_string(raw, "username", context),
        "remote_path": _optional_string(raw, "remote_path", context),
    }

    for forbidden in ("\"", "\n"):
        for key in ("server", "label", "remote_path"):
            if forbidden in params[key]:
                raise LocationConfigError(f"{context}: field '{key}' contains an unsupported character.")

    password = raw.get("password")
    if password is not None and not isinstance(password, str):
        raise LocationConfigError(f"{context}: password must be a string.")

    if protocol == "smb":
        params["share"] = _require_string(raw, "share", context)
        if password is None:
            raise LocationConfigError(f"{context}: a password is required for SMB shares.")
        params["auth_type"] = "password"
        params["password"] = password
        return params

    params["port"] = _validate_port(raw.get("port"), f"{context} '{params['label']}'")
    key_path = raw.get("key_path")
    auth_type = raw.get("auth_type") or ("key" if key_path else "password")
    if auth_type not in ("password", "key"):
        raise LocationConfigError(f"{context}: auth_type must be 'password' or 'key'.")

    if auth_type == "key":
        params["key_path"] = _require_string(raw, "key_path", context)
    elif password is None:
        raise LocationConfigError(f"{context}: password authentication requires a password.")
    else:
        params["password"] = password
    params["auth_type"] = auth_type
    return params


def load_local_config(
    config_path: str | Path | None = None, logger: logging.Logger | None = None
) -> Mapping[str, Any] | None:
    """Load local.yml if it exists and return the mapping."""

    config_file = Path(config_path) if config_path else DEFAULT_LOCAL_CONFIG
    if not config_file.is_absolute():
        config_file = PROJECT_ROOT / config_file

    if logger:
        logger.debug("loading local config from %s", config_file)

    if not config_file.exists():
        if logger:
            logger.debug("local config not found at %s", config_file)
        return None

    try:
        with config_file.open("r", encoding="utf-8") as handle:
            data = yaml.safe_load(handle) or {}
    except (OSError, yaml.YAMLError) as exc:
        raise ConfigError(f"Unable to read local config {config_file}: {exc}") from exc

    if not isinstance(data, Mapping):
        raise ConfigError("Top-level local.yml structure must be a mapping.")
    return data


def _section(data: Mapping[str, Any], name: str) -> Mapping[str, Any]:
    section = data.get(name)
    if section is None:
        return {}
    if not isinstance(section, Mapping):
        raise ConfigError(f"local.yml: section '{name}' must be a mapping.")
    return section


def _number(section: Mapping[str, Any], key: str, default: float, context: str, minimum: float = 0) -> float:
    value = section.get(key, default)
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ConfigError(f"{context}: '{key}' must be a number.")
    if value < minimum:
        raise ConfigError(f"{context}: '{key}' must be >= {minimum}.")
    return value


def _path(section: Mapping[str, Any], key: str, default: Path) -> Path:
    value = section.get(key)
    if value is None:
        return default
    if not isinstance(value, str) or not value:
        raise ConfigError(f"local.yml paths: '{key}' must be a non-empty string.")
    return Path(value).expanduser()


def _parse_paths(section: Mapping[str, Any]) -> PathsConfig:
    routes_dir = _path(section, "routes_dir", DEFAULT_ROUTES_DIR)
    config_dir = _path(section, "config_dir", DEFAULT_CONFIG_DIR)
    params_dir = _path(section, "params_dir", DEFAULT_PARAMS_DIR)
    return PathsConfig(
        routes_dir=routes_dir,
        config_dir=config_dir,
        credentials_dir=_path(section, "credentials_dir", config_dir / "credentials"),
        state_dir=_path(section, "state_dir", config_dir / "state"),
        network_config=_path(section, "network_config", config_dir / "network_locations.json"),
        transfer_log=_path(section, "transfer_log", config_dir / "transfer_logs.json"),
        summary_dir=_path(section, "summary_dir", config_dir / "summary"),
        concat_work_dir=_path(section, "concat_work_dir", Path("/data/tmp/concat_tmp")),
        concat_output_dir=_path(section, "concat_output_dir", routes_dir / "concatenated"),
        launch_env=_path(section, "launch_env", Path("/data/openpilot/launch_env.sh")),
        key_file=_path(section, "key_file", params_dir / "GithubSshKeys"),
        device_id_file=_path(section, "device_id_file", params_dir / "HardwareSerial"),
        onroad_file=_path(section, "onroad_file", params_dir / "IsOnroad"),
        backup_base_dir=_path(section, "backup_base_dir", Path("/data/device_backup")),
    )


def _parse_transfer(section: Mapping[str, Any]) -> TransferConfig:
    context = "local.yml transfer"
    defaults = TransferConfig()
    log_failed = section.get("log_failed_transfers", defaults.log_failed_transfers)
    if not isinstance(log_failed, bool):
        raise ConfigError(f"{context}: 'log_failed_transfers' must be a boolean.")

    return TransferConfig(
        retries=int(_number(section, "retries", defaults.retries, context, minimum=1)),
        retry_delay=float(_number(section, "retry_delay", defaults.retry_delay, context)),
        connect_timeout=float(_number(section, "connect_timeout", defaults.connect_timeout, context, minimum=1)),
        command_timeout=float(_number(section, "command_timeout", defaults.command_timeout, context, minimum=1)),
        poll_interval=float(_number(section, "poll_interval", defaults.poll_interval, context, minimum=0.1)),
        log_failed_transfers=log_failed,
        min_free_bytes=int(_number(section, "min_free_bytes", defaults.min_free_bytes, context)),
        history_retention_days=int(
            _number(section, "history_retention_days", defaults.history_retention_days, context, minimum=1)
        ),
    )


def _parse_jobs(section: Mapping[str, Any]) -> JobsConfig:
    defaults = JobsConfig()
    command = section.get("command", defaults.command)
    if not isinstance(command, str) or not command.strip():
        raise ConfigError("local.yml jobs: 'command' must be a non-empty string.")
    delay = int(_number(section, "startup_delay", defaults.startup_delay, "local.yml jobs"))
    return JobsConfig(command=command.strip(), startup_delay=delay)


def build_settings(data: Mapping[str, Any] | None, source_path: Path | None = None) -> Settings:
    """Build validated settings from a parsed local.yml mapping."""

    data = data or {}
    return Settings(
        paths=_parse_paths(_section(data, "paths")),
        transfer=_parse_transfer(_section(data, "transfer")),
        jobs=_parse_jobs(_section(data, "jobs")),
        source_path=source_path,
    )


def load_settings(config_path: str | Path | None = None, logger: logging.Logger | None = None) -> Settings:
    """Load local.yml (when present) and return validated settings."""

    logger = logger or logging.getLogger(__name__)
    data = load_local_config(config_path, logger)
    source = Path(config_path) if config_path else DEFAULT_LOCAL_CONFIG
    settings = build_settings(data, source if data is not None else None)
    logger.debug(
        "settings loaded source=%s routes_dir=%s config_dir=%s retries=%d",
        settings.source_path or "defaults",
        settings.paths.routes_dir,
        settings.paths.config_dir,
        settings.transfer.retries,
    )
    return settings
