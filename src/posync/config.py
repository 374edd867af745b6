"""Configuration loader with hot-reload support.

Loads config.yaml, applies environment overrides for secrets, validates the
result against the Pydantic schema and caches it as a singleton that can be
reloaded when the file changes between alert cycles.

Usage:
    from posync.config import get_config, reload_config_if_changed

    config = get_config()

    # At the start of each alert cycle
    if reload_config_if_changed():
        config = get_config()
"""

import os
import threading
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from posync.config_schema import CURRENT_SCHEMA_VERSION, AppConfig
from posync.core.errors import ConfigLoadError, ConfigValidationError
from posync.core.logging import get_logger

logger = get_logger(__name__)

DEFAULT_CONFIG_PATH = Path("config/config.yaml")
CONFIG_PATH_ENV = "POSYNC_CONFIG_PATH"

# Environment variables that fill config values left empty in the YAML file
ENV_OVERRIDES: dict[str, tuple[str, str]] = {
    "CONDUCTOR_API_KEY": ("accounting", "api_key"),
    "CONDUCTOR_END_USER_ID": ("accounting", "end_user_id"),
}
TRUSTED_DOMAINS_ENV = "TRUSTED_DOMAINS"

_config_lock = threading.Lock()
_current_config: AppConfig | None = None
_config_path: Path | None = None
_config_mtime: float = 0.0


def _get_config_path() -> Path:
    """Get the config file path from environment or default."""
    env_path = os.environ.get(CONFIG_PATH_ENV)
    if env_path:
        return Path(env_path)
    return DEFAULT_CONFIG_PATH


def _format_validation_errors(error: ValidationError) -> str:
    """Format Pydantic validation errors into actionable messages."""
    messages = []
    for err in error.errors():
        field_path = ".".join(str(loc) for loc in err["loc"])
        if err["type"] == "missing":
            messages.append(f"  - Missing required field '{field_path}'")
        else:
            messages.append(f"  - Field '{field_path}': {err['msg']}")
    return "\n".join(messages)


def _load_yaml(path: Path) -> dict[str, Any]:
    """Load and parse the YAML file.

    Raises:
        ConfigLoadError: If file not found or YAML parse error
    """
    if not path.exists():
        raise ConfigLoadError(
            f"Configuration file not found: {path}\n"
            f"Create it by copying config/config.yaml.example to {path}"
        )

    try:
        with open(path, encoding="utf-8") as f:
            data = yaml.safe_load(f)
    except yaml.YAMLError as e:
        raise ConfigLoadError(f"Failed to parse YAML in {path}:\n{e}") from e

    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ConfigLoadError(
            f"Configuration file must be a YAML mapping, got {type(data).__name__}"
        )
    return data


def apply_env_overrides(data: dict[str, Any]) -> dict[str, Any]:
    """Fill unset secrets and extend the trusted-domain list from the environment.

    Values present in the YAML file win over environment variables, except for
    TRUSTED_DOMAINS which is merged into trust.manual_domains.

    Args:
        data: Parsed YAML data (not modified)

    Returns:
        A new dictionary with overrides applied
    """
    merged = {**data}
    for env_name, (section, key) in ENV_OVERRIDES.items():
        value = os.environ.get(env_name)
        if not value:
            continue
        section_data = dict(merged.get(section) or {})
        if not section_data.get(key):
            section_data[key] = value
        merged[section] = section_data

    env_domains = os.environ.get(TRUSTED_DOMAINS_ENV)
    if env_domains:
        trust = dict(merged.get("trust") or {})
        domains = list(trust.get("manual_domains") or [])
        domains.extend(part.strip() for part in env_domains.split(",") if part.strip())
        trust["manual_domains"] = domains
        merged["trust"] = trust

    return merged


def _validate_config(data: dict[str, Any], path: Path) -> AppConfig:
    """Validate config data against the Pydantic schema.

    Raises:
        ConfigValidationError: If validation fails
    """
    try:
        config = AppConfig(**data)
    except ValidationError as e:
        raise ConfigValidationError(
            f"Configuration validation failed for {path}:\n{_format_validation_errors(e)}"
        ) from e

    if config.schema_version > CURRENT_SCHEMA_VERSION:
        raise ConfigValidationError(
            f"Config schema version {config.schema_version} is newer than "
            f"supported version {CURRENT_SCHEMA_VERSION}. "
            "Please upgrade po-sync-alerts or downgrade the config."
        )
    return config


def load_config(path: Path | None = None) -> AppConfig:
    """Load and validate configuration from YAML, always reading from disk.

    Args:
        path: Optional path to config file. Defaults to POSYNC_CONFIG_PATH or
              config/config.yaml.

    Raises:
        ConfigLoadError: If file cannot be loaded
        ConfigValidationError: If validation fails
    """
    config_path = path or _get_config_path()
    logger.debug("Loading configuration", path=str(config_path))

    data = apply_env_overrides(_load_yaml(config_path))
    config = _validate_config(data, config_path)

    logger.info(
        "Configuration loaded successfully",
        path=str(config_path),
        schema_version=config.schema_version,
        accounting_configured=config.accounting.is_configured,
        manual_trusted_domains=len(config.trust.manual_domains),
    )
    return config


def get_config() -> AppConfig:
    """Get the current configuration singleton, loading it on first use.

    Raises:
        ConfigLoadError: If file cannot be loaded
        ConfigValidationError: If validation fails
    """
    global _current_config, _config_path, _config_mtime

    with _config_lock:
        if _current_config is None:
            _config_path = _get_config_path()
            _current_config = load_config(_config_path)
            _config_mtime = _config_path.stat().st_mtime

        return _current_config


def reload_config_if_changed() -> bool:
    """Reload the singleton if the config file's mtime moved.

    An invalid new file keeps the previous config and logs a warning.

    Returns:
        True if config was reloaded, False otherwise
    """
    global _current_config, _config_mtime

    with _config_lock:
        if _config_path is None:
            return False

        try:
            current_mtime = _config_path.stat().st_mtime
        except OSError as e:
            logger.warning("Failed to check config file mtime", path=str(_config_path), error=str(e))
            return False

        if current_mtime <= _config_mtime:
            return False

        try:
            _current_config = load_config(_config_path)
            _config_mtime = current_mtime
            logger.info("Configuration reloaded successfully", path=str(_config_path))
            return True
        except (ConfigLoadError, ConfigValidationError) as e:
            logger.warning(
                "Configuration reload failed, keeping previous config",
                path=str(_config_path),
                error=str(e),
            )
            _config_mtime = current_mtime
            return False


def validate_config_file(path: Path | None = None) -> tuple[bool, str]:
    """Validate a config file without loading it into the singleton.

    Returns:
        Tuple of (is_valid, message)
    """
    config_path = path or _get_config_path()

    try:
        config = load_config(config_path)
    except ConfigLoadError as e:
        return (False, f"Load error: {e}")
    except ConfigValidationError as e:
        return (False, f"Validation error: {e}")

    accounting = "configured" if config.accounting.is_configured else "not configured (degraded mode)"
    return (
        True,
        f"Configuration valid (schema version {config.schema_version})\n"
        f"  - our domain: {config.our_domain}\n"
        f"  - accounting: {accounting}\n"
        f"  - escalation after {config.alerts.escalation_hours:g}h\n"
        f"  - {len(config.trust.manual_domains)} manually trusted domains\n"
        f"  - {len(config.threading.generic_subjects)} generic subjects",
    )


def reset_config() -> None:
    """Reset the config singleton. Primarily for testing."""
    global _current_config, _config_path, _config_mtime
    with _config_lock:
        _current_config = None
        _config_path = None
        _config_mtime = 0.0
