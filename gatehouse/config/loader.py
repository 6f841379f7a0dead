"""Configuration loading and processing."""

import os
import re
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import ValidationError

from ..exceptions import ConfigurationError
from .schema import GatehouseSettings

CONFIG_SECTION = "identity"
DEFAULT_CONFIG_NAME = "gatehouse.yaml"

# Pattern for environment variable substitution
ENV_VAR_PATTERN = re.compile(r"\$\{([^}]+)\}")


def load_settings(config_path: Path | str) -> GatehouseSettings:
    """Load identity configuration from a YAML file.

    Args:
        config_path: Path to the YAML file holding an ``identity`` section

    Returns:
        Validated GatehouseSettings instance

    Raises:
        ConfigurationError: If configuration is invalid or cannot be loaded
    """
    config_path = Path(config_path)
    try:
        with open(config_path, "r") as f:
            raw_config = yaml.safe_load(f)
    except FileNotFoundError:
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    except yaml.YAMLError as e:
        raise ConfigurationError(f"Invalid YAML in configuration file: {e}")

    if not raw_config:
        raise ConfigurationError("Configuration file is empty")
    if not isinstance(raw_config, dict):
        raise ConfigurationError("Configuration file must contain a mapping")

    section = raw_config.get(CONFIG_SECTION)
    if section is None:
        raise ConfigurationError(f"No '{CONFIG_SECTION}' section found in configuration")

    return parse_settings(section)


def parse_settings(raw: dict[str, Any]) -> GatehouseSettings:
    """Validate an already-parsed configuration mapping."""
    processed = substitute_env_vars(raw or {})
    try:
        return GatehouseSettings(**processed)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid identity configuration: {e}")


def substitute_env_vars(config: Any) -> Any:
    """Recursively substitute environment variables in configuration.

    Supports these patterns:
    - ${VAR_NAME} - simple substitution
    - ${VAR_NAME:-default} - substitution with default value
    - ${VAR_NAME:?error message} - required variable with error message

    Raises:
        ConfigurationError: If required environment variable is missing
    """
    if isinstance(config, dict):
        return {key: substitute_env_vars(value) for key, value in config.items()}
    elif isinstance(config, list):
        return [substitute_env_vars(item) for item in config]
    elif isinstance(config, str):
        return _substitute_env_var_string(config)
    else:
        return config


def _substitute_env_var_string(value: str) -> str:
    def replace_var(match):
        var_expr = match.group(1)

        if ":-" in var_expr:
            var_name, default_value = var_expr.split(":-", 1)
            return os.getenv(var_name, default_value)

        elif ":?" in var_expr:
            var_name, error_msg = var_expr.split(":?", 1)
            env_value = os.getenv(var_name)
            if env_value is None:
                raise ConfigurationError(
                    f"Required environment variable '{var_name}' not set: {error_msg}"
                )
            return env_value

        else:
            env_value = os.getenv(var_expr)
            if env_value is None:
                raise ConfigurationError(f"Environment variable '{var_expr}' not set")
            return env_value

    return ENV_VAR_PATTERN.sub(replace_var, value)


def resolve_config_path(config_path: Optional[Path | str] = None) -> Path:
    """Locate the configuration file.

    Falls back to ``$GATEHOUSE_CONFIG`` and then ``./gatehouse.yaml``.

    Raises:
        ConfigurationError: If configuration file doesn't exist
    """
    if config_path is None:
        config_path = os.getenv("GATEHOUSE_CONFIG") or Path.cwd() / DEFAULT_CONFIG_NAME

    config_path = Path(config_path)
    if not config_path.exists():
        raise ConfigurationError(f"Configuration file not found: {config_path}")
    if not config_path.is_file():
        raise ConfigurationError(f"Configuration path is not a file: {config_path}")
    return config_path


def require_signing_keys(settings: GatehouseSettings) -> None:
    """Fail fast when tokens cannot be signed.

    Called during bootstrap; a process with no signing key must never start
    accepting requests.
    """
    if not settings.tokens.access_secret:
        raise ConfigurationError("Token signing secret 'tokens.access_secret' is not configured")
    if not settings.tokens.effective_refresh_secret:
        raise ConfigurationError("Refresh token signing secret is not configured")
