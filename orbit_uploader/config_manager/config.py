"""Resolve uploader configuration from file, environment, and CLI overrides."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError

from orbit_uploader.config_manager.helpers import parse_seconds
from orbit_uploader.config_manager.uploader_config import UploaderConfig
from orbit_uploader.const import CONFIG_DIR, CONFIG_ENCODING, CONFIG_FILE
from orbit_uploader.errors import ConfigError

logger = logging.getLogger(__name__)

_ENV_MAP: dict[str, str] = {
    "api_url": "ORBIT_API_URL",
    "endpoint_thing": "ORBIT_ENDPOINT_THING",
    "endpoint_video": "ORBIT_ENDPOINT_VIDEO",
    "endpoint_participant": "ORBIT_ENDPOINT_PARTICIPANT",
    "endpoint_apns": "ORBIT_ENDPOINT_APNS",
    "db_path": "ORBIT_UPLOADER_DB_PATH",
    "tmp_path": "ORBIT_UPLOADER_TMP_PATH",
    "background_session_id": "ORBIT_BACKGROUND_SESSION_ID",
    "retry_cooldown_seconds": "ORBIT_RETRY_COOLDOWN",
    "request_timeout_seconds": "ORBIT_REQUEST_TIMEOUT",
    "connectivity_check_interval_seconds": "ORBIT_CONNECTIVITY_INTERVAL",
    "connectivity_timeout_seconds": "ORBIT_CONNECTIVITY_TIMEOUT",
    "offline": "ORBIT_OFFLINE",
}

_DURATION_FIELDS = {
    "retry_cooldown_seconds",
    "request_timeout_seconds",
    "connectivity_check_interval_seconds",
    "connectivity_timeout_seconds",
}

YES_CONFIRMATION = {"1", "true", "yes", "y"}


class ConfigManager:
    """Build effective uploader configuration from file, env, and CLI overrides."""

    def __init__(self, config_path: Path | None = None) -> None:
        """Initialise ConfigManager.

        Args:
            config_path: YAML file holding the base configuration. Defaults to
                ~/.orbit_uploader/config.yaml; a missing file is not an error.
        """
        self.config_path = config_path or CONFIG_DIR / CONFIG_FILE

    def _read_file_config(self) -> dict[str, Any]:
        """Load the YAML base configuration.

        Returns:
            A dictionary of configuration field names to values.

        Raises:
            ConfigError: If the file exists but is not a YAML mapping.
        """
        if not self.config_path.exists():
            return {}

        try:
            with self.config_path.open("r", encoding=CONFIG_ENCODING) as handle:
                data = yaml.safe_load(handle)
        except yaml.YAMLError as exc:
            raise ConfigError(f"Invalid YAML in {self.config_path}: {exc}") from exc

        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Expected a mapping in {self.config_path}")
        return data

    def _read_env_overrides(self) -> dict[str, Any]:
        """Read configuration overrides from environment variables.

        Returns:
            A dictionary of configuration field names to override values.
        """
        overrides: dict[str, Any] = {}

        for field_name, env_var_name in _ENV_MAP.items():
            env_value = os.getenv(env_var_name)
            if env_value is None:
                continue

            if field_name in _DURATION_FIELDS:
                try:
                    overrides[field_name] = parse_seconds(env_value)
                except ValueError:
                    logger.warning(
                        "Ignoring %s=%r: not a duration", env_var_name, env_value
                    )
                    continue
            elif field_name == "offline":
                overrides[field_name] = env_value.lower() in YES_CONFIRMATION
            else:
                overrides[field_name] = env_value

        return overrides

    def resolve_effective_config(
        self, cli_config: dict[str, Any] | None = None
    ) -> UploaderConfig:
        """Resolve the effective uploader configuration for this run.

        Args:
            cli_config: Optional CLI-provided configuration overrides.

        Returns:
            The resolved ``UploaderConfig``.

        Raises:
            ConfigError: If the file configuration is invalid.
        """
        try:
            base_config = UploaderConfig(**self._read_file_config())
        except ValidationError as exc:
            raise ConfigError(f"Invalid configuration: {exc}") from exc

        env_overrides = self._read_env_overrides()
        merged_config = base_config.model_copy(update=env_overrides)

        if cli_config is not None:
            cli_overrides = {k: v for k, v in cli_config.items() if v is not None}
            merged_config = merged_config.model_copy(update=cli_overrides)

        return merged_config
