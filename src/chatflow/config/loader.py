"""Settings loader for chatflow.yaml."""

from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from chatflow.config.settings import RuntimeSettings
from chatflow.core.errors import ConfigError

DEFAULT_SETTINGS_FILE = "chatflow.yaml"


class SettingsLoader:
    """Load RuntimeSettings from YAML files."""

    @staticmethod
    def load(path: Path | str) -> RuntimeSettings:
        """Load settings from a YAML file.

        Args:
            path: Path to a chatflow.yaml file or the directory holding it

        Returns:
            Parsed RuntimeSettings instance

        Raises:
            FileNotFoundError: If no settings file exists at path
            ConfigError: If the file is not a valid settings document
        """
        settings_path = Path(path)
        if settings_path.is_dir():
            settings_path = settings_path / DEFAULT_SETTINGS_FILE
        if not settings_path.exists():
            raise FileNotFoundError(f"Settings file not found: {settings_path}")

        with open(settings_path, encoding="utf-8") as f:
            try:
                data: Any = yaml.safe_load(f) or {}
            except yaml.YAMLError as e:
                raise ConfigError(f"Cannot parse {settings_path}: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Settings file {settings_path} must contain a mapping")

        # Allow the sections to be nested under a top-level "settings" key
        if "settings" in data and isinstance(data["settings"], dict):
            data = data["settings"]

        try:
            return RuntimeSettings.model_validate(data)
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid settings in {settings_path}: {e}") from e

    @staticmethod
    def load_or_default(path: Path | str | None) -> RuntimeSettings:
        """Load settings when the file exists, otherwise return defaults."""
        if path is None or not Path(path).exists():
            return RuntimeSettings()
        return SettingsLoader.load(path)
