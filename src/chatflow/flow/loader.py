"""Flow loader for YAML and JSON flow files."""

import json
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from chatflow.core.errors import ConfigError
from chatflow.flow.models import FlowDefinition

FLOW_SUFFIXES = (".yaml", ".yml", ".json")


class FlowLoader:
    """Load FlowDefinition objects from files."""

    @staticmethod
    def read(path: Path | str) -> dict[str, Any]:
        """Read the raw mapping stored in a flow file."""
        flow_path = Path(path)
        if not flow_path.exists():
            raise FileNotFoundError(f"Flow file not found: {flow_path}")

        try:
            with open(flow_path, encoding="utf-8") as f:
                if flow_path.suffix == ".json":
                    data = json.load(f)
                else:
                    data = yaml.safe_load(f) or {}
        except (yaml.YAMLError, ValueError) as e:
            raise ConfigError(f"Flow file {flow_path} could not be parsed: {e}") from e

        if not isinstance(data, dict):
            raise ConfigError(f"Flow file {flow_path} must contain a mapping")

        # Exported flows may wrap the definition: {"flow": {...}}
        if "flow" in data and isinstance(data["flow"], dict):
            data = data["flow"]
        return data

    @staticmethod
    def load(path: Path | str) -> FlowDefinition:
        """Load and validate one flow file.

        Args:
            path: Path to a .yaml/.yml/.json flow file

        Returns:
            Parsed FlowDefinition

        Raises:
            FileNotFoundError: If the file does not exist
            ConfigError: If the content is not a valid flow
        """
        data = FlowLoader.read(path)
        if "id" not in data:
            data["id"] = Path(path).stem
        try:
            return FlowDefinition.model_validate(data)
        except PydanticValidationError as e:
            raise ConfigError(f"Invalid flow definition in {path}: {e}") from e

    @staticmethod
    def load_directory(directory: Path | str) -> list[FlowDefinition]:
        """Load every flow file in a directory, sorted by file name."""
        root = Path(directory)
        if not root.is_dir():
            raise FileNotFoundError(f"Flow directory not found: {root}")
        files = sorted(p for p in root.iterdir() if p.suffix in FLOW_SUFFIXES)
        return [FlowLoader.load(p) for p in files]
