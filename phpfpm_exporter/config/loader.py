"""Configuration loader with YAML parsing and environment variable substitution."""

import yaml
import os
import re
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import ValidationError

from .models import ExporterConfig
from ..utils.errors import ConfigurationError


class ConfigLoader:
    """Load and validate exporter configuration."""

    @staticmethod
    def load_from_file(
        config_path: str,
        overrides: Optional[Dict[str, Any]] = None
    ) -> ExporterConfig:
        """
        Load configuration from YAML file with environment variable substitution.

        Args:
            config_path: Path to YAML configuration file
            overrides: Top-level keys that replace values from the file

        Returns:
            ExporterConfig: Validated configuration object

        Raises:
            ConfigurationError: If the file is missing, unparsable or invalid
        """
        config_file = Path(config_path)
        if not config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        try:
            with open(config_file, 'r') as f:
                raw_config = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Failed to parse {config_path}: {e}") from e

        if not isinstance(raw_config, dict):
            raise ConfigurationError(f"Top level of {config_path} must be a mapping")

        raw_config = ConfigLoader._substitute_env_vars(raw_config)
        raw_config.update(overrides or {})

        return ConfigLoader.from_mapping(raw_config)

    @staticmethod
    def from_mapping(raw_config: Dict[str, Any]) -> ExporterConfig:
        """
        Validate an already parsed configuration mapping.

        The ``targets`` key accepts either a list of ``{name, url}`` mappings
        or a ``name: url`` mapping; the latter keeps its insertion order.

        Raises:
            ConfigurationError: If validation fails
        """
        raw_config = dict(raw_config)
        targets = raw_config.get('targets')
        if isinstance(targets, dict):
            raw_config['targets'] = [
                {'name': name, 'url': url} for name, url in targets.items()
            ]

        try:
            return ExporterConfig(**raw_config)
        except ValidationError as e:
            raise ConfigurationError(f"Invalid configuration: {e}") from e

    @staticmethod
    def _substitute_env_vars(obj: Any) -> Any:
        """
        Recursively substitute ${ENV_VAR} placeholders with environment values.

        Args:
            obj: Object to process (str, dict, list, or primitive)

        Returns:
            Object with environment variables substituted
        """
        if isinstance(obj, str):
            pattern = r'\$\{(\w+)\}'
            return re.sub(pattern, lambda m: os.getenv(m.group(1), ''), obj)

        elif isinstance(obj, dict):
            return {k: ConfigLoader._substitute_env_vars(v) for k, v in obj.items()}

        elif isinstance(obj, list):
            return [ConfigLoader._substitute_env_vars(item) for item in obj]

        return obj
