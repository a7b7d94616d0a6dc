"""Environment settings used as command line defaults."""

import os
from typing import Optional


ENV_PREFIX = "PHPFPM_EXPORTER_"


class Settings:
    """Application settings from environment variables."""

    @staticmethod
    def get(key: str, default: Optional[str] = None) -> Optional[str]:
        """
        Get a PHPFPM_EXPORTER_* environment variable.

        Args:
            key: Variable name without prefix, e.g. "ADDR"
            default: Default value if not set or empty

        Returns:
            Optional[str]: Environment variable value or default
        """
        return os.getenv(ENV_PREFIX + key) or default

    @staticmethod
    def get_float(key: str, default: Optional[float] = None) -> Optional[float]:
        """
        Get a numeric setting.

        Raises:
            ValueError: If the variable is set but not a number
        """
        value = Settings.get(key)
        if value is None:
            return default
        try:
            return float(value)
        except ValueError:
            raise ValueError(f"{ENV_PREFIX}{key} must be a number, got {value!r}")
