"""
load the config from config.yaml and environment variables
"""

import copy
import os
import yaml
from pathlib import Path
from typing import Dict, Any


class Config:
    """Configuration loader that reads from config.yaml and environment variables."""

    # Environment variable -> nested config location
    ENV_MAPPINGS = {
        'WEBSERVICE_TIMEOUT': ('transport', 'timeout'),
        'WEBSERVICE_USER_AGENT': ('transport', 'user_agent'),
        'WEBSERVICE_CHUNK_SIZE': ('transport', 'chunk_size'),
        'WEBSERVICE_MAX_REDIRECTS': ('transport', 'max_redirects'),
        'WEBSERVICE_FOLLOW_REDIRECTS': ('transport', 'follow_redirects'),
        'WEBSERVICE_MAX_CONCURRENT': ('queue', 'max_concurrent'),
        'LOG_LEVEL': ('logging', 'level'),
        'LOG_FORMAT': ('logging', 'format'),
    }

    def __init__(self, config_path: str = None):
        """Initialize configuration loader.

        Args:
            config_path: Path to config.yaml file. If None, looks for config.yaml
                        in the same directory as this module.
        """
        if config_path is None:
            config_path = Path(__file__).parent / "config.yaml"

        self.config_path = Path(config_path)
        self._config = self._load_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from YAML file and override with environment variables."""
        try:
            with open(self.config_path, 'r') as f:
                config = yaml.safe_load(f) or {}
        except FileNotFoundError:
            raise FileNotFoundError(f"Configuration file not found: {self.config_path}")
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in configuration file: {e}")

        if not isinstance(config, dict):
            raise ValueError(f"Configuration file must contain a mapping: {self.config_path}")

        return self._apply_env_overrides(config)

    def _apply_env_overrides(self, config: Dict[str, Any]) -> Dict[str, Any]:
        """Apply environment variable overrides to configuration."""
        for env_var, config_path in self.ENV_MAPPINGS.items():
            env_value = os.getenv(env_var)
            if env_value is not None:
                current = config
                for key in config_path[:-1]:
                    if not isinstance(current.get(key), dict):
                        current[key] = {}
                    current = current[key]

                current[config_path[-1]] = self._convert_env_value(env_value)

        return config

    def _convert_env_value(self, value: str):
        """Convert environment variable string to appropriate Python type."""
        if value.lower() in ('true', 'false'):
            return value.lower() == 'true'

        try:
            return int(value)
        except ValueError:
            pass

        try:
            return float(value)
        except ValueError:
            pass

        return value

    def get(self, *keys, default=None):
        """Get configuration value by nested keys.

        Args:
            *keys: Configuration keys (e.g., 'transport', 'timeout')
            default: Default value if key not found

        Returns:
            Configuration value or default
        """
        current = self._config
        for key in keys:
            if isinstance(current, dict) and key in current:
                current = current[key]
            else:
                return default
        return current

    def api(self, name: str) -> Dict[str, Any]:
        """Get a copy of a named API info table from the ``apis`` section."""
        apis = self.apis
        if name not in apis:
            raise KeyError(f"Unknown API {name!r}; known: {', '.join(sorted(apis)) or 'none'}")
        return copy.deepcopy(apis[name])

    @property
    def transport(self) -> Dict[str, Any]:
        """Get HTTP transport configuration."""
        return self.get('transport', default={})

    @property
    def queue(self) -> Dict[str, Any]:
        """Get request queue configuration."""
        return self.get('queue', default={})

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self.get('logging', default={})

    @property
    def apis(self) -> Dict[str, Any]:
        """Get named API info tables."""
        return self.get('apis', default={}) or {}
