"""
JobCore Configuration Management

This module provides configuration management for JobCore.
"""

import os
import logging
from typing import Dict, Any, Optional
from pathlib import Path

import yaml

from jobcore.errors import ConfigurationError

# Configure logging
logger = logging.getLogger(__name__)

WORKER_SECRET_ENV_VARS = ('JOBCORE_WORKER_SECRET', 'WORKER_API_SECRET')


class JobCoreConfig:
    """
    Manages system-wide configuration for JobCore

    Values are layered: packaged defaults, then ``~/.jobcore/config.yaml`` when it
    exists, then any overrides passed to the constructor. A process-wide instance
    is available through ``JobCoreConfig.instance()``.
    """

    _instance: Optional['JobCoreConfig'] = None

    def __init__(self, overrides: Optional[Dict[str, Any]] = None, config_file: Optional[Path] = None):
        self.logger = logging.getLogger(__name__)

        default_config_path = Path(__file__).parent / 'default_config.yaml'
        with open(default_config_path, 'r') as f:
            self.config: Dict[str, Any] = yaml.safe_load(f)

        self.config_file = Path(config_file) if config_file else Path.home() / '.jobcore' / 'config.yaml'
        if self.config_file.exists():
            self._load_config()

        if overrides:
            self._update_config_recursive(self.config, overrides)

    @classmethod
    def instance(cls) -> 'JobCoreConfig':
        """Get the process-wide configuration, creating it on first use"""
        if cls._instance is None:
            cls._instance = cls()
        return cls._instance

    @classmethod
    def set_instance(cls, config: Optional['JobCoreConfig']) -> None:
        """Replace (or clear, with None) the process-wide configuration"""
        cls._instance = config

    @classmethod
    def from_file(cls, config_path: str) -> 'JobCoreConfig':
        """Load configuration from file

        Args:
            config_path: Path to a YAML configuration file

        Returns:
            JobCoreConfig instance
        """
        instance = cls(config_file=Path(config_path))
        if not instance.config_file.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")
        return instance

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value

        Args:
            key: Configuration key (dot notation)
            default: Default value if key not found

        Returns:
            Configuration value
        """
        try:
            value = self.config
            for k in key.split('.'):
                value = value[k]
            return value
        except (KeyError, TypeError):
            return default

    def set(self, key: str, value: Any) -> None:
        """Set configuration value

        Args:
            key: Configuration key (dot notation)
            value: Configuration value
        """
        keys = key.split('.')
        config = self.config
        for k in keys[:-1]:
            if k not in config or not isinstance(config[k], dict):
                config[k] = {}
            config = config[k]
        config[keys[-1]] = value

    def _load_config(self) -> None:
        """Load configuration from file"""
        try:
            with open(self.config_file, 'r') as f:
                file_config = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML in configuration file: {str(e)}")
        except OSError as e:
            raise ConfigurationError(f"Failed to read configuration file: {str(e)}")

        if file_config is None:
            raise ConfigurationError(f"Configuration file is empty: {self.config_file}")

        self._update_config_recursive(self.config, file_config)
        self.logger.info(f"Configuration loaded from {self.config_file}")

    def _validate_config(self) -> None:
        """Validate configuration structure and values"""
        if not isinstance(self.config, dict):
            raise ConfigurationError("Configuration must be a dictionary")

        for section in ('database', 'logging', 'rate_limits', 'worker'):
            if section not in self.config:
                raise ConfigurationError(f"Missing required configuration section: {section}")

        db_config = self.config['database']
        db_type = db_config.get('type')
        if db_type is None:
            raise ConfigurationError("Database type not specified")
        if db_type not in ('sqlite', 'postgresql', 'postgres'):
            raise ConfigurationError(f"Unsupported database type: {db_type}")

        if db_type == 'sqlite' and not db_config.get('sqlite', {}).get('path'):
            raise ConfigurationError("SQLite database path not specified")

        limits = self.config['rate_limits']
        for field in ('max_active_jobs_per_user', 'max_jobs_per_day'):
            value = limits.get(field)
            if not isinstance(value, int) or value < 1:
                raise ConfigurationError(f"rate_limits.{field} must be a positive integer")

    def save(self) -> None:
        """Save configuration to the user configuration file"""
        try:
            self.config_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.config_file, 'w') as f:
                yaml.dump(self.config, f, default_flow_style=False, sort_keys=False)
            self.logger.info(f"Configuration saved to {self.config_file}")
        except OSError as e:
            self.logger.error(f"Failed to save configuration: {str(e)}")
            raise

    def _update_config_recursive(self, base: Dict[str, Any], update: Dict[str, Any]) -> None:
        """Update configuration recursively"""
        for key, value in update.items():
            if isinstance(value, dict) and key in base and isinstance(base[key], dict):
                self._update_config_recursive(base[key], value)
            else:
                base[key] = value

    def get_database_config(self) -> Dict[str, Any]:
        """Get database configuration"""
        return self.config.get('database', {})

    def get_logging_config(self) -> Dict[str, Any]:
        """Get logging configuration"""
        return self.config.get('logging', {})

    def get_worker_secret(self) -> Optional[str]:
        """Worker API secret from config, falling back to the environment"""
        secret = self.get('worker.api_secret')
        if secret:
            return secret
        for name in WORKER_SECRET_ENV_VARS:
            value = os.getenv(name)
            if value:
                return value
        return None

    def validate(self) -> bool:
        """Validate configuration"""
        try:
            self._validate_config()
            return True
        except ConfigurationError as e:
            self.logger.error(f"Configuration validation failed: {str(e)}")
            return False

    def get_all(self) -> Dict[str, Any]:
        """Get all configuration"""
        return self.config.copy()

    def update(self, config: Dict[str, Any]) -> None:
        """Update configuration in place

        Args:
            config: New configuration values
        """
        self._update_config_recursive(self.config, config)
