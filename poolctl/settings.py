"""Engine settings: defaults, optional settings file, environment overrides."""

import os
import json
import logging
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from .errors import ConfigError


logger = logging.getLogger(__name__)


@dataclass
class EngineSettings:
    """Paths, timeouts and policies used by the engine."""
    pools_file: str = "/boot/config/pools.json"
    mount_root: str = "/mnt"
    mergerfs_root: str = "/var/mergerfs"
    snapraid_root: str = "/var/snapraid"
    snapraid_config_dir: str = "/boot/config/snapraid"
    snapraid_socket_dir: str = "/run/snapraid"
    log_level: str = "INFO"
    log_json: bool = True
    command_timeout: int = 300
    power_timeout: int = 30
    power_max_workers: int = 4
    mount_owner_uid: int = 500
    mount_owner_gid: int = 500
    partition_whole_disks: bool = True
    use_sudo: bool = False
    dry_run: bool = False
    raid_convert_min_free_percent: float = 50.0

    def pool_mount_point(self, pool_name: str) -> str:
        return os.path.join(self.mount_root, pool_name)

    def branch_mount_point(self, pool_name: str, slot: int) -> str:
        return os.path.join(self.mergerfs_root, pool_name, f"disk{slot}")

    def parity_mount_point(self, pool_name: str, slot: int) -> str:
        return os.path.join(self.snapraid_root, pool_name, f"parity{slot}")

    def snapraid_config_path(self, pool_name: str) -> str:
        return os.path.join(self.snapraid_config_dir, f"{pool_name}.conf")

    def snapraid_socket_path(self, pool_name: str) -> str:
        return os.path.join(self.snapraid_socket_dir, f"{pool_name}.socket")


class SettingsManager:
    """Loads EngineSettings from defaults, a JSON/YAML file and the environment."""

    ENV_MAPPINGS = {
        'POOLCTL_POOLS_FILE': 'pools_file',
        'POOLCTL_MOUNT_ROOT': 'mount_root',
        'POOLCTL_MERGERFS_ROOT': 'mergerfs_root',
        'POOLCTL_SNAPRAID_ROOT': 'snapraid_root',
        'POOLCTL_SNAPRAID_CONFIG_DIR': 'snapraid_config_dir',
        'POOLCTL_SNAPRAID_SOCKET_DIR': 'snapraid_socket_dir',
        'POOLCTL_LOG_LEVEL': 'log_level',
        'POOLCTL_LOG_JSON': 'log_json',
        'POOLCTL_COMMAND_TIMEOUT': 'command_timeout',
        'POOLCTL_POWER_TIMEOUT': 'power_timeout',
        'POOLCTL_POWER_MAX_WORKERS': 'power_max_workers',
        'POOLCTL_MOUNT_OWNER_UID': 'mount_owner_uid',
        'POOLCTL_MOUNT_OWNER_GID': 'mount_owner_gid',
        'POOLCTL_PARTITION_WHOLE_DISKS': 'partition_whole_disks',
        'POOLCTL_USE_SUDO': 'use_sudo',
        'POOLCTL_DRY_RUN': 'dry_run',
        'POOLCTL_RAID_CONVERT_MIN_FREE_PERCENT': 'raid_convert_min_free_percent',
    }

    PATH_KEYS = (
        'pools_file', 'mount_root', 'mergerfs_root', 'snapraid_root',
        'snapraid_config_dir', 'snapraid_socket_dir',
    )

    def __init__(self, settings_file_path: Optional[str] = None):
        """
        Initialize the SettingsManager.

        Args:
            settings_file_path: Optional path to a .json, .yaml or .yml file
        """
        self.settings_file_path = settings_file_path
        self._settings: Optional[EngineSettings] = None

    def load_settings(self) -> EngineSettings:
        """
        Load settings, caching the result.

        Returns:
            EngineSettings built from defaults, file and environment

        Raises:
            ConfigError: If the file is unreadable or a value is invalid
        """
        if self._settings is not None:
            return self._settings

        settings_dict = asdict(EngineSettings())

        if self.settings_file_path and os.path.exists(self.settings_file_path):
            settings_dict.update(self._load_settings_file(self.settings_file_path))

        settings_dict.update(self._load_from_environment())

        settings = EngineSettings(**settings_dict)
        self._validate_settings(settings)

        self._settings = settings
        logger.info("Settings loaded successfully")
        return settings

    def reload_settings(self) -> EngineSettings:
        self._settings = None
        return self.load_settings()

    def _load_settings_file(self, file_path: str) -> Dict[str, Any]:
        suffix = Path(file_path).suffix.lower()
        try:
            with open(file_path, 'r') as f:
                if suffix in ('.yaml', '.yml'):
                    data = yaml.safe_load(f) or {}
                else:
                    data = json.load(f)
        except (OSError, ValueError, yaml.YAMLError) as e:
            raise ConfigError(f"Error loading settings file {file_path}: {e}")

        if not isinstance(data, dict):
            raise ConfigError(f"Settings file {file_path} must contain a mapping")

        known = {item.name for item in fields(EngineSettings)}
        unknown = set(data) - known
        if unknown:
            logger.warning(f"Ignoring unknown settings: {', '.join(sorted(unknown))}")
        return {key: self._parse_file_value(key, value) for key, value in data.items() if key in known}

    def _parse_file_value(self, settings_key: str, value: Any) -> Any:
        """Check a settings file value against the field's type; strings parse like environment values."""
        if isinstance(value, str):
            return self._parse_env_value(settings_key, value)

        default = getattr(EngineSettings(), settings_key)
        if isinstance(default, bool):
            if isinstance(value, bool):
                return value
        elif isinstance(default, int):
            if isinstance(value, int) and not isinstance(value, bool):
                return value
        elif isinstance(default, float):
            if isinstance(value, (int, float)) and not isinstance(value, bool):
                return float(value)

        raise ConfigError(f"Invalid value for {settings_key}: {value!r}")

    def _load_from_environment(self) -> Dict[str, Any]:
        settings = {}
        for env_key, settings_key in self.ENV_MAPPINGS.items():
            env_value = os.getenv(env_key)
            if env_value is not None:
                settings[settings_key] = self._parse_env_value(settings_key, env_value)
        return settings

    def _parse_env_value(self, settings_key: str, value: str) -> Any:
        """
        Parse an environment variable value to the field's type.

        Args:
            settings_key: EngineSettings field name
            value: Raw string from the environment

        Returns:
            Parsed value
        """
        default = getattr(EngineSettings(), settings_key)

        if isinstance(default, bool):
            return value.strip().lower() in {'true', '1', 'yes', 'on'}

        if isinstance(default, int):
            try:
                return int(value)
            except ValueError:
                raise ConfigError(f"Invalid integer for {settings_key}: {value}")

        if isinstance(default, float):
            try:
                return float(value)
            except ValueError:
                raise ConfigError(f"Invalid number for {settings_key}: {value}")

        return value

    def _validate_settings(self, settings: EngineSettings) -> None:
        if settings.command_timeout <= 0:
            raise ConfigError("command_timeout must be positive")

        if settings.power_timeout <= 0:
            raise ConfigError("power_timeout must be positive")

        if settings.power_max_workers < 1:
            raise ConfigError("power_max_workers must be at least 1")

        if not 0 <= settings.raid_convert_min_free_percent <= 100:
            raise ConfigError("raid_convert_min_free_percent must be between 0 and 100")

        valid_log_levels = {'DEBUG', 'INFO', 'WARNING', 'ERROR', 'CRITICAL'}
        if settings.log_level.upper() not in valid_log_levels:
            raise ConfigError(f"Invalid log level: {settings.log_level}")

        for key in self.PATH_KEYS:
            path = getattr(settings, key)
            if not os.path.isabs(path):
                raise ConfigError(f"Path must be absolute: {key}={path}")

        logger.debug("Settings validation passed")
