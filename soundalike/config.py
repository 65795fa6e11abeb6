"""
Configuration module for soundalike.
"""

import copy
import os
from typing import Any, Dict, Optional

import yaml

from soundalike.exceptions import ConfigError


def default_data_dir() -> str:
    """Return the directory holding the feature store by default."""
    data_home = os.environ.get("XDG_DATA_HOME") or os.path.join(
        os.path.expanduser("~"), ".local", "share"
    )
    return os.path.join(data_home, "soundalike")


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class Config:
    """Configuration manager for soundalike."""

    def __init__(self, config_path: Optional[str] = None):
        """Initialize configuration.

        Args:
            config_path: Path to YAML configuration file. If None, only the
                built-in defaults are used.
        """
        self._config: Dict[str, Any] = self._get_builtin_defaults()
        self._config_path = config_path

        if config_path:
            if not os.path.exists(config_path):
                raise ConfigError(
                    f"Configuration file not found: {config_path}",
                    details={"path": config_path},
                )
            self.load_from_file(config_path)

    def _get_builtin_defaults(self) -> Dict[str, Any]:
        """Return built-in default configuration."""
        return {
            "store": {
                "path": os.path.join(default_data_dir(), "songs.db"),
            },
            "library": {
                "music_root": "./music",
                "supported_formats": ["mp3", "flac", "ogg", "opus", "wav", "m4a", "cue"],
                "queue_file": os.path.join(default_data_dir(), "queue.m3u"),
            },
            "sync": {
                "batch_size": 50,
                "workers": os.cpu_count() or 4,
                "window_size": 1000,
                "reanalyze_on_metadata_change": True,
                "retry_errors": False,
                "show_progress": True,
            },
            "analyzer": {
                "sample_rate": 22050,
                "mono": True,
                "duration_limit": None,
                "n_mfcc": 20,
            },
            "playlist": {
                "length": 20,
                "metric": "euclidean",
                "metric_matrix": None,
                "deduplicate": True,
                "strategy": "ranked",
                "album_order": "ranked",
                "choices": 3,
            },
            "api": {
                "host": "127.0.0.1",
                "port": 8000,
            },
            "logging": {
                "level": "WARNING",
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                "file": None,
            },
        }

    def load_from_file(self, config_path: str) -> None:
        """Load configuration from YAML file on top of the defaults.

        Args:
            config_path: Path to YAML configuration file.
        """
        try:
            with open(config_path, 'r') as f:
                loaded = yaml.safe_load(f) or {}
        except yaml.YAMLError as e:
            raise ConfigError(
                f"Invalid YAML in {config_path}: {e}",
                details={"path": config_path},
            ) from e

        if not isinstance(loaded, dict):
            raise ConfigError(
                f"Configuration root must be a mapping: {config_path}",
                details={"path": config_path},
            )

        self._config_path = config_path
        self._config = _merge(self._get_builtin_defaults(), loaded)

        # Resolve relative paths
        self._resolve_paths()

    def _resolve_paths(self) -> None:
        """Resolve relative paths in configuration."""
        config_dir = os.path.dirname(os.path.abspath(self._config_path or ""))

        for key in ("store.path", "library.music_root", "library.queue_file",
                    "playlist.metric_matrix"):
            value = self.get(key)
            if value:
                value = os.path.expanduser(value)
                if not os.path.isabs(value):
                    value = os.path.join(config_dir, value)
                self.set(key, value)

    def get(self, key: str, default: Any = None) -> Any:
        """Get configuration value by dot-separated key.

        Args:
            key: Dot-separated configuration key (e.g., "sync.batch_size")
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key.split(".")
        value = self._config

        for k in keys:
            if isinstance(value, dict):
                value = value.get(k)
                if value is None:
                    return default
            else:
                return default

        return value

    def set(self, key: str, value: Any) -> None:
        """Set configuration value by dot-separated key.

        Args:
            key: Dot-separated configuration key
            value: Value to set
        """
        keys = key.split(".")
        config = self._config

        for k in keys[:-1]:
            if k not in config:
                config[k] = {}
            config = config[k]

        config[keys[-1]] = value

    @property
    def store(self) -> Dict[str, Any]:
        """Get feature store configuration."""
        return self._config.get("store", {})

    @property
    def library(self) -> Dict[str, Any]:
        """Get library listing configuration."""
        return self._config.get("library", {})

    @property
    def sync(self) -> Dict[str, Any]:
        """Get synchronizer configuration."""
        return self._config.get("sync", {})

    @property
    def analyzer(self) -> Dict[str, Any]:
        """Get analyzer configuration."""
        return self._config.get("analyzer", {})

    @property
    def playlist(self) -> Dict[str, Any]:
        """Get playlist configuration."""
        return self._config.get("playlist", {})

    @property
    def api(self) -> Dict[str, Any]:
        """Get API configuration."""
        return self._config.get("api", {})

    @property
    def logging(self) -> Dict[str, Any]:
        """Get logging configuration."""
        return self._config.get("logging", {})

    @property
    def store_path(self) -> str:
        """Get feature store database path."""
        return self.get("store.path")

    @property
    def music_root(self) -> str:
        """Get music root directory."""
        return self.get("library.music_root", "./music")

    @property
    def queue_file(self) -> str:
        """Get the M3U file holding the local play queue."""
        return self.get("library.queue_file")

    def save(self, path: str) -> None:
        """Save configuration to YAML file.

        Args:
            path: Path to save configuration.
        """
        directory = os.path.dirname(path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(path, 'w') as f:
            yaml.dump(self._config, f, default_flow_style=False)
