"""
Configuration management for spotterm

This module handles loading, validation, and management of application settings
from YAML files and environment variables. It is consumed once at startup to
construct the session manager, the remote client, the local playback engine
and the dispatcher.

The configuration is organized into logical sections using dataclasses:
- Spotify API settings (credentials, redirect, scopes)
- Playback preferences (remote/local/auto mode, polling cadence)
- Dispatcher retry policy
- Local engine options (backend, bitrate, acknowledgment timeout)
- Logging, network and credential storage

Sensitive values (client id and secret) can be loaded from environment
variables or a .env file, while everything else can live in config.yaml.
"""

import os
import yaml
from pathlib import Path
from typing import Dict, Any, Optional
from dataclasses import dataclass, field
from dotenv import load_dotenv

from ..core.exceptions import ConfigError
from ..utils.logger import parse_size

# Load environment variables from .env file if present
load_dotenv()


PLAYBACK_MODES = ("remote", "local", "auto")

DEFAULT_SCOPES = " ".join([
    "user-read-playback-state",
    "user-modify-playback-state",
    "user-read-currently-playing",
    "user-read-recently-played",
    "user-read-playback-position",
    "user-library-read",
    "user-library-modify",
    "playlist-read-private",
    "playlist-read-collaborative",
    "streaming",
])


@dataclass
class SpotifyConfig:
    """
    Spotify API configuration and authentication settings

    Sensitive values (client_id, client_secret) should be provided via
    environment variables. When client_secret is empty the authorization
    flow falls back to PKCE.
    """
    client_id: str = ""
    client_secret: str = ""
    redirect_url: str = "http://127.0.0.1:8898/login"
    scope: str = DEFAULT_SCOPES


@dataclass
class PlaybackConfig:
    """
    Playback routing preferences

    mode selects the initial playback target: a Connect device ("remote"),
    the local engine ("local"), or the local engine when it can start and a
    Connect device otherwise ("auto").
    """
    mode: str = "remote"
    default_device: str = ""
    poll_interval: float = 1.0    # seconds between now-playing refreshes
    settle_window: float = 1.0    # ignore poll results this soon after a user change
    page_size: int = 50


@dataclass
class DispatcherConfig:
    """
    Retry policy for idempotent intents

    An intent gets one immediate attempt plus retry_attempts retries with
    exponential backoff starting at retry_base_delay and capped at
    retry_max_delay.
    """
    retry_attempts: int = 2
    retry_base_delay: float = 0.5
    retry_max_delay: float = 4.0


@dataclass
class EngineConfig:
    """
    Local playback engine configuration

    The engine is feature-gated: it only starts when enabled and when an
    audio backend is registered under the configured name.
    """
    enabled: bool = False
    backend: str = ""
    device: str = ""
    bitrate: int = 320
    normalize_volume: bool = True
    initial_volume: int = 50      # percent
    ack_timeout: float = 5.0
    cache_path: str = "~/.spotterm/engine-cache"
    cache_size: str = "1GB"       # upper bound for the engine audio cache


@dataclass
class LoggingConfig:
    """
    Logging configuration and output settings

    Console output is reserved for user-facing messages so it does not
    fight with the render loop; technical detail goes to the log file.
    """
    level: str = "INFO"
    file: str = "spotterm.log"
    max_size: str = "10MB"
    backup_count: int = 3
    console_output: bool = True
    colored_output: bool = True


@dataclass
class NetworkConfig:
    """Network settings for Web API and token endpoint requests."""
    request_timeout: int = 10


@dataclass
class SecurityConfig:
    """
    Security and storage configuration

    Controls where the credential cache is stored and how early an access
    token is considered expired.
    """
    token_storage_path: str = "~/.spotterm/token.json"
    config_directory: str = "~/.spotterm/"
    token_expiry_margin: int = 300


class Settings:
    """
    Main settings class that manages all configuration

    Loads settings from YAML files and environment variables and exposes
    them as typed sections.

    The class handles:
    - Loading configuration from YAML files
    - Overriding with environment variables
    - Creating the configuration directory
    - Validating configuration values
    - Saving configuration back to files (without secrets)
    """

    def __init__(self, config_path: Optional[str] = None):
        """
        Initialize settings from config file or environment variables

        Args:
            config_path: Path to custom config file, if None uses default locations
        """
        self.config_path = config_path
        self.config_dir = Path.home() / ".spotterm"

        self.spotify = SpotifyConfig()
        self.playback = PlaybackConfig()
        self.dispatcher = DispatcherConfig()
        self.engine = EngineConfig()
        self.logging = LoggingConfig()
        self.network = NetworkConfig()
        self.security = SecurityConfig()

        # Load configuration from various sources in order of precedence
        self._load_config()
        self._load_environment_variables()
        self._create_directories()

    def _sections(self) -> Dict[str, Any]:
        return {
            'spotify': self.spotify,
            'playback': self.playback,
            'dispatcher': self.dispatcher,
            'engine': self.engine,
            'logging': self.logging,
            'network': self.network,
            'security': self.security,
        }

    def _load_config(self) -> None:
        """
        Load configuration from YAML file

        Searches for configuration files in multiple locations in order of
        precedence. The first file found will be used.

        Raises:
            ConfigError: If an explicitly requested file cannot be parsed
        """
        config_paths = [
            self.config_path,
            self.config_dir / "config.yaml",
            Path("config/config.yaml"),
            Path("config.yaml")
        ]

        config_data = {}
        for path in config_paths:
            if path and Path(path).exists():
                try:
                    with open(path, 'r', encoding='utf-8') as f:
                        config_data = yaml.safe_load(f) or {}
                    break
                except (OSError, yaml.YAMLError) as e:
                    if path == self.config_path:
                        raise ConfigError(
                            f"Failed to load config from {path}: {e}",
                            details={'file_path': str(path)}
                        )
                    print(f"Warning: Failed to load config from {path}: {e}")

        self._apply_config(config_data)

    def _apply_config(self, config_data: Dict[str, Any]) -> None:
        """
        Apply configuration data to dataclass instances

        Only attributes that exist on both the YAML section and the
        dataclass are updated; unknown keys are ignored.

        Args:
            config_data: Dictionary containing configuration sections
        """
        config_mapping = self._sections()

        for section_name, section_data in config_data.items():
            if section_name in config_mapping and isinstance(section_data, dict):
                config_obj = config_mapping[section_name]
                for key, value in section_data.items():
                    if hasattr(config_obj, key):
                        setattr(config_obj, key, value)

    def _load_environment_variables(self) -> None:
        """
        Load sensitive configuration from environment variables

        Environment variables take precedence over file-based configuration.
        """
        env_mappings = {
            'SPOTIFY_CLIENT_ID': lambda v: setattr(self.spotify, 'client_id', v),
            'SPOTIFY_CLIENT_SECRET': lambda v: setattr(self.spotify, 'client_secret', v),
            'SPOTIFY_REDIRECT_URL': lambda v: setattr(self.spotify, 'redirect_url', v),
            'SPOTTERM_PLAYBACK_MODE': lambda v: setattr(self.playback, 'mode', v.lower()),
            'SPOTTERM_TOKEN_PATH': lambda v: setattr(self.security, 'token_storage_path', v),
        }

        for env_var, setter in env_mappings.items():
            value = os.getenv(env_var)
            if value:
                setter(value)

    def _create_directories(self) -> None:
        """Create the configuration directory, warning on permission errors."""
        directory = Path(self.security.config_directory).expanduser()
        try:
            directory.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            print(f"Warning: Failed to create directory {directory}: {e}")

    def get_config_directory(self) -> Path:
        """
        Get the expanded config directory path

        Returns:
            Path object for the configuration directory
        """
        return Path(self.security.config_directory).expanduser()

    def get_token_storage_path(self) -> Path:
        """
        Get the expanded token storage path

        Returns:
            Path object for the credential cache file
        """
        return Path(self.security.token_storage_path).expanduser()

    def get_engine_cache_path(self) -> Path:
        """Get the expanded local engine cache directory."""
        return Path(self.engine.cache_path).expanduser()

    def save_config(self, path: Optional[str] = None) -> None:
        """
        Save current configuration to file

        Serializes the current configuration to a YAML file, excluding
        the client id and secret.

        Args:
            path: Custom path to save config, defaults to user config directory

        Raises:
            ConfigError: If the configuration cannot be saved
        """
        if not path:
            path = self.get_config_directory() / "config.yaml"
        else:
            path = Path(path)

        config_data = {
            name: self._dataclass_to_dict(section)
            for name, section in self._sections().items()
        }

        # Remove sensitive data from saved config
        config_data['spotify']['client_id'] = ""
        config_data['spotify']['client_secret'] = ""

        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            with open(path, 'w', encoding='utf-8') as f:
                yaml.dump(config_data, f, default_flow_style=False, indent=2)
        except OSError as e:
            raise ConfigError(f"Failed to save config to {path}: {e}", details={'file_path': str(path)})

    def _dataclass_to_dict(self, obj) -> Dict[str, Any]:
        """Convert a section dataclass to a plain dictionary for YAML output."""
        result = {}
        for key, value in obj.__dict__.items():
            result[key] = value
        return result

    def errors(self) -> list:
        """
        Collect configuration problems

        Returns:
            List of human-readable error strings, empty when valid
        """
        errors = []

        if not self.spotify.client_id:
            errors.append("Spotify client_id is required")

        if self.playback.mode not in PLAYBACK_MODES:
            errors.append(f"Invalid playback mode: {self.playback.mode}")

        if self.playback.mode == "local" and not self.engine.enabled:
            errors.append("Playback mode 'local' requires engine.enabled")

        if self.dispatcher.retry_attempts < 0:
            errors.append(f"Invalid retry_attempts: {self.dispatcher.retry_attempts}")

        if not 0 <= self.engine.initial_volume <= 100:
            errors.append(f"Invalid engine initial_volume: {self.engine.initial_volume}")

        if self.playback.poll_interval <= 0:
            errors.append(f"Invalid poll_interval: {self.playback.poll_interval}")

        try:
            parse_size(str(self.engine.cache_size))
        except ValueError:
            errors.append(f"Invalid engine cache_size: {self.engine.cache_size}")

        return errors

    def validate(self) -> bool:
        """
        Validate current configuration

        Returns:
            True if configuration is valid, False otherwise
        """
        errors = self.errors()
        if errors:
            print("Configuration validation errors:")
            for error in errors:
                print(f"  - {error}")
            return False

        return True

    def require_valid(self) -> None:
        """
        Raise when the configuration cannot be used to start a session

        Raises:
            ConfigError: With every validation problem listed in details
        """
        errors = self.errors()
        if errors:
            raise ConfigError(errors[0], details={'errors': errors})

    def __str__(self) -> str:
        sections = [
            f"Mode: {self.playback.mode}",
            f"Engine: {'enabled' if self.engine.enabled else 'disabled'}",
            f"Token cache: {self.security.token_storage_path}",
            f"Retries: {self.dispatcher.retry_attempts}",
        ]
        return f"Settings({', '.join(sections)})"


# Global settings instance for singleton pattern
_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """
    Get the global settings instance

    Creates the instance on first access so importing the package does not
    touch the filesystem.

    Returns:
        The global Settings instance
    """
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def reload_settings(config_path: Optional[str] = None) -> Settings:
    """
    Reload settings from configuration files

    Args:
        config_path: Optional path to specific config file

    Returns:
        New Settings instance with reloaded configuration
    """
    global _settings
    _settings = Settings(config_path)
    return _settings
