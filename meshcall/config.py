"""Configuration management for meshcall.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (MESHCALL_SIGNALING_WS)
3. TOML configuration file
4. Default values

Configuration files are loaded from:
- meshcall.toml in current working directory
- ~/.meshcall/config.toml

Environment selection via MESHCALL_ENV (development, staging, production).
Defaults to production if not set.

Example file::

    [environments.production]
    signaling_websocket = "wss://relay.example.org"
    ice_servers = [{ urls = "stun:stun.l.google.com:19302" }]

    [call]
    negotiation_timeout = 10.0
    ice_restart_timeout = 15.0
    max_ice_restarts = 1

    [media]
    audio_device = "default"
    audio_format = "pulse"
    camera_device = "/dev/video0"
    camera_format = "v4l2"
    camera_options = { video_size = "640x480", framerate = "30" }
"""

import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from loguru import logger

# Public STUN servers used when no ICE servers are configured
DEFAULT_ICE_SERVERS: List[Dict[str, str]] = [
    {"urls": "stun:stun.l.google.com:19302"},
    {"urls": "stun:global.stun.twilio.com:3478"},
]

DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8765"

# Call timing defaults (seconds)
DEFAULT_NEGOTIATION_TIMEOUT = 10.0
DEFAULT_ICE_RESTART_TIMEOUT = 15.0
DEFAULT_MAX_ICE_RESTARTS = 1
DEFAULT_SUBSCRIBE_TIMEOUT = 10.0

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


@dataclass
class MediaDeviceConfig:
    """Capture device settings passed to ffmpeg through aiortc's MediaPlayer.

    Attributes:
        audio_device: Microphone device name.
        audio_format: ffmpeg input format for the microphone (pulse, alsa, ...).
        camera_device: Camera device name.
        camera_format: ffmpeg input format for the camera (v4l2, avfoundation, ...).
        camera_options: Extra ffmpeg options for the camera.
        screen_device: Display to capture for screen sharing.
        screen_format: ffmpeg input format for screen capture (x11grab, gdigrab, ...).
        screen_options: Extra ffmpeg options for screen capture.
    """

    audio_device: str = "default"
    audio_format: str = "pulse"
    camera_device: str = "/dev/video0"
    camera_format: str = "v4l2"
    camera_options: Dict[str, str] = field(
        default_factory=lambda: {"video_size": "640x480", "framerate": "30"}
    )
    screen_device: str = ":0.0"
    screen_format: str = "x11grab"
    screen_options: Dict[str, str] = field(
        default_factory=lambda: {"video_size": "1280x720", "framerate": "15"}
    )

    @classmethod
    def from_dict(cls, data: dict) -> "MediaDeviceConfig":
        """Create MediaDeviceConfig from the TOML [media] section.

        Unknown keys are ignored with a warning.

        Args:
            data: Dictionary from TOML [media] section.

        Returns:
            MediaDeviceConfig instance.
        """
        config = cls()
        for key, value in data.items():
            if not hasattr(config, key):
                logger.warning(f"Ignoring unknown media setting: {key}")
                continue
            if key.endswith("_options"):
                if not isinstance(value, dict):
                    logger.warning(f"Ignoring {key}: expected a table, got {value!r}")
                    continue
                value = {str(k): str(v) for k, v in value.items()}
            setattr(config, key, value)
        return config


class Config:
    """Configuration manager for meshcall."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.ice_servers: List[Dict[str, str]] = list(DEFAULT_ICE_SERVERS)
        self.negotiation_timeout: float = DEFAULT_NEGOTIATION_TIMEOUT
        self.ice_restart_timeout: float = DEFAULT_ICE_RESTART_TIMEOUT
        self.max_ice_restarts: int = DEFAULT_MAX_ICE_RESTARTS
        self.subscribe_timeout: float = DEFAULT_SUBSCRIBE_TIMEOUT
        self.media: MediaDeviceConfig = MediaDeviceConfig()
        self.environment: str = "production"
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables (MESHCALL_SIGNALING_WS)
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from MESHCALL_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("MESHCALL_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid MESHCALL_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. meshcall.toml in current working directory
        2. ~/.meshcall/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "meshcall.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".meshcall" / "config.toml"
        if home_config.exists():
            logger.info(f"Loading config from {home_config}")
            return home_config

        logger.debug("No config file found, using defaults")
        return None

    def _load_config_file(self, config_file: Path) -> None:
        """Load configuration from TOML file.

        Args:
            config_file: Path to the TOML configuration file.
        """
        try:
            with open(config_file, "rb") as f:
                self._config_data = tomllib.load(f)
        except (OSError, tomllib.TOMLDecodeError) as e:
            logger.warning(
                f"Failed to load config file {config_file}: {e}. Using defaults."
            )
            return

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})
        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )

        if "signaling_websocket" in env_config:
            self.signaling_websocket = env_config["signaling_websocket"]
            logger.debug(
                f"Loaded signaling_websocket from config: {self.signaling_websocket}"
            )

        if "ice_servers" in env_config:
            servers = env_config["ice_servers"]
            if isinstance(servers, list) and all(
                isinstance(s, dict) and "urls" in s for s in servers
            ):
                self.ice_servers = servers
                logger.debug(f"Loaded {len(servers)} ICE servers from config")
            else:
                logger.warning(
                    "Ignoring ice_servers: expected a list of tables with 'urls'"
                )

        call_config = self._config_data.get("call", {})
        for key, convert in (
            ("negotiation_timeout", float),
            ("ice_restart_timeout", float),
            ("subscribe_timeout", float),
            ("max_ice_restarts", int),
        ):
            if key not in call_config:
                continue
            try:
                setattr(self, key, convert(call_config[key]))
            except (TypeError, ValueError):
                logger.warning(
                    f"Ignoring call.{key}: invalid value {call_config[key]!r}. "
                    f"Using {getattr(self, key)}."
                )

        self.media = MediaDeviceConfig.from_dict(self._config_data.get("media", {}))

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        ws_override = os.getenv("MESHCALL_SIGNALING_WS")
        if ws_override:
            self.signaling_websocket = ws_override
            logger.info(
                f"Overriding signaling_websocket from env: {self.signaling_websocket}"
            )


# Global configuration instance
_config: Optional[Config] = None


def get_config() -> Config:
    """Get the global configuration instance.

    Loads configuration on first call.

    Returns:
        Global Config instance.
    """
    global _config
    if _config is None:
        _config = Config()
        _config.load()
    return _config


def reload_config() -> Config:
    """Reload configuration from sources.

    Useful for testing or runtime reconfiguration.

    Returns:
        Reloaded Config instance.
    """
    global _config
    _config = Config()
    _config.load()
    return _config
