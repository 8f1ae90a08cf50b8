"""Configuration management for hostmesh.

This module handles loading configuration from multiple sources with the following priority:
1. CLI arguments (handled by caller)
2. Environment variables (HOSTMESH_SIGNALING_WS, HOSTMESH_RELAY_URL, HOSTMESH_KV_URL,
   HOSTMESH_KV_DIR, HOSTMESH_ORIGIN)
3. TOML configuration file
4. Default values (production environment)

Configuration files are loaded from:
- hostmesh.toml in current working directory
- ~/.hostmesh/config.toml

Environment selection via HOSTMESH_ENV (development, staging, production).
Defaults to production if not set.
"""

import os
import tomllib
from dataclasses import dataclass, fields
from pathlib import Path
from typing import List, Optional

from aiortc import RTCConfiguration, RTCIceServer
from loguru import logger


@dataclass
class ConnectionTuning:
    """Timing and threshold knobs for the connection orchestration layer.

    All durations are in seconds.

    Attributes:
        heartbeat_interval_mobile: Heartbeat period for mobile-classified participants.
        heartbeat_interval_default: Heartbeat period for every other participant.
        liveness_factor: Multiple of the heartbeat interval after which a silent
            peer is considered degraded.
        backoff_base: First reconnection delay; doubles on every attempt.
        max_retries: Reconnection attempts before giving up on a participant.
        watchdog_interval: Playback watchdog poll period.
        stall_threshold: Consecutive stalled polls before ``video-lost`` fires.
        staleness_window: Signaling messages older than this are ignored.
        dedup_bucket: Timestamp bucket width used to fold duplicate deliveries.
        kv_poll_interval: Poll period of the durable key-value channel.
        candidate_spacing: Delay between buffered ICE candidate applications.
        storm_threshold: Sent-message count that, with zero receipts, triggers
            the signaling storm warning.
        ready_resend_interval: Period at which a participant repeats ``ready``
            until an offer arrives.
        negotiation_timeout: Time a session may spend offering or answering
            before it is failed and handed to reconnection.
    """

    heartbeat_interval_mobile: float = 5.0
    heartbeat_interval_default: float = 30.0
    liveness_factor: float = 2.0
    backoff_base: float = 2.0
    max_retries: int = 3
    watchdog_interval: float = 2.0
    stall_threshold: int = 3
    staleness_window: float = 30.0
    dedup_bucket: float = 1.0
    kv_poll_interval: float = 1.0
    candidate_spacing: float = 0.01
    storm_threshold: int = 20
    ready_resend_interval: float = 3.0
    negotiation_timeout: float = 30.0

    def __post_init__(self):
        """Validate tuning values after initialization."""
        if self.max_retries < 0:
            raise ValueError("max_retries cannot be negative")
        if self.stall_threshold < 1:
            raise ValueError("stall_threshold must be at least 1")
        for name in (
            "heartbeat_interval_mobile",
            "heartbeat_interval_default",
            "backoff_base",
            "watchdog_interval",
            "kv_poll_interval",
            "negotiation_timeout",
        ):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

    @classmethod
    def from_dict(cls, data: dict) -> "ConnectionTuning":
        """Create ConnectionTuning from TOML dictionary.

        Unknown keys are skipped with a warning.

        Args:
            data: Dictionary from TOML [timing] section.

        Returns:
            ConnectionTuning instance.
        """
        known = {f.name for f in fields(cls)}
        values = {}
        for key, value in data.items():
            if key not in known:
                logger.warning(f"Skipping unknown timing option: {key}")
                continue
            values[key] = value
        return cls(**values)

    def heartbeat_interval(self, device_class: str) -> float:
        """Heartbeat period for a participant of the given device class."""
        if device_class == "mobile":
            return self.heartbeat_interval_mobile
        return self.heartbeat_interval_default


@dataclass
class IceServerConfig:
    """Configuration for a single STUN/TURN server.

    Attributes:
        urls: One or more server URLs.
        username: Optional TURN username.
        credential: Optional TURN credential.
    """

    urls: List[str]
    username: Optional[str] = None
    credential: Optional[str] = None

    def __post_init__(self):
        """Validate ICE server configuration after initialization."""
        if isinstance(self.urls, str):
            self.urls = [self.urls]
        if not self.urls:
            raise ValueError("ICE server urls cannot be empty")

    def to_rtc(self) -> RTCIceServer:
        return RTCIceServer(
            urls=self.urls, username=self.username, credential=self.credential
        )


# Default production endpoints
DEFAULT_SIGNALING_WEBSOCKET = "ws://localhost:8080"
DEFAULT_ORIGIN = "http://localhost:5173"
DEFAULT_ICE_SERVERS = [IceServerConfig(urls=["stun:stun.l.google.com:19302"])]

# Valid environment names
VALID_ENVIRONMENTS = {"development", "staging", "production"}


class Config:
    """Configuration manager for hostmesh."""

    def __init__(self):
        """Initialize configuration with defaults."""
        self.signaling_websocket: str = DEFAULT_SIGNALING_WEBSOCKET
        self.relay_url: Optional[str] = None
        self.kv_url: Optional[str] = None
        self.kv_dir: Optional[str] = None
        self.origin: str = DEFAULT_ORIGIN
        self.environment: str = "production"
        self.tuning: ConnectionTuning = ConnectionTuning()
        self.ice_servers: List[IceServerConfig] = list(DEFAULT_ICE_SERVERS)
        self._config_data: dict = {}

    def load(self) -> None:
        """Load configuration from all sources.

        Priority order:
        1. Environment variables
        2. TOML configuration file
        3. Default values
        """
        self.environment = self._get_environment()

        config_file = self._find_config_file()
        if config_file:
            self._load_config_file(config_file)

        self._apply_env_overrides()

    def _get_environment(self) -> str:
        """Get the current environment from HOSTMESH_ENV.

        Returns:
            Environment name (development, staging, or production).
            Defaults to production if not set or invalid.
        """
        env = os.getenv("HOSTMESH_ENV", "production").lower()
        if env not in VALID_ENVIRONMENTS:
            logger.warning(
                f"Invalid HOSTMESH_ENV value '{env}'. "
                f"Valid values are: {', '.join(sorted(VALID_ENVIRONMENTS))}. "
                f"Defaulting to 'production'."
            )
            env = "production"
        return env

    def _find_config_file(self) -> Optional[Path]:
        """Find the configuration file.

        Searches in order:
        1. hostmesh.toml in current working directory
        2. ~/.hostmesh/config.toml

        Returns:
            Path to config file if found, None otherwise.
        """
        cwd_config = Path.cwd() / "hostmesh.toml"
        if cwd_config.exists():
            logger.info(f"Loading config from {cwd_config}")
            return cwd_config

        home_config = Path.home() / ".hostmesh" / "config.toml"
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

        self._apply_section(self._config_data)

        environments = self._config_data.get("environments", {})
        env_config = environments.get(self.environment, {})
        if not env_config:
            logger.debug(
                f"No configuration found for environment '{self.environment}' "
                f"in {config_file}, using defaults"
            )
            return
        self._apply_section(env_config)

    def _apply_section(self, section: dict) -> None:
        """Apply endpoint, timing and ICE settings from one TOML table."""
        for key in ("signaling_websocket", "relay_url", "kv_url", "kv_dir", "origin"):
            if key in section:
                setattr(self, key, section[key])
                logger.debug(f"Loaded {key} from config: {section[key]}")

        if "timing" in section:
            try:
                self.tuning = ConnectionTuning.from_dict(section["timing"])
            except (TypeError, ValueError) as e:
                logger.warning(f"Invalid [timing] section: {e}. Using defaults.")

        if "ice_servers" in section:
            servers = []
            for entry in section["ice_servers"]:
                try:
                    servers.append(IceServerConfig(**entry))
                except (TypeError, ValueError) as e:
                    logger.warning(f"Skipping invalid ICE server entry {entry}: {e}")
            self.ice_servers = servers

    def _apply_env_overrides(self) -> None:
        """Apply environment variable overrides.

        Environment variables take precedence over config file settings
        but are overridden by CLI arguments (handled by caller).
        """
        overrides = {
            "HOSTMESH_SIGNALING_WS": "signaling_websocket",
            "HOSTMESH_RELAY_URL": "relay_url",
            "HOSTMESH_KV_URL": "kv_url",
            "HOSTMESH_KV_DIR": "kv_dir",
            "HOSTMESH_ORIGIN": "origin",
        }
        for env_name, attr in overrides.items():
            value = os.getenv(env_name)
            if value:
                setattr(self, attr, value)
                logger.info(f"Overriding {attr} from env: {value}")

    def get_rtc_configuration(self) -> RTCConfiguration:
        """Build the aiortc configuration for new peer connections."""
        return RTCConfiguration(iceServers=[s.to_rtc() for s in self.ice_servers])


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
