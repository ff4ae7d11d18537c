"""
Configuration management for resident-voice
"""

import logging
import sys
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

logger = logging.getLogger(__name__)

APP_NAME = "resident-voice"
DEFAULT_CONFIG_PATH = Path.home() / ".config" / APP_NAME / "config.yml"
DEFAULT_STATE_DIR = Path.home() / ".local" / "state" / APP_NAME
DEFAULT_DATA_DIR = Path.home() / ".local" / "share" / APP_NAME

DEFAULT_PROMPT = (
    "async, await, struct, enum, kubernetes, docker, yaml, json, python, "
    "typescript, git, commit, rebase, postgres, redis, api, endpoint, systemd."
)


class ConfigError(RuntimeError):
    """Raised when the configuration file has invalid contents"""


@dataclass
class ServerConfig:
    """Server configuration"""
    state_dir: str = str(DEFAULT_STATE_DIR)
    socket_path: str = "daemon.sock"
    client_timeout_secs: float = 180.0


@dataclass
class ModelConfig:
    """Model configuration"""
    path: str = "openai/whisper-large-v3-turbo"
    language: str = "en"
    prompt: Optional[str] = DEFAULT_PROMPT


@dataclass
class AudioConfig:
    """Audio configuration"""
    sample_rate: int = 16000
    device: Optional[str] = None
    timeout_secs: int = 30
    trailing_buffer_secs: float = 1.0
    save_audio_clips: bool = False
    audio_clips_path: str = str(DEFAULT_DATA_DIR / "clips")


@dataclass
class OutputConfig:
    """Status-bar integration"""
    refresh_command: Optional[str] = None


@dataclass
class Config:
    """Main configuration container"""
    server: ServerConfig = field(default_factory=ServerConfig)
    model: ModelConfig = field(default_factory=ModelConfig)
    audio: AudioConfig = field(default_factory=AudioConfig)
    output: OutputConfig = field(default_factory=OutputConfig)
    config_path: Optional[Path] = None

    @classmethod
    def load(cls, config_path: Optional[Path] = None) -> "Config":
        """
        Load configuration from YAML file

        Args:
            config_path: Path to config file. If None, uses
                        ~/.config/resident-voice/config.yml when present
                        and built-in defaults otherwise.

        Returns:
            Config object

        Raises:
            SystemExit: If an explicit config file is missing or unreadable
        """
        if config_path is not None:
            resolved_path = config_path
            if not resolved_path.exists():
                logger.error(f"Config file not found: {resolved_path}")
                logger.error("Please copy config.example.yml and customize it.")
                sys.exit(1)
        else:
            resolved_path = DEFAULT_CONFIG_PATH
            if not resolved_path.exists():
                logger.info(f"No config at {resolved_path}, using defaults")
                return cls()

        config_data = _load_yaml(resolved_path)
        logger.info(f"Loaded config from {resolved_path}")

        try:
            return cls.from_dict(config_data, config_path=resolved_path)
        except ConfigError as e:
            logger.error(f"Invalid config file {resolved_path}: {e}")
            sys.exit(1)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], config_path: Optional[Path] = None) -> "Config":
        """Build a Config from parsed YAML, rejecting unknown keys"""
        sections = {
            "server": ServerConfig,
            "audio": AudioConfig,
            "model": ModelConfig,
            "output": OutputConfig,
        }
        if not isinstance(data, dict):
            raise ConfigError("Top level must be a mapping")
        unknown = set(data) - set(sections)
        if unknown:
            raise ConfigError(f"Unknown configuration section(s): {', '.join(sorted(unknown))}")

        built = {}
        for name, section_cls in sections.items():
            values = data.get(name) or {}
            if not isinstance(values, dict):
                raise ConfigError(f"Section '{name}' must be a mapping")
            allowed = {f.name for f in fields(section_cls)}
            bad_keys = set(values) - allowed
            if bad_keys:
                raise ConfigError(f"Unknown key(s) in '{name}': {', '.join(sorted(bad_keys))}")
            built[name] = section_cls(**values)

        return cls(config_path=config_path, **built)

    def get_state_dir(self) -> Path:
        """Get the state directory, creating it if needed"""
        state_dir = Path(self.server.state_dir).expanduser()
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir

    def get_socket_path(self) -> Path:
        """Get the absolute path to the socket file"""
        socket_path = Path(self.server.socket_path).expanduser()
        if socket_path.is_absolute():
            return socket_path
        return self.get_state_dir() / socket_path

    def get_audio_clips_path(self) -> Path:
        """Get the directory where recordings are saved"""
        return Path(self.audio.audio_clips_path).expanduser()


def _load_yaml(path: Path) -> Dict[str, Any]:
    """Load YAML file and return as dict"""
    try:
        with open(path, "r") as f:
            data = yaml.safe_load(f)
            return data if data else {}
    except Exception as e:
        logger.error(f"Error loading config file {path}: {e}")
        sys.exit(1)
