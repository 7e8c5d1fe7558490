"""
config/settings.py — AIRAssist Runtime Settings

Merges config.yaml (defaults/structure) with .env and environment variables.
Pydantic-powered — all fields are validated and typed.

  - ServerConfig rejects URLs that are not ws:// or wss://
  - AudioConfig bounds sensitivity/volume to 0-100 and thresholds to 0-1
  - validate_all() performs cross-field startup validation and raises
    ConfigError with a numbered list of every problem found
  - load_settings() respects AIRASSIST_CONFIG as a fallback when no explicit
    config_path argument is given
  - Settings.with_overrides() layers the user's persisted overrides (the
    `settings` record in the key-value store) on top of the file config
"""

from __future__ import annotations

import os
import threading as _threading
from pathlib import Path
from typing import Any, Optional

import yaml
from pydantic import BaseModel, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


# ─────────────────────────────────────────────────────────────────────────────
# Errors
# ─────────────────────────────────────────────────────────────────────────────

class ConfigError(Exception):
    """Raised by validate_all() when one or more config problems are found."""


# ─────────────────────────────────────────────────────────────────────────────
# Helpers
# ─────────────────────────────────────────────────────────────────────────────

_VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
_VALID_WS_SCHEMES = ("ws://", "wss://")

_KNOWN_SECTIONS = {
    "server", "user", "audio", "behavior", "session",
    "device", "storage", "conversation", "whisper", "logging",
}


def _deep_merge(base: dict, overrides: dict) -> dict:
    """Return a copy of base with overrides applied recursively."""
    merged = dict(base)
    for key, value in overrides.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


# ─────────────────────────────────────────────────────────────────────────────
# Sub-models
# ─────────────────────────────────────────────────────────────────────────────

class ServerConfig(BaseModel):
    url: str = "wss://airassist-server.example.com/ws"
    connect_timeout_s: float = 10.0

    @field_validator("url")
    @classmethod
    def _ws_scheme(cls, v: str) -> str:
        v = v.strip()
        if not v.startswith(_VALID_WS_SCHEMES):
            raise ValueError(
                f"server.url must start with ws:// or wss://, got '{v}'"
            )
        return v


class UserConfig(BaseModel):
    # Empty means "generate one on first run and persist it"
    user_id: str = ""
    user_name: str = "User"


class AudioConfig(BaseModel):
    voice: str = "default"
    mic_sensitivity: int = 75
    # Normalized RMS (0-1) below which a frame counts as silence
    silence_threshold: float = 0.02
    silence_duration_s: float = 2.0
    speaker_volume: int = 80
    sample_rate: int = 16000
    channels: int = 1
    frame_ms: int = 30
    mic_device_index: Optional[int] = None
    output_device_index: Optional[int] = None

    @field_validator("mic_sensitivity", "speaker_volume")
    @classmethod
    def _percent(cls, v: int) -> int:
        if not (0 <= v <= 100):
            raise ValueError("audio sensitivity/volume must be between 0 and 100")
        return v

    @field_validator("silence_threshold")
    @classmethod
    def _unit_interval(cls, v: float) -> float:
        if not (0.0 <= v <= 1.0):
            raise ValueError("audio.silence_threshold must be between 0.0 and 1.0")
        return v

    @field_validator("silence_duration_s")
    @classmethod
    def _positive_silence(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("audio.silence_duration_s must be > 0")
        return v

    @field_validator("sample_rate")
    @classmethod
    def _known_rate(cls, v: int) -> int:
        if v not in (8000, 16000, 22050, 24000, 32000, 44100, 48000):
            raise ValueError(f"audio.sample_rate {v} is not a supported rate")
        return v

    @field_validator("channels")
    @classmethod
    def _mono_or_stereo(cls, v: int) -> int:
        if v not in (1, 2):
            raise ValueError("audio.channels must be 1 or 2")
        return v

    @property
    def frame_size(self) -> int:
        """Number of samples per captured frame."""
        return int(self.sample_rate * self.frame_ms / 1000)

    @property
    def effective_silence_threshold(self) -> float:
        """
        Silence threshold scaled by mic sensitivity.

        At 50 the configured threshold is used as-is; higher sensitivity
        lowers the threshold so quieter speech still counts as activity.
        """
        scale = 1.5 - (self.mic_sensitivity / 100.0)
        return max(0.0, min(1.0, self.silence_threshold * scale))


class BehaviorConfig(BaseModel):
    auto_listen: bool = True
    auto_connect: bool = True
    save_history: bool = True
    read_responses: bool = True
    auto_listen_delay_s: float = 1.0
    use_recognizer: bool = True


class SessionConfig(BaseModel):
    ping_interval_s: float = 30.0
    liveness_timeout_s: float = 60.0
    reconnect_delay_s: float = 5.0

    @field_validator("ping_interval_s", "liveness_timeout_s", "reconnect_delay_s")
    @classmethod
    def _positive(cls, v: float) -> float:
        if v <= 0:
            raise ValueError("session intervals must be > 0")
        return v


class DeviceConfig(BaseModel):
    scan_timeout_s: float = 10.0
    history_size: int = 10
    adapter: str = "bluetoothctl"

    @field_validator("history_size")
    @classmethod
    def _positive_history(cls, v: int) -> int:
        if v < 1:
            raise ValueError("device.history_size must be >= 1")
        return v


class StorageConfig(BaseModel):
    sqlite_path: str = "./data/airassist.db"


class ConversationConfig(BaseModel):
    history_limit: int = 100

    @field_validator("history_limit")
    @classmethod
    def _positive_limit(cls, v: int) -> int:
        if v < 1:
            raise ValueError("conversation.history_limit must be >= 1")
        return v


class WhisperConfig(BaseModel):
    model: str = "base.en"
    device: str = "cpu"
    compute_type: str = "int8"
    language: str = "en"


class LoggingConfig(BaseModel):
    level: str = "INFO"
    log_dir: str = "./data/logs"
    max_file_size_mb: int = 10
    backup_count: int = 5
    console_output: bool = False
    json_format: bool = True

    @field_validator("level")
    @classmethod
    def _valid_log_level(cls, v: str) -> str:
        upper = v.upper()
        if upper not in _VALID_LOG_LEVELS:
            raise ValueError(
                f"logging.level '{v}' is not valid. "
                f"Must be one of: {sorted(_VALID_LOG_LEVELS)}"
            )
        return upper


# ─────────────────────────────────────────────────────────────────────────────
# Root Settings
# ─────────────────────────────────────────────────────────────────────────────

class Settings(BaseSettings):
    """
    AIRAssist runtime settings.

    Priority (highest to lowest):
      1. Persisted user overrides (applied via with_overrides)
      2. config.yaml
      3. Environment variables (AIRASSIST_SERVER__URL, ...)
      4. .env file
      5. Field defaults

    Sections are deep-merged, so an env var still fills a field the
    YAML file leaves out.
    """

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        env_prefix="AIRASSIST_",
        env_nested_delimiter="__",
        extra="ignore",
        case_sensitive=False,
    )

    server: ServerConfig = Field(default_factory=ServerConfig)
    user: UserConfig = Field(default_factory=UserConfig)
    audio: AudioConfig = Field(default_factory=AudioConfig)
    behavior: BehaviorConfig = Field(default_factory=BehaviorConfig)
    session: SessionConfig = Field(default_factory=SessionConfig)
    device: DeviceConfig = Field(default_factory=DeviceConfig)
    storage: StorageConfig = Field(default_factory=StorageConfig)
    conversation: ConversationConfig = Field(default_factory=ConversationConfig)
    whisper: WhisperConfig = Field(default_factory=WhisperConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    @field_validator("server", mode="before")
    @classmethod
    def _coerce_server(cls, v: Any) -> Any:
        return ServerConfig(**v) if isinstance(v, dict) else v

    @field_validator("audio", mode="before")
    @classmethod
    def _coerce_audio(cls, v: Any) -> Any:
        return AudioConfig(**v) if isinstance(v, dict) else v

    @field_validator("behavior", mode="before")
    @classmethod
    def _coerce_behavior(cls, v: Any) -> Any:
        return BehaviorConfig(**v) if isinstance(v, dict) else v

    @field_validator("session", mode="before")
    @classmethod
    def _coerce_session(cls, v: Any) -> Any:
        return SessionConfig(**v) if isinstance(v, dict) else v

    @field_validator("logging", mode="before")
    @classmethod
    def _coerce_logging(cls, v: Any) -> Any:
        return LoggingConfig(**v) if isinstance(v, dict) else v

    # -- Convenience properties ----------------------------------------------

    @property
    def log_level(self) -> str:
        return self.logging.level.upper()

    @property
    def log_dir(self) -> Path:
        return Path(self.logging.log_dir)

    @property
    def log_json_format(self) -> bool:
        return self.logging.json_format

    @property
    def log_console_output(self) -> bool:
        return self.logging.console_output

    # -- Overrides -----------------------------------------------------------

    def with_overrides(self, overrides: Optional[dict]) -> "Settings":
        """
        Return a new Settings with the user's persisted overrides applied.

        Overrides are nested dicts keyed by section, e.g.
        {"audio": {"voice": "nova"}, "behavior": {"auto_listen": False}}.
        Unknown sections are ignored. The result is fully re-validated.
        """
        if not overrides:
            return self
        known = {k: v for k, v in overrides.items() if k in _KNOWN_SECTIONS}
        merged = _deep_merge(self.model_dump(), known)
        return Settings(**merged)

    def validate_all(self) -> None:
        """
        Full startup validation. Raises ConfigError listing every problem found.

        Pydantic validators catch type/value errors at parse time; this
        method catches cross-field problems they cannot see.
        """
        errors: list[str] = []

        # ── Liveness must outlast at least one ping interval ────────────────
        if self.session.liveness_timeout_s <= self.session.ping_interval_s:
            errors.append(
                f"session.liveness_timeout_s ({self.session.liveness_timeout_s}) "
                f"must be greater than session.ping_interval_s "
                f"({self.session.ping_interval_s}), otherwise every connection "
                f"is declared dead before the first pong can arrive."
            )

        # ── Frame must be shorter than the silence window ───────────────────
        if self.audio.frame_ms / 1000.0 >= self.audio.silence_duration_s:
            errors.append(
                "audio.frame_ms must be shorter than audio.silence_duration_s."
            )

        # ── Storage directory must be creatable ─────────────────────────────
        db_parent = Path(self.storage.sqlite_path).expanduser().parent
        if db_parent.exists() and not db_parent.is_dir():
            errors.append(
                f"storage.sqlite_path parent '{db_parent}' exists and is not a directory."
            )

        if not self.user.user_name.strip():
            errors.append("user.user_name must not be empty.")

        if errors:
            numbered = "\n".join(f"  {i+1}. {e}" for i, e in enumerate(errors))
            raise ConfigError(
                f"\n\nAIRAssist startup failed — {len(errors)} configuration "
                f"problem(s) found:\n\n{numbered}\n\n"
                f"Fix the issues above in config/config.yaml or your .env file "
                f"and restart.\n"
            )


# ─────────────────────────────────────────────────────────────────────────────
# Loader + singleton
# ─────────────────────────────────────────────────────────────────────────────

_singleton: Optional[Settings] = None
_singleton_lock = _threading.Lock()


def _load_yaml(path: Path) -> dict:
    if not path.exists():
        return {}
    with path.open("r", encoding="utf-8") as f:
        return yaml.safe_load(f) or {}


def _resolve_config_path(config_path: str | Path | None) -> Path:
    """
    Resolve the config file path with this priority:
      1. Explicit config_path argument (from --config CLI flag)
      2. AIRASSIST_CONFIG environment variable
      3. Default: config/config.yaml
    """
    if config_path is not None:
        return Path(config_path)
    env_path = os.environ.get("AIRASSIST_CONFIG")
    if env_path:
        return Path(env_path)
    return Path("config/config.yaml")


def load_settings(config_path: str | Path | None = None) -> Settings:
    """Load settings by merging config.yaml with environment variables."""
    global _singleton

    yaml_data = _load_yaml(_resolve_config_path(config_path))
    init_kwargs = {
        k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS
    }
    instance = Settings(**init_kwargs)

    with _singleton_lock:
        _singleton = instance
    return instance


def get_settings() -> Settings:
    """
    Return the global Settings singleton, loading the default config on
    first use. Guarded by a lock so concurrent first calls load once.
    """
    global _singleton
    if _singleton is not None:
        return _singleton
    with _singleton_lock:
        if _singleton is None:
            yaml_data = _load_yaml(_resolve_config_path(None))
            _singleton = Settings(
                **{k: v for k, v in yaml_data.items() if k in _KNOWN_SECTIONS}
            )
    return _singleton
