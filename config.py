"""Configuration management for the Lumiere relay."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Tuple

GROQ_BASE_URL = "https://api.groq.com/openai/v1"
TRANSCRIPTION_MODEL = "whisper-large-v3-turbo"
DEFAULT_CORS_ORIGINS = ("http://localhost:5173", "http://localhost:4173")


class ConfigurationError(ValueError):
    """Raised when the process cannot serve with the given environment."""


def _env_float(name: str, default: float) -> float:
    """Get float environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return float(v)
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    """Get integer environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    try:
        return int(v.strip())
    except ValueError:
        return default


def _env_bool(name: str, default: bool) -> bool:
    """Get boolean environment variable with fallback."""
    v = os.getenv(name)
    if v is None or v == "":
        return default
    return v.strip().lower() in ("1", "true", "yes", "on")


def _env_str(name: str, default: str) -> str:
    """Get string environment variable with fallback."""
    v = os.getenv(name)
    if v is None:
        return default
    return v


def _csv_list(name: str) -> Tuple[str, ...]:
    """Parse comma-separated environment variable into an ordered tuple."""
    v = os.getenv(name, "")
    return tuple(x.strip() for x in v.split(",") if x.strip())


@dataclass(frozen=True)
class AppConfig:
    """Application configuration."""

    # Groq settings
    groq_base_url: str
    groq_api_key: str
    transcription_model: str

    # Upstream retry policy
    max_retries: int
    backoff_base_s: float
    backoff_jitter_s: float
    backoff_cap_s: float

    # Timeouts (streaming routes have none)
    connect_timeout_s: float
    chat_timeout_s: float
    transcribe_timeout_s: float
    models_timeout_s: float

    # Fixed-window rate limits per client address
    chat_rate_limit: int
    chat_rate_window_s: float
    transcribe_rate_limit: int
    transcribe_rate_window_s: float
    global_rate_limit: int
    global_rate_window_s: float
    rate_limit_sweep_s: float

    # Server settings
    port: int
    log_level: str
    log_color: bool
    max_request_bytes: int
    log_path: str
    user_agent: str
    cors_origins: Tuple[str, ...]

    @classmethod
    def from_env(cls) -> AppConfig:
        """Load configuration from environment variables."""
        extra_origins = tuple(o for o in _csv_list("ORIGIN") if o not in DEFAULT_CORS_ORIGINS)
        return cls(
            groq_base_url=GROQ_BASE_URL,
            groq_api_key=os.getenv("GROQ_API_KEY", "").strip(),
            transcription_model=TRANSCRIPTION_MODEL,
            max_retries=_env_int("MAX_RETRIES", 5),
            backoff_base_s=_env_float("BACKOFF_BASE_S", 1.0),
            backoff_jitter_s=_env_float("BACKOFF_JITTER_S", 0.5),
            backoff_cap_s=_env_float("BACKOFF_CAP_S", 32.0),
            connect_timeout_s=_env_float("CONNECT_TIMEOUT_S", 30.0),
            chat_timeout_s=_env_float("CHAT_TIMEOUT_S", 120.0),
            transcribe_timeout_s=_env_float("TRANSCRIBE_TIMEOUT_S", 30.0),
            models_timeout_s=_env_float("MODELS_TIMEOUT_S", 10.0),
            chat_rate_limit=_env_int("CHAT_RATE_LIMIT", 20),
            chat_rate_window_s=_env_float("CHAT_RATE_WINDOW_S", 60.0),
            transcribe_rate_limit=_env_int("TRANSCRIBE_RATE_LIMIT", 30),
            transcribe_rate_window_s=_env_float("TRANSCRIBE_RATE_WINDOW_S", 60.0),
            global_rate_limit=_env_int("GLOBAL_RATE_LIMIT", 300),
            global_rate_window_s=_env_float("GLOBAL_RATE_WINDOW_S", 900.0),
            rate_limit_sweep_s=_env_float("RATE_LIMIT_SWEEP_S", 60.0),
            port=_env_int("PORT", 3001),
            log_level=os.getenv("LOG_LEVEL", "INFO").upper().strip(),
            log_color=_env_bool("LOG_COLOR", True),
            max_request_bytes=_env_int("MAX_REQUEST_BYTES", 25 * 1024 * 1024),  # base64 images/audio
            log_path=_env_str("LOG_PATH", "/var/log/lumiere/lumiere.log"),
            user_agent=_env_str("USER_AGENT", "lumiere-relay/1.0.0"),
            cors_origins=DEFAULT_CORS_ORIGINS + extra_origins,
        )

    def validate(self, require_api_key: bool = True) -> None:
        """Validate configuration."""
        if require_api_key and not self.groq_api_key:
            raise ConfigurationError("GROQ_API_KEY is required")
        if self.max_retries < 0:
            raise ConfigurationError("MAX_RETRIES must be >= 0")
        if self.backoff_base_s <= 0:
            raise ConfigurationError("BACKOFF_BASE_S must be > 0")
        if self.backoff_jitter_s < 0:
            raise ConfigurationError("BACKOFF_JITTER_S must be >= 0")
        if self.backoff_cap_s <= 0:
            raise ConfigurationError("BACKOFF_CAP_S must be > 0")
        for name, value in (
            ("CONNECT_TIMEOUT_S", self.connect_timeout_s),
            ("CHAT_TIMEOUT_S", self.chat_timeout_s),
            ("TRANSCRIBE_TIMEOUT_S", self.transcribe_timeout_s),
            ("MODELS_TIMEOUT_S", self.models_timeout_s),
            ("CHAT_RATE_WINDOW_S", self.chat_rate_window_s),
            ("TRANSCRIBE_RATE_WINDOW_S", self.transcribe_rate_window_s),
            ("GLOBAL_RATE_WINDOW_S", self.global_rate_window_s),
            ("RATE_LIMIT_SWEEP_S", self.rate_limit_sweep_s),
        ):
            if value <= 0:
                raise ConfigurationError(f"{name} must be > 0")
        if self.chat_rate_limit <= 0:
            raise ConfigurationError("CHAT_RATE_LIMIT must be > 0")
        if self.transcribe_rate_limit <= 0:
            raise ConfigurationError("TRANSCRIBE_RATE_LIMIT must be > 0")
        if self.global_rate_limit <= 0:
            raise ConfigurationError("GLOBAL_RATE_LIMIT must be > 0")
        if self.max_request_bytes <= 0:
            raise ConfigurationError("MAX_REQUEST_BYTES must be > 0")
        if not self.log_path:
            raise ConfigurationError("LOG_PATH must be non-empty")
        if not self.user_agent:
            raise ConfigurationError("USER_AGENT must be non-empty")


def load_config() -> AppConfig:
    """Load configuration from environment."""
    return AppConfig.from_env()
