"""Startup helpers for the Lumiere relay."""

from __future__ import annotations

import logging
from pathlib import Path

from dotenv import load_dotenv

from config import AppConfig
from logger import mask_secret

log = logging.getLogger("lumiere")


def load_env_files() -> None:
    """Load .env files from program and current directory."""
    this_dir = Path(__file__).resolve().parent
    p1 = this_dir / ".env"
    p2 = Path.cwd() / ".env"

    loaded_any = False
    if p1.exists():
        loaded_any = load_dotenv(dotenv_path=str(p1), override=False) or loaded_any
        log.info("Loaded .env from %s", str(p1))

    if p2.exists() and p2 != p1:
        loaded_any = load_dotenv(dotenv_path=str(p2), override=False) or loaded_any
        log.info("Loaded .env from %s", str(p2))

    if not loaded_any:
        log.info(".env not loaded (not found or no variables applied).")


def dump_config(config: AppConfig) -> None:
    """Log effective configuration at startup."""
    log.info("=== Lumiere relay startup config ===")
    log.info("GROQ_BASE_URL=%s", config.groq_base_url)
    log.info(
        "GROQ_API_KEY_set=%s value=%s len=%s",
        bool(config.groq_api_key),
        mask_secret(config.groq_api_key),
        len(config.groq_api_key or ""),
    )
    log.info("TRANSCRIPTION_MODEL=%s", config.transcription_model)
    log.info(
        "MAX_RETRIES=%s BACKOFF_BASE_S=%s BACKOFF_JITTER_S=%s BACKOFF_CAP_S=%s",
        config.max_retries,
        config.backoff_base_s,
        config.backoff_jitter_s,
        config.backoff_cap_s,
    )
    log.info(
        "CHAT_TIMEOUT_S=%s TRANSCRIBE_TIMEOUT_S=%s MODELS_TIMEOUT_S=%s CONNECT_TIMEOUT_S=%s",
        config.chat_timeout_s,
        config.transcribe_timeout_s,
        config.models_timeout_s,
        config.connect_timeout_s,
    )
    log.info("CHAT_RATE_LIMIT=%s/%ss", config.chat_rate_limit, config.chat_rate_window_s)
    log.info("TRANSCRIBE_RATE_LIMIT=%s/%ss", config.transcribe_rate_limit, config.transcribe_rate_window_s)
    log.info("GLOBAL_RATE_LIMIT=%s/%ss", config.global_rate_limit, config.global_rate_window_s)
    log.info("RATE_LIMIT_SWEEP_S=%s", config.rate_limit_sweep_s)
    log.info("CORS_ORIGINS=%s", list(config.cors_origins))
    log.info("MAX_REQUEST_BYTES=%s", config.max_request_bytes)
    log.info("LOG_LEVEL=%s LOG_COLOR=%s", config.log_level, config.log_color)
    log.info("LOG_PATH=%s", config.log_path)
    log.info("USER_AGENT=%s", config.user_agent)
    log.info("WorkingDir=%s", str(Path.cwd()))
    log.info("===============================")
