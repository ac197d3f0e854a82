# /docchat/config.py
"""
Centralized configuration for the document chat service.
Includes upload paths, token ceilings, rate-limit windows, and provider settings.
"""
import os
from dataclasses import dataclass
from pathlib import Path
from dotenv import load_dotenv

from .observability import configure_logging

# ==============================================================================
# ENVIRONMENT
# ==============================================================================
load_dotenv()


def _env_int(name: str, default: int, minimum: int = 1) -> int:
    raw = os.getenv(name)
    if raw is None:
        return int(default)
    try:
        value = int(raw)
    except ValueError:
        return int(default)
    return max(minimum, value)


def _env_float(name: str, default: float, minimum: float = 0.0) -> float:
    raw = os.getenv(name)
    if raw is None:
        return float(default)
    try:
        value = float(raw)
    except ValueError:
        return float(default)
    return max(float(minimum), value)


# ==============================================================================
# GLOBAL CONFIGURATION
# ==============================================================================
# --- Path Configuration ---
UPLOAD_DIR = Path(os.getenv("UPLOAD_DIR", "./uploads"))
LOG_PATH = Path(os.getenv("LOG_PATH", "./logs/app.log"))
METRICS_DIR = Path(os.getenv("METRICS_DIR", "./logs"))

# --- Upload Limits ---
MAX_UPLOAD_BYTES = _env_int("MAX_UPLOAD_BYTES", 10 * 1024 * 1024)
MAX_FILES_PER_UPLOAD = _env_int("MAX_FILES_PER_UPLOAD", 10)

# --- Token Budget ---
MAX_TOKENS_PER_REQUEST = _env_int("MAX_TOKENS_PER_REQUEST", 4000)
DEFAULT_MAX_COMPLETION_TOKENS = 1000
DEFAULT_TEMPERATURE = 0.7

# --- Rate Limiting ---
RATE_LIMIT_REQUESTS = _env_int("RATE_LIMIT_REQUESTS", 100)
RATE_LIMIT_WINDOW_MS = _env_int("RATE_LIMIT_WINDOW_MS", 900_000)

# --- LLM Provider ---
OPENAI_MODEL_NAME = os.getenv("OPENAI_MODEL_NAME", "gpt-3.5-turbo")
LLM_MAX_RETRIES = _env_int("LLM_MAX_RETRIES", 3)
LLM_RETRY_DELAY_MS = _env_int("LLM_RETRY_DELAY_MS", 1000, minimum=0)
LLM_REQUEST_TIMEOUT_S = _env_float("LLM_REQUEST_TIMEOUT_S", 60.0, minimum=1.0)


@dataclass(frozen=True)
class Settings:
    """Snapshot of the runtime configuration handed to the app factory."""

    upload_dir: Path = UPLOAD_DIR
    metrics_dir: Path = METRICS_DIR
    max_upload_bytes: int = MAX_UPLOAD_BYTES
    max_files_per_upload: int = MAX_FILES_PER_UPLOAD
    max_tokens_per_request: int = MAX_TOKENS_PER_REQUEST
    rate_limit_requests: int = RATE_LIMIT_REQUESTS
    rate_limit_window_ms: int = RATE_LIMIT_WINDOW_MS
    openai_api_key: str | None = None
    openai_model_name: str = OPENAI_MODEL_NAME
    llm_max_retries: int = LLM_MAX_RETRIES
    llm_retry_delay_ms: int = LLM_RETRY_DELAY_MS
    llm_request_timeout_s: float = LLM_REQUEST_TIMEOUT_S


def load_settings() -> Settings:
    """Current settings, with OPENAI_API_KEY read at call time."""
    return Settings(openai_api_key=os.getenv("OPENAI_API_KEY") or None)


# --- Create necessary directories ---
UPLOAD_DIR.mkdir(parents=True, exist_ok=True)
LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
configure_logging(LOG_PATH)
