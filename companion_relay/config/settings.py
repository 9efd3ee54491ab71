# companion_relay/config/settings.py

from dataclasses import dataclass, field
import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv

# Expose BASE_DIR for other modules
BASE_DIR = Path(__file__).resolve().parents[2]
ENV_PATH = BASE_DIR / ".env"
load_dotenv(dotenv_path=ENV_PATH)

CONFIG_DIR = Path(__file__).resolve().parent
COMPANION_PROMPT_PATH = CONFIG_DIR / "companion_system_prompt.txt"
COACH_PROMPT_PATH = CONFIG_DIR / "coach_system_prompt.txt"

DEFAULT_DB_PATH = BASE_DIR / "companion_relay" / "data" / "relay.db"
DEFAULT_LOG_DIR = BASE_DIR / "companion_relay" / "logs"


@dataclass
class LogSettings:
    log_dir: str = str(DEFAULT_LOG_DIR)
    # empty disables the file handler (console only)
    file_name: str = "relay.log"
    level: str = "INFO"

    def log_path(self) -> Optional[Path]:
        if not self.file_name:
            return None
        return Path(self.log_dir) / self.file_name


@dataclass
class Settings:
    # Response generator (any OpenAI-compatible endpoint)
    openai_api_key: str = ""
    openai_base_url: str = "https://api.openai.com"
    openai_model: str = "gpt-4.1-mini"

    # "conversations": upstream keeps context (continuation token = upstream conversation id)
    # "chat": stateless chat completions fed with the trailing history window
    generator_api: str = "conversations"

    # Model used by the feedback coach; empty means "same as openai_model"
    coach_model: str = ""

    # Upstream call bounds
    generator_timeout_seconds: float = 30.0
    generator_max_attempts: int = 2

    # Conversation store
    db_path: str = str(DEFAULT_DB_PATH)

    # Relay tuning
    history_window: int = 20
    send_timeout_seconds: float = 10.0

    # Feedback score scale (inclusive)
    score_min: int = 1
    score_max: int = 10

    cors_origin: str = "*"

    log: LogSettings = field(default_factory=LogSettings)


def _parse_float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
        # safeguard: enforce positive
        return value if value > 0 else default
    except ValueError:
        return default


def _parse_int_env(name: str, default: int, min_val: int = 0, max_val: int = 10) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
        # safeguard: clamp into sane range
        return max(min_val, min(max_val, value))
    except ValueError:
        return default


def load_log_settings() -> LogSettings:
    """
    Logging configuration from RELAY_LOG_DIR, RELAY_LOG_FILE and
    RELAY_LOG_LEVEL. Read separately from load_settings() because loggers
    are created at import time, before the app builds its Settings.
    """
    log_dir = os.getenv("RELAY_LOG_DIR", "").strip() or str(DEFAULT_LOG_DIR)
    # RELAY_LOG_FILE="" means console only; unset means the default file
    file_name = os.getenv("RELAY_LOG_FILE", "relay.log").strip()
    level = os.getenv("RELAY_LOG_LEVEL", "INFO").strip().upper() or "INFO"
    return LogSettings(log_dir=log_dir, file_name=file_name, level=level)


def load_settings() -> Settings:
    """
    Load configuration from environment variables (and defaults).

    OPENAI_API_KEY is optional here: without it the relay still runs and
    every companion reply becomes the fallback apology. Ensures the DB
    directory exists.
    """
    api_key = os.getenv("OPENAI_API_KEY", "").strip()

    base_url = (
        os.getenv("OPENAI_BASE_URL", "").strip()
        or os.getenv("OPENAI_API_BASE", "").strip()
        or "https://api.openai.com"
    )

    openai_model = os.getenv("OPENAI_MODEL", "gpt-4.1-mini").strip() or "gpt-4.1-mini"
    coach_model = os.getenv("COACH_MODEL", "").strip()

    generator_api = os.getenv("GENERATOR_API", "conversations").strip().lower() or "conversations"
    if generator_api not in {"conversations", "chat"}:
        # Safeguard: fall back to the default API if an unknown one is configured
        generator_api = "conversations"

    # --- DB path (optional override) ---
    db_path_env = os.getenv("RELAY_DB_PATH", str(DEFAULT_DB_PATH)).strip() or str(DEFAULT_DB_PATH)
    db_path = Path(db_path_env)

    # Ensure data directory exists for DB
    db_path.parent.mkdir(parents=True, exist_ok=True)

    timeout_seconds = _parse_float_env("GENERATOR_TIMEOUT_SECONDS", 30.0)
    max_attempts = _parse_int_env("GENERATOR_MAX_ATTEMPTS", 2, min_val=1, max_val=5)
    history_window = _parse_int_env("RELAY_HISTORY_WINDOW", 20, min_val=0, max_val=200)
    send_timeout = _parse_float_env("RELAY_SEND_TIMEOUT_SECONDS", 10.0)

    score_min = _parse_int_env("SCORE_MIN", 1, min_val=0, max_val=100)
    score_max = _parse_int_env("SCORE_MAX", 10, min_val=1, max_val=100)
    if score_max <= score_min:
        # safeguard: an empty scale would make every score meaningless
        score_min, score_max = 1, 10

    cors_origin = os.getenv("CORS_ORIGIN", "*").strip() or "*"

    return Settings(
        openai_api_key=api_key,
        openai_base_url=base_url,
        openai_model=openai_model,
        generator_api=generator_api,
        coach_model=coach_model,
        generator_timeout_seconds=timeout_seconds,
        generator_max_attempts=max_attempts,
        db_path=str(db_path),
        history_window=history_window,
        send_timeout_seconds=send_timeout,
        score_min=score_min,
        score_max=score_max,
        cors_origin=cors_origin,
        log=load_log_settings(),
    )
