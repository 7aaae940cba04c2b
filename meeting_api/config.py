from __future__ import annotations

import os
from dataclasses import dataclass, field
from functools import lru_cache


def _env_bool(name: str, default: bool = False) -> bool:
    raw = os.getenv(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.getenv(name)
    if raw is None:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


ALLOWED_AUDIO_TYPES = (
    "audio/mpeg",
    "audio/mp3",
    "audio/wav",
    "audio/webm",
    "audio/ogg",
    "audio/mp4",
)


@dataclass
class Settings:
    project_name: str = field(default_factory=lambda: os.getenv("CLOUD_PROJECT_NAME", "meeting-api"))
    env: str = field(default_factory=lambda: os.getenv("APP_ENV", "development"))
    frontend_origin: str = field(default_factory=lambda: os.getenv("FRONTEND_URL", "http://localhost:5173"))
    database_url: str = field(default_factory=lambda: os.getenv("DATABASE_URL", "sqlite:///./meetings.db"))
    sqlite_dir: str = field(default_factory=lambda: os.getenv("SQLITE_DIR", "./data"))

    # identity provider + object store (Supabase)
    supabase_url: str = field(default_factory=lambda: os.getenv("SUPABASE_URL", "").rstrip("/"))
    supabase_service_key: str = field(default_factory=lambda: os.getenv("SUPABASE_SERVICE_KEY", ""))
    supabase_jwt_secret: str = field(default_factory=lambda: os.getenv("SUPABASE_JWT_SECRET", ""))
    supabase_jwt_audience: str = field(default_factory=lambda: os.getenv("SUPABASE_JWT_AUDIENCE", "authenticated"))
    storage_bucket: str = field(default_factory=lambda: os.getenv("STORAGE_BUCKET", "meeting-records"))
    max_upload_bytes: int = field(default_factory=lambda: _env_int("MAX_UPLOAD_BYTES", 100 * 1024 * 1024))
    signed_url_ttl: int = field(default_factory=lambda: _env_int("SIGNED_URL_TTL", 3600))
    http_timeout_sec: float = field(default_factory=lambda: _env_float("HTTP_TIMEOUT_SEC", 30.0))

    # AI providers, selected by key presence
    openai_api_key: str = field(default_factory=lambda: os.getenv("OPENAI_API_KEY", "").strip())
    openai_chat_model: str = field(default_factory=lambda: os.getenv("OPENAI_CHAT_MODEL", "gpt-3.5-turbo"))
    openai_transcribe_model: str = field(default_factory=lambda: os.getenv("OPENAI_TRANSCRIBE_MODEL", "whisper-1"))
    google_ai_api_key: str = field(default_factory=lambda: os.getenv("GOOGLE_AI_API_KEY", "").strip())
    gemini_model: str = field(default_factory=lambda: os.getenv("GEMINI_MODEL", "gemini-1.5-flash"))
    gemini_base_url: str = field(
        default_factory=lambda: os.getenv("GEMINI_BASE_URL", "https://generativelanguage.googleapis.com/v1beta")
    )
    ai_timeout_sec: float = field(default_factory=lambda: _env_float("AI_TIMEOUT_SEC", 180.0))
    transcription_language: str = field(default_factory=lambda: os.getenv("TRANSCRIPTION_LANGUAGE", "en"))
    mock_transcription: bool = field(default_factory=lambda: _env_bool("MOCK_TRANSCRIPTION", True))

    # queue + worker
    queue_attempts: int = field(default_factory=lambda: _env_int("QUEUE_ATTEMPTS", 3))
    queue_backoff_ms: int = field(default_factory=lambda: _env_int("QUEUE_BACKOFF_MS", 2000))
    queue_stall_timeout_sec: float = field(default_factory=lambda: _env_float("QUEUE_STALL_TIMEOUT_SEC", 900.0))
    worker_concurrency: int = field(default_factory=lambda: _env_int("WORKER_CONCURRENCY", 2))
    queue_poll_interval: float = field(default_factory=lambda: _env_float("QUEUE_POLL_INTERVAL", 1.0))
    worker_enabled: bool = field(default_factory=lambda: _env_bool("WORKER_ENABLED", True))

    log_dir: str = field(default_factory=lambda: os.getenv("LOG_DIR", "data/logs"))
    log_level: str = field(default_factory=lambda: os.getenv("LOG_LEVEL", "INFO").upper())
    strict_boot: bool = field(default_factory=lambda: _env_bool("STRICT_BOOT", False))

    @property
    def storage_configured(self) -> bool:
        return bool(self.supabase_url and self.supabase_service_key)


@lru_cache()
def get_settings() -> Settings:
    return Settings()


settings = get_settings()
