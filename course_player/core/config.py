from functools import lru_cache

from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    app_name: str = "course-player-engine"
    app_env: str = "development"
    app_port: int = 10724
    log_level: str = "INFO"

    # LMS backend (catalog, progress store, xAPI sink, grading)
    backend_base_url: str = "http://localhost:10723/v1"
    backend_timeout_seconds: float = 10.0

    # Playback cadences
    heartbeat_interval_seconds: float = 10.0
    sync_interval_seconds: float = 15.0

    # Completion rules
    completion_threshold: float = 95.0
    quiz_unlock_threshold: float = 95.0
    pdf_visibility_threshold: float = 0.7
    seek_tolerance_fraction: float = 0.01

    # Sync / retry
    sync_warning_threshold: int = 3
    permanent_failure_retries: int = 1
    sync_batch_size: int = 100

    outbox_database_url: str = "sqlite:///./player_outbox.db"
    outbox_auto_create: bool = True

    model_config = SettingsConfigDict(env_file=".env", env_file_encoding="utf-8", extra="ignore")


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    return Settings()
