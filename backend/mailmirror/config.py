"""Mirror configuration. All sensitive config from .env."""
from pydantic_settings import BaseSettings
from typing import Optional


class Settings(BaseSettings):
    """Mirror settings from environment."""

    # Database - default SQLite for easy local dev; use DATABASE_URL for PostgreSQL
    database_url: str = "sqlite:///./mailmirror.db"

    # SQLAlchemy pooling (Postgres only).
    db_pool_size: int = 5
    db_max_overflow: int = 10
    db_pool_timeout_s: int = 30
    db_pool_recycle_s: int = 1800

    # SQLite concurrency tuning (used when DATABASE_URL starts with sqlite://)
    sqlite_busy_timeout_ms: int = 5000

    # Gmail - paths relative to backend/ or set absolute
    credentials_path: str = "credentials.json"
    token_path: str = "token.pickle"
    # Socket timeout for every Gmail HTTP call
    gmail_http_timeout_s: int = 60
    # Retries for metadata calls (profile, labels, list, history) inside the Gmail adapter
    gmail_metadata_max_retries: int = 5

    # CORS
    cors_origins: list[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Redis (for Celery)
    redis_url: str = "redis://localhost:6379/0"
    celery_broker_url: Optional[str] = None  # defaults to redis_url if not set

    # Message listing
    list_page_size: int = 500
    list_max_pages: int = 2000
    history_page_size: int = 500

    # Fetching (bounded concurrency + per-item timeout + retry)
    message_batch_size: int = 50
    fetch_concurrency: int = 10
    fetch_item_timeout_s: float = 30.0
    fetch_max_attempts: int = 3
    fetch_retry_base_delay_s: float = 1.0
    fetch_retry_max_delay_s: float = 30.0
    # Delay before the single bulk retry of failed ids at the end of a fetch phase
    fetch_bulk_retry_delay_s: float = 2.0

    # Failure tracking: cursor is withheld until this many consecutive failed passes
    max_consecutive_sync_failures: int = 3
    # Persisted failed-id list keeps at most this many (trimmed once it doubles)
    max_failed_messages_before_advance: int = 100

    # Local edits younger than this win over server label changes
    max_local_modification_age_s: int = 30 * 60

    # Time windows
    timestamp_buffer_s: int = 300
    recovery_buffer_s: int = 600
    initial_sync_fallback_days: int = 30
    recovery_fallback_days: int = 7
    reconciliation_fallback_s: int = 60 * 60
    max_reconciliation_window_s: int = 24 * 60 * 60

    # Label-state reconciliation
    label_reconcile_window_s: int = 2 * 60 * 60
    label_reconcile_limit: int = 30
    label_reconcile_recent_edit_s: int = 5 * 60

    # Store commit retry (sqlite "database is locked")
    store_commit_max_retries: int = 2  # full pass re-runs after a failed commit
    store_commit_retry_base_delay_s: float = 0.5

    class Config:
        env_file = ".env"
        extra = "ignore"

    @property
    def celery_broker(self) -> str:
        return self.celery_broker_url or self.redis_url


settings = Settings()
