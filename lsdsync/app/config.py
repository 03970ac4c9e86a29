import os
from typing import List


def _env_int(name: str, default: int) -> int:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except Exception:
        return default


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv('APP_ENV', 'local')
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        # On-device cache. One file per terminal; the queue and sync metadata live here too.
        self.local_db_path = os.getenv("LSD_LOCAL_DB_PATH", "").strip() or os.path.join(os.getcwd(), "lsd_local.sqlite")
        # Hosted Postgres behind the BaaS (direct connection string, not the REST URL).
        self.remote_db_url = os.getenv("LSD_REMOTE_DATABASE_URL", "").strip()
        self.remote_pool_min = _env_int("LSD_REMOTE_POOL_MIN_SIZE", 1)
        self.remote_pool_max = _env_int("LSD_REMOTE_POOL_MAX_SIZE", 4)
        self.remote_page_size = _env_int("LSD_REMOTE_PAGE_SIZE", 1000)

        self.auto_sync_interval_seconds = _env_int("LSD_AUTO_SYNC_INTERVAL_SECONDS", 300)
        self.needs_sync_minutes = _env_int("LSD_NEEDS_SYNC_MINUTES", 10)
        self.queue_max_retries = _env_int("LSD_QUEUE_MAX_RETRIES", 3)
        self.processed_retention_days = _env_int("LSD_PROCESSED_RETENTION_DAYS", 7)
        self.connectivity_probe_seconds = _env_int("LSD_CONNECTIVITY_PROBE_SECONDS", 30)

        # Comma-separated list of allowed CORS origins for the local UI.
        # Default keeps local dev working out of the box.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:5173", "http://127.0.0.1:5173"],
        )

settings = Settings()
