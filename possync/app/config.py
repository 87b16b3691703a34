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


def _env_float(name: str, default: float) -> float:
    raw = (os.getenv(name) or "").strip()
    if not raw:
        return default
    try:
        return float(raw)
    except Exception:
        return default


def _truthy(raw: str) -> bool:
    return str(raw or "").strip().lower() in {"1", "true", "yes", "on"}


class Settings:
    def _split_csv(self, raw: str, *, default: List[str]) -> List[str]:
        parts = [p.strip() for p in (raw or "").split(",")]
        return [p for p in parts if p] or default

    def __init__(self) -> None:
        self.env = os.getenv("APP_ENV", "local")
        self.api_version = os.getenv("APP_VERSION", "0.1.0").strip() or "0.1.0"
        self.db_url = os.getenv("DATABASE_URL", "postgresql://localhost/possync")
        # Comma-separated list of allowed CORS origins for the hosting API.
        self.cors_origins = self._split_csv(
            os.getenv("CORS_ORIGINS", "").strip(),
            default=["http://localhost:3000", "http://127.0.0.1:3000"],
        )

        # Device-side sync.
        self.sync_strategy = (os.getenv("SYNC_STRATEGY") or "bidirectional").strip().lower()
        self.owner_key = (os.getenv("SYNC_OWNER_KEY") or "").strip()
        self.tenant_id = (os.getenv("SYNC_TENANT_ID") or "").strip() or self.owner_key
        self.push_url = (os.getenv("SYNC_PUSH_URL") or "").strip()
        self.pull_base_url = (os.getenv("SYNC_PULL_BASE_URL") or "").strip().rstrip("/")
        self.table_db_url = (os.getenv("SYNC_TABLE_DATABASE_URL") or "").strip()
        self.http_timeout = _env_float("SYNC_HTTP_TIMEOUT_SECONDS", 20.0)
        self.debounce_seconds = _env_float("SYNC_DEBOUNCE_SECONDS", 2.0)
        self.min_push_interval = _env_float("SYNC_MIN_PUSH_INTERVAL_SECONDS", 10.0)
        self.pull_interval = _env_float("SYNC_PULL_INTERVAL_SECONDS", 300.0)
        self.check_interval = _env_float("SYNC_CHECK_INTERVAL_SECONDS", 30.0)
        self.state_path = (os.getenv("SYNC_STATE_PATH") or "").strip() or os.path.abspath("sync_state.json")

        # Integrity auditor.
        self.audit_cooldown = _env_int("AUDIT_COOLDOWN_SECONDS", 4 * 60 * 60)
        self.audit_total_tolerance = _env_float("AUDIT_TOTAL_TOLERANCE", 10.0)
        self.audit_stock_floor = _env_float("AUDIT_STOCK_FLOOR", -5.0)

        # Hosting-side receiver.
        self.backups_dir = (os.getenv("BACKUPS_DIR") or "").strip() or os.path.abspath("backups")
        self.backup_api_key = (os.getenv("BACKUP_API_KEY") or "").strip()
        self.public_base_url = (os.getenv("BACKUP_PUBLIC_BASE_URL") or "").strip().rstrip("/")
        self.expose_errors = self.env in {"local", "dev"} or _truthy(os.getenv("EXPOSE_ERRORS", ""))


settings = Settings()
