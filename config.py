import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        local_store_url: str,
        timezone: str,
        api_url: str,
        api_token: str,
        http_timeout_secs: float,
        save_debounce_ms: int,
        flush_interval_secs: int,
        conflict_policy: str,
    ) -> None:
        self.database_url = database_url
        self.local_store_url = local_store_url
        self.timezone = timezone
        self.api_url = api_url
        self.api_token = api_token
        self.http_timeout_secs = http_timeout_secs
        self.save_debounce_ms = save_debounce_ms
        self.flush_interval_secs = flush_interval_secs
        self.conflict_policy = conflict_policy


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    default_local = data_dir / "offline.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    local_store_url = os.getenv("BUDGET_LOCAL_STORE_URL", f"sqlite:///{default_local}")
    timezone = os.getenv("BUDGET_TIMEZONE", "Europe/Paris")
    api_url = os.getenv("BUDGET_API_URL", "http://localhost:8000").rstrip("/")
    api_token = os.getenv("BUDGET_API_TOKEN", "")
    http_timeout_secs = float(os.getenv("BUDGET_HTTP_TIMEOUT_SECS", "10"))
    save_debounce_ms = int(os.getenv("BUDGET_SAVE_DEBOUNCE_MS", "400"))
    flush_interval_secs = int(os.getenv("BUDGET_FLUSH_INTERVAL_SECS", "30"))
    conflict_policy = os.getenv("BUDGET_CONFLICT_POLICY", "never_overwrite")
    return Settings(
        database_url=database_url,
        local_store_url=local_store_url,
        timezone=timezone,
        api_url=api_url,
        api_token=api_token,
        http_timeout_secs=http_timeout_secs,
        save_debounce_ms=save_debounce_ms,
        flush_interval_secs=flush_interval_secs,
        conflict_policy=conflict_policy,
    )
