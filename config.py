import os
from functools import lru_cache
from pathlib import Path


BASE_DIR = Path(__file__).resolve().parent


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        aggregator_url: str,
        aggregator_client_id: str,
        aggregator_secret: str,
        aggregator_timeout_secs: float,
        aggregator_retry_delay_secs: float,
        category_map_path: str,
        id_max_batches: int,
        sync_max_workers: int,
        sync_interval_minutes: int,
        scheduler_enabled: bool,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.aggregator_url = aggregator_url
        self.aggregator_client_id = aggregator_client_id
        self.aggregator_secret = aggregator_secret
        self.aggregator_timeout_secs = aggregator_timeout_secs
        self.aggregator_retry_delay_secs = aggregator_retry_delay_secs
        self.category_map_path = category_map_path
        self.id_max_batches = id_max_batches
        self.sync_max_workers = sync_max_workers
        self.sync_interval_minutes = sync_interval_minutes
        self.scheduler_enabled = scheduler_enabled


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGETSYNC_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget_sync.db"
    database_url = os.getenv("BUDGETSYNC_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGETSYNC_TIMEZONE", "UTC")
    aggregator_url = os.getenv(
        "BUDGETSYNC_AGGREGATOR_URL", "https://sandbox.plaid.com"
    ).rstrip("/")
    aggregator_client_id = os.getenv("BUDGETSYNC_AGGREGATOR_CLIENT_ID", "")
    aggregator_secret = os.getenv("BUDGETSYNC_AGGREGATOR_SECRET", "")
    aggregator_timeout_secs = float(
        os.getenv("BUDGETSYNC_AGGREGATOR_TIMEOUT_SECS", "10")
    )
    aggregator_retry_delay_secs = float(
        os.getenv("BUDGETSYNC_AGGREGATOR_RETRY_DELAY_SECS", "2")
    )
    category_map_path = os.getenv(
        "BUDGETSYNC_CATEGORY_MAP_PATH", str(BASE_DIR / "category_map.json")
    )
    id_max_batches = int(os.getenv("BUDGETSYNC_ID_MAX_BATCHES", "5"))
    sync_max_workers = int(os.getenv("BUDGETSYNC_SYNC_MAX_WORKERS", "4"))
    sync_interval_minutes = int(os.getenv("BUDGETSYNC_SYNC_INTERVAL_MINUTES", "60"))
    scheduler_enabled = _env_flag("BUDGETSYNC_SCHEDULER_ENABLED", "true")
    return Settings(
        database_url=database_url,
        timezone=timezone,
        aggregator_url=aggregator_url,
        aggregator_client_id=aggregator_client_id,
        aggregator_secret=aggregator_secret,
        aggregator_timeout_secs=aggregator_timeout_secs,
        aggregator_retry_delay_secs=aggregator_retry_delay_secs,
        category_map_path=category_map_path,
        id_max_batches=id_max_batches,
        sync_max_workers=sync_max_workers,
        sync_interval_minutes=sync_interval_minutes,
        scheduler_enabled=scheduler_enabled,
    )
