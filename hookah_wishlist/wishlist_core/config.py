import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

# Load environment variables from a local .env if present.
load_dotenv()

DEFAULT_HOOKAH_DB_API_URL = "https://hdb.coolify.dknas.org"
STORAGE_TYPES = {"sqlite", "file"}


@dataclass
class Settings:
    telegram_bot_token: str
    storage_type: str
    storage_path: Path
    database_path: Path
    hookah_db_api_url: str = DEFAULT_HOOKAH_DB_API_URL
    hookah_db_api_key: str = ""
    hookah_db_timeout_seconds: float = 10.0
    catalog_cache_ttl_seconds: int = 300
    mini_app_url: str = ""
    log_level: str = "INFO"


def project_root() -> Path:
    # /project_root/hookah_wishlist/wishlist_core/config.py -> project_root
    return Path(__file__).resolve().parent.parent.parent


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = float(raw)
    except ValueError:
        return default
    return value if value > 0 else default


def _int_env(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        value = int(raw)
    except ValueError:
        return default
    return value if value >= 0 else default


def get_settings() -> Settings:
    root = project_root()

    storage_type = os.getenv("STORAGE_TYPE", "sqlite").strip().lower()
    if storage_type not in STORAGE_TYPES:
        storage_type = "sqlite"

    storage_path_env = os.getenv("STORAGE_PATH", "").strip()
    storage_path = Path(storage_path_env) if storage_path_env else root / "data"
    database_path_env = os.getenv("DATABASE_PATH", "").strip()
    database_path = Path(database_path_env) if database_path_env else root / "data" / "wishlist.db"

    # HOOKEH_DB_API_URL is the variable name older deployments still carry.
    hookah_db_api_url = (
        os.getenv("HOOKAH_DB_API_URL", "").strip()
        or os.getenv("HOOKEH_DB_API_URL", "").strip()
        or DEFAULT_HOOKAH_DB_API_URL
    )

    return Settings(
        telegram_bot_token=os.getenv("TELEGRAM_BOT_TOKEN", "").strip(),
        storage_type=storage_type,
        storage_path=storage_path,
        database_path=database_path,
        hookah_db_api_url=hookah_db_api_url.rstrip("/"),
        hookah_db_api_key=os.getenv("HOOKAH_DB_API_KEY", "").strip(),
        hookah_db_timeout_seconds=_float_env("HOOKAH_DB_TIMEOUT_SECONDS", 10.0),
        catalog_cache_ttl_seconds=_int_env("CATALOG_CACHE_TTL_SECONDS", 300),
        mini_app_url=os.getenv("MINI_APP_URL", "").strip(),
        log_level=os.getenv("LOG_LEVEL", "INFO").strip().upper() or "INFO",
    )
