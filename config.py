import os
from functools import lru_cache
from pathlib import Path


class Settings:
    def __init__(
        self,
        database_url: str,
        timezone: str,
        backup_secret: str,
        backup_dir: Path,
        auto_backup: bool,
        backup_hour: int,
        backup_keep: int,
        projection_months: int,
    ) -> None:
        self.database_url = database_url
        self.timezone = timezone
        self.backup_secret = backup_secret
        self.backup_dir = backup_dir
        self.auto_backup = auto_backup
        self.backup_hour = backup_hour
        self.backup_keep = backup_keep
        self.projection_months = projection_months


def _ensure_data_dir() -> Path:
    root = Path(os.getenv("BUDGET_DATA_DIR", "./data")).resolve()
    root.mkdir(parents=True, exist_ok=True)
    return root


def _env_flag(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in {"1", "true", "yes", "on"}


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    data_dir = _ensure_data_dir()
    default_db = data_dir / "budget.db"
    database_url = os.getenv("BUDGET_DATABASE_URL", f"sqlite:///{default_db}")
    timezone = os.getenv("BUDGET_TIMEZONE", "Europe/Paris")
    backup_secret = os.getenv(
        "BUDGET_BACKUP_SECRET",
        "3f9c1d2e8a7b4c6d5e0f1a2b3c4d5e6f7a8b9c0d1e2f3a4b5c6d7e8f9a0b1c2d",
    )
    backup_dir = Path(os.getenv("BUDGET_BACKUP_DIR", str(data_dir / "backups")))
    auto_backup = _env_flag("BUDGET_AUTO_BACKUP", "on")
    backup_hour = int(os.getenv("BUDGET_BACKUP_HOUR", "3"))
    backup_keep = int(os.getenv("BUDGET_BACKUP_KEEP", "14"))
    projection_months = int(os.getenv("BUDGET_PROJECTION_MONTHS", "6"))
    return Settings(
        database_url=database_url,
        timezone=timezone,
        backup_secret=backup_secret,
        backup_dir=backup_dir,
        auto_backup=auto_backup,
        backup_hour=backup_hour,
        backup_keep=backup_keep,
        projection_months=projection_months,
    )
