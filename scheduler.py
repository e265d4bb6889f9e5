import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger

from backup import BackupService
from config import Settings, get_settings
from database import session_scope


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

BACKUP_PREFIX = "budget_backup_"
BACKUP_SUFFIX = ".budget"


class SchedulerManager:
    def __init__(self, settings: Optional[Settings] = None) -> None:
        self.settings = settings or get_settings()
        self.scheduler = BackgroundScheduler(timezone=self.settings.timezone)

    def _run_job(self, source: str = "manual") -> Path:
        logger.info(f"backup_run: source={source}")
        backup_dir = Path(self.settings.backup_dir)
        backup_dir.mkdir(parents=True, exist_ok=True)
        with session_scope() as session:
            blob = BackupService(session, self.settings.backup_secret).export()
        stamp = datetime.now().strftime("%Y-%m-%d")
        target = backup_dir / f"{BACKUP_PREFIX}{stamp}{BACKUP_SUFFIX}"
        target.write_bytes(blob)
        pruned = self._prune(backup_dir)
        logger.info(
            f"backup_run: source={source} file={target.name} bytes={len(blob)} "
            f"pruned={pruned}"
        )
        return target

    def _prune(self, backup_dir: Path) -> int:
        files = sorted(backup_dir.glob(f"{BACKUP_PREFIX}*{BACKUP_SUFFIX}"))
        keep = max(self.settings.backup_keep, 1)
        stale = files[:-keep]
        for path in stale:
            path.unlink()
        return len(stale)

    def start(self) -> None:
        if not self.settings.auto_backup:
            logger.info("Scheduler disabled: automatic backups are off")
            return

        trigger = CronTrigger(hour=self.settings.backup_hour, minute=15)
        self.scheduler.add_job(
            self._run_job,
            trigger,
            args=["daily"],
            id="backup_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )

        self.scheduler.start()
        logger.info(
            f"Scheduler started with daily backup at {self.settings.backup_hour:02d}:15"
        )

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
