from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

import scheduler
from backup import decode_backup
from config import Settings
from database import Base
from scheduler import SchedulerManager


def _settings(tmp_path, **overrides) -> Settings:
    fields = {
        "database_url": "sqlite://",
        "timezone": "UTC",
        "backup_secret": "scheduler-secret",
        "backup_dir": tmp_path / "backups",
        "auto_backup": True,
        "backup_hour": 3,
        "backup_keep": 2,
        "projection_months": 6,
    }
    fields.update(overrides)
    return Settings(**fields)


def _patch_session(monkeypatch):
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    @contextmanager
    def fake_scope():
        with Session(engine) as session:
            yield session
            session.commit()

    monkeypatch.setattr(scheduler, "session_scope", fake_scope)


def test_run_job_writes_encrypted_backup(tmp_path, monkeypatch):
    _patch_session(monkeypatch)
    manager = SchedulerManager(_settings(tmp_path))

    path = manager._run_job()

    assert path.parent == tmp_path / "backups"
    assert path.name.startswith("budget_backup_")
    assert path.suffix == ".budget"
    dump = decode_backup(path.read_bytes(), "scheduler-secret")
    assert dump["data"]["transactions"] == []


def test_run_job_prunes_old_backups(tmp_path, monkeypatch):
    _patch_session(monkeypatch)
    backup_dir = tmp_path / "backups"
    backup_dir.mkdir()
    for stamp in ("2020-01-01", "2020-01-02", "2020-01-03"):
        (backup_dir / f"budget_backup_{stamp}.budget").write_bytes(b"old")
    (backup_dir / "notes.txt").write_text("keep me")

    manager = SchedulerManager(_settings(tmp_path))
    newest = manager._run_job()

    remaining = sorted(p.name for p in backup_dir.iterdir())
    assert remaining == sorted(
        ["budget_backup_2020-01-03.budget", newest.name, "notes.txt"]
    )


def test_start_is_noop_when_disabled(tmp_path):
    manager = SchedulerManager(_settings(tmp_path, auto_backup=False))
    manager.start()
    assert not manager.scheduler.running
    assert manager.scheduler.get_jobs() == []
    manager.stop()


def test_start_registers_daily_backup(tmp_path):
    manager = SchedulerManager(_settings(tmp_path, backup_hour=4))
    manager.start()
    try:
        job = manager.scheduler.get_job("backup_daily")
        assert job is not None
        assert "hour='4'" in str(job.trigger)
    finally:
        manager.stop()
