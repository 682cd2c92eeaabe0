"""Background task that keeps an automatic backup no older than a fixed interval."""

from __future__ import annotations

import threading
from datetime import UTC, datetime, timedelta
from typing import Callable, Optional

from . import log
from .audit import BackupLog
from .constants import DEFAULT_BACKUP_INTERVAL, BackupKind
from .snapshot import BackupResult, SnapshotExporter


class AutoBackupScheduler:
    """Launch AUTOMATIC backups when the last successful one is too old.

    ``start()`` spawns a daemon thread that calls :meth:`trigger_if_due`
    every ``poll_seconds``. Each backup runs on its own thread, so callers of
    :meth:`trigger_if_due` are never blocked and never see its result; the
    outcome only lands in the backup log.

    Args:
        exporter (SnapshotExporter): Exporter used for the backups.
        audit_log (BackupLog | None): Log consulted for the last success.
            Defaults to the exporter's log.
        interval (timedelta): Maximum age of the last successful backup.
        poll_seconds (float): Delay between two checks of the poll thread.
        clock (Callable[[], datetime] | None): Source of the current time.
    """

    def __init__(
        self,
        exporter: SnapshotExporter,
        audit_log: Optional[BackupLog] = None,
        *,
        interval: timedelta = DEFAULT_BACKUP_INTERVAL,
        poll_seconds: float = 300.0,
        clock: Optional[Callable[[], datetime]] = None,
    ) -> None:
        self.exporter = exporter
        self.audit_log = audit_log or exporter.audit_log
        self.interval = interval
        self.poll_seconds = poll_seconds
        self.clock = clock or (lambda: datetime.now(UTC))
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None
        self._worker: Optional[threading.Thread] = None
        self._guard = threading.Lock()
        self.last_result: Optional[BackupResult] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def is_backup_due(self) -> bool:
        """True when no successful backup exists or the newest is older than ``interval``."""

        last = self.audit_log.last_successful()
        if last is None:
            return True
        return self.clock() - last.timestamp >= self.interval

    def trigger_if_due(self) -> Optional[threading.Thread]:
        """Start a background backup if one is due and none is already running.

        Returns:
            threading.Thread | None: The worker thread, or ``None`` when no
                backup was started.
        """

        with self._guard:
            if self._worker is not None and self._worker.is_alive():
                return None
            try:
                due = self.is_backup_due()
            except Exception:
                log.exception("Could not check whether an automatic backup is due")
                return None
            if not due:
                return None
            self._worker = threading.Thread(
                target=self._run_backup, name="pmr-auto-backup", daemon=True
            )
            self._worker.start()
            log.info("Automatic backup started")
            return self._worker

    def _run_backup(self) -> None:
        try:
            self.last_result = self.exporter.create_backup(BackupKind.AUTOMATIC)
        except Exception:
            # create_backup records its own failures; this only covers the log write itself.
            log.exception("Automatic backup crashed")

    def _poll(self) -> None:
        while not self._stop.is_set():
            self.trigger_if_due()
            self._stop.wait(self.poll_seconds)

    def start(self) -> "AutoBackupScheduler":
        if self.running:
            return self
        self._stop.clear()
        self._thread = threading.Thread(target=self._poll, name="pmr-backup-scheduler", daemon=True)
        self._thread.start()
        log.info("Automatic backup scheduler started (interval %s)", self.interval)
        return self

    def stop(self, timeout: Optional[float] = None) -> None:
        """Stop polling and wait for a running backup to finish."""

        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        worker = self._worker
        if worker is not None:
            worker.join(timeout)
        log.info("Automatic backup scheduler stopped")

    def __enter__(self) -> "AutoBackupScheduler":
        return self.start()

    def __exit__(self, *exc_info: object) -> None:
        self.stop()


__all__ = ["AutoBackupScheduler"]
