"""Background retention scheduler."""

from __future__ import annotations

import threading
from typing import Any

from privacy_vault.core.logging import get_logger
from privacy_vault.ingest.types import SweepReport
from privacy_vault.retention.enforcer import RetentionEnforcer
from privacy_vault.utils.time import now_ms

logger = get_logger(__name__)


class RetentionScheduler:
    """Runs ``run_sweep`` every ``interval_seconds`` on a daemon thread.

    ``trigger`` wakes the thread for an immediate run; ``stop`` interrupts a
    running sweep between resource kinds and joins the thread.
    """

    def __init__(self, enforcer: RetentionEnforcer, interval_seconds: float) -> None:
        self.enforcer = enforcer
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self.last_report: SweepReport | None = None
        self.last_error: str | None = None
        self.last_run_at: int | None = None
        self.next_run_at: int | None = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def start(self) -> None:
        with self._lock:
            if self.running:
                return
            self._stop.clear()
            self._wake.clear()
            self._thread = threading.Thread(target=self._loop, name="retention-scheduler", daemon=True)
            self._thread.start()
        logger.info("Retention scheduler started", extra={"ctx_interval": self.interval_seconds})

    def stop(self, timeout: float | None = 5.0) -> None:
        with self._lock:
            thread = self._thread
            self._stop.set()
            self._wake.set()
        if thread is not None:
            thread.join(timeout)
        with self._lock:
            self._thread = None
        logger.info("Retention scheduler stopped")

    def trigger(self) -> None:
        self._wake.set()

    def status(self) -> dict[str, Any]:
        return {
            "running": self.running,
            "interval_seconds": self.interval_seconds,
            "last_run_at": self.last_run_at,
            "next_run_at": self.next_run_at,
            "last_error": self.last_error,
            "last_report": self.last_report.to_dict() if self.last_report else None,
        }

    def _loop(self) -> None:
        while not self._stop.is_set():
            self.next_run_at = now_ms() + int(self.interval_seconds * 1000)
            self._wake.wait(timeout=self.interval_seconds)
            self._wake.clear()
            if self._stop.is_set():
                break
            self._run_once()

    def _run_once(self) -> None:
        self.last_run_at = now_ms()
        try:
            self.last_report = self.enforcer.run_sweep(cancel_event=self._stop)
            self.last_error = None
        # the thread must outlive a failed run; the next run retries
        except Exception as exc:
            logger.exception("Scheduled retention sweep failed")
            self.last_error = str(exc)


__all__ = ["RetentionScheduler"]
