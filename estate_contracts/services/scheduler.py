# estate_contracts/services/scheduler.py
from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from estate_contracts.core.clock import Clock, SystemClock
from estate_contracts.core.config import Settings
from estate_contracts.services.contract_lifecycle import ContractLifecycleEngine
from estate_contracts.services.escrow_lifecycle import EscrowLifecycleEngine
from estate_contracts.services.notifications import (
    LoggingNotificationPort,
    NotificationDispatcher,
    NotificationPort,
)
from estate_contracts.services.sweeps import SweepService

logger = logging.getLogger(__name__)


class SweepScheduler:
    """
    Runs every sweep and then drains the notification outbox, once per
    interval, on a daemon thread.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session],
        sweeps: SweepService,
        dispatcher: NotificationDispatcher,
        interval_seconds: float,
    ):
        self.session_factory = session_factory
        self.sweeps = sweeps
        self.dispatcher = dispatcher
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def run_once(self, *, dry_run: bool = False) -> Dict[str, Any]:
        db = self.session_factory()
        try:
            reports = self.sweeps.run_all(db, dry_run=dry_run)
            drained = None if dry_run else self.dispatcher.drain(db)
        finally:
            db.close()
        return {"sweeps": reports, "notifications": drained}

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="sweep-scheduler", daemon=True)
        self._thread.start()
        logger.info("sweep scheduler started", extra={"interval_seconds": self.interval_seconds})

    def stop(self, timeout: Optional[float] = 10.0) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
        self._thread = None
        logger.info("sweep scheduler stopped")

    def wait(self) -> None:
        """Blocks until stop() is called (worker process)."""
        while not self._stop.wait(1.0):
            pass

    def _loop(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception:
                # a failed tick (e.g. database unreachable) is retried next interval
                logger.exception("sweep tick failed")
            self._stop.wait(self.interval_seconds)


def build_scheduler(
    settings: Settings,
    session_factory: Callable[[], Session],
    *,
    clock: Clock | None = None,
    port: NotificationPort | None = None,
) -> SweepScheduler:
    clock = clock or SystemClock()
    escrow = EscrowLifecycleEngine(settings=settings, clock=clock)
    contracts = ContractLifecycleEngine(settings=settings, clock=clock, escrow=escrow)
    dispatcher = NotificationDispatcher(
        port or LoggingNotificationPort(),
        max_attempts=settings.notification_max_attempts,
        batch_size=settings.notification_batch_size,
        claim_seconds=settings.notification_claim_seconds,
        clock=clock,
    )
    return SweepScheduler(
        session_factory,
        SweepService(contracts, escrow, settings=settings, clock=clock),
        dispatcher,
        interval_seconds=settings.sweep_interval_minutes * 60,
    )
