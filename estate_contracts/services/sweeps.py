# estate_contracts/services/sweeps.py
from __future__ import annotations

import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Callable, Dict, List, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from estate_contracts.core.clock import Clock
from estate_contracts.core.config import Settings, get_settings
from estate_contracts.core.errors import InvalidState
from estate_contracts.models.contract import Contract
from estate_contracts.models.enums import ContractStatus
from estate_contracts.services.contract_lifecycle import ContractLifecycleEngine
from estate_contracts.services.escrow_lifecycle import EscrowLifecycleEngine

logger = logging.getLogger(__name__)


@dataclass
class SweepReport:
    name: str
    processed: int = 0
    failed: int = 0
    deferred: int = 0
    skipped: int = 0
    dry_run: bool = False
    candidates: List[str] = field(default_factory=list)
    failures: List[Dict[str, str]] = field(default_factory=list)

    def summary(self) -> Dict[str, Any]:
        return {
            "sweep": self.name,
            "processed": self.processed,
            "failed": self.failed,
            "deferred": self.deferred,
            "skipped": self.skipped,
            "dry_run": self.dry_run,
            "candidates": len(self.candidates),
        }


class SweepService:
    """
    Time-driven transitions: activation after the retraction window, end of
    term, escrow release and retraction reminders.

    Each item runs in its own transaction through the lifecycle engines; one
    bad item is logged and rolled back without stopping the batch.
    """

    def __init__(
        self,
        contracts: ContractLifecycleEngine,
        escrow: EscrowLifecycleEngine,
        *,
        settings: Settings | None = None,
        clock: Clock | None = None,
        timer: Callable[[], float] = time.monotonic,
    ):
        self.contracts = contracts
        self.escrow = escrow
        self.settings = settings or get_settings()
        self.clock = clock or contracts.clock
        self.timer = timer

    @property
    def _window(self) -> timedelta:
        return timedelta(hours=self.settings.retraction_hours)

    # ─────────────────────────────────────────────
    # SWEEPS
    # ─────────────────────────────────────────────

    def activate_due_contracts(self, db: Session, *, dry_run: bool = False) -> SweepReport:
        now = self.clock.now()
        ids = self._contract_ids(
            db,
            Contract.status == ContractStatus.SIGNED,
            Contract.signature_complete_at <= now - self._window,
            order_by=Contract.signature_complete_at,
        )
        return self._sweep(db, "activate_due_contracts", ids, self.contracts.activate, dry_run)

    def expire_overdue_contracts(self, db: Session, *, dry_run: bool = False) -> SweepReport:
        now = self.clock.now()
        ids = self._contract_ids(
            db,
            Contract.status == ContractStatus.ACTIVE,
            Contract.planned_end_date.is_not(None),
            Contract.planned_end_date < now,
            order_by=Contract.planned_end_date,
        )

        def expire(session: Session, contract_id: uuid.UUID) -> Any:
            return self.contracts.terminate(session, contract_id, reason="term_expired")

        return self._sweep(db, "expire_overdue_contracts", ids, expire, dry_run)

    def release_due_escrows(self, db: Session, *, dry_run: bool = False) -> SweepReport:
        due = self.escrow.get_expired_escrow(db, self.clock.now(), limit=self.settings.sweep_batch_size)
        ids = [p.id for p in due]
        return self._sweep(db, "release_due_escrows", ids, self.escrow.release_from_escrow, dry_run)

    def send_retraction_reminders(self, db: Session, *, dry_run: bool = False) -> SweepReport:
        now = self.clock.now()
        reminder = timedelta(hours=self.settings.retraction_reminder_hours)
        ids = self._contract_ids(
            db,
            Contract.status == ContractStatus.SIGNED,
            Contract.retraction_reminder_sent_at.is_(None),
            Contract.signature_complete_at > now - self._window,
            Contract.signature_complete_at <= now - self._window + reminder,
            order_by=Contract.signature_complete_at,
        )
        return self._sweep(db, "send_retraction_reminders", ids, self.contracts.mark_reminder_sent, dry_run)

    def run_all(self, db: Session, *, dry_run: bool = False) -> Dict[str, SweepReport]:
        reports = {}
        for sweep in (
            self.activate_due_contracts,
            self.release_due_escrows,
            self.expire_overdue_contracts,
            self.send_retraction_reminders,
        ):
            report = sweep(db, dry_run=dry_run)
            reports[report.name] = report
        return reports

    # ─────────────────────────────────────────────
    # HELPERS
    # ─────────────────────────────────────────────

    def _contract_ids(self, db: Session, *criteria, order_by) -> List[uuid.UUID]:
        stmt = (
            select(Contract.id)
            .where(*criteria)
            .order_by(order_by, Contract.id)
            .limit(self.settings.sweep_batch_size)
        )
        return list(db.execute(stmt).scalars().all())

    def _sweep(
        self,
        db: Session,
        name: str,
        ids: Sequence[uuid.UUID],
        action: Callable[[Session, uuid.UUID], Any],
        dry_run: bool,
    ) -> SweepReport:
        report = SweepReport(name=name, dry_run=dry_run, candidates=[str(i) for i in ids])
        # selection is read-only; end its transaction before per-item work
        db.rollback()
        if dry_run:
            logger.info("sweep dry run", extra=report.summary())
            return report

        deadline = self.timer() + self.settings.sweep_batch_budget_seconds
        for index, item_id in enumerate(ids):
            if self.timer() >= deadline:
                report.deferred = len(ids) - index
                logger.warning("sweep budget exhausted", extra=report.summary())
                break
            try:
                outcome = action(db, item_id)
            except InvalidState as exc:
                # another writer moved the item first
                db.rollback()
                report.skipped += 1
                logger.info("sweep item no longer eligible", extra={"sweep": name, "item_id": str(item_id), "reason": exc.message})
                continue
            except Exception as exc:
                db.rollback()
                report.failed += 1
                report.failures.append({"item_id": str(item_id), "error": f"{type(exc).__name__}: {exc}"})
                logger.exception("sweep item failed", extra={"sweep": name, "item_id": str(item_id)})
                continue
            if outcome is False:
                report.skipped += 1
            else:
                report.processed += 1

        logger.info("sweep finished", extra=report.summary())
        return report
