from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional, Protocol

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from estate_contracts.core.clock import Clock, SystemClock
from estate_contracts.models.contract import Contract
from estate_contracts.models.enums import NotificationEvent, OutboxStatus
from estate_contracts.models.notification_outbox import NotificationOutboxEntry
from estate_contracts.models.payment import Payment

logger = logging.getLogger(__name__)


class NotificationPort(Protocol):
    """Outbound channel (email / SMS / WhatsApp ...) implemented by a collaborator."""

    def notify(self, event_type: str, payload: Dict[str, Any], recipients: List[str]) -> None:
        ...


class LoggingNotificationPort:
    """Default port: records the decision in the log and delivers nothing."""

    def notify(self, event_type: str, payload: Dict[str, Any], recipients: List[str]) -> None:
        logger.info(
            "notification",
            extra={"event_type": event_type, "recipients": recipients, "payload": payload},
        )


# ─────────────────────────────────────────────
# PAYLOADS
# ─────────────────────────────────────────────

def _iso(dt: Optional[datetime]) -> Optional[str]:
    return dt.isoformat() if dt else None


def _money(value: Optional[Decimal]) -> Optional[str]:
    return str(value) if value is not None else None


def contract_payload(contract: Contract, **extra: Any) -> Dict[str, Any]:
    payload = {
        "contract_id": str(contract.id),
        "reference": contract.reference,
        "contract_type": contract.contract_type.value,
        "status": contract.status.value,
        "rent_amount": _money(contract.rent_amount),
        "deposit_amount": _money(contract.deposit_amount),
        "signature_complete_at": _iso(contract.signature_complete_at),
        "start_date": _iso(contract.start_date),
        "end_date": _iso(contract.end_date),
    }
    payload.update(extra)
    return payload


def payment_payload(payment: Payment, **extra: Any) -> Dict[str, Any]:
    payload = {
        "payment_id": str(payment.id),
        "reference": payment.reference,
        "contract_id": str(payment.contract_id) if payment.contract_id else None,
        "status": payment.status.value,
        "total_amount": _money(payment.total_amount),
        "deposit_amount": _money(payment.deposit_amount),
        "commission_amount": _money(payment.commission_amount),
        "escrow_expires_at": _iso(payment.escrow_expires_at),
    }
    payload.update(extra)
    return payload


# ─────────────────────────────────────────────
# OUTBOX
# ─────────────────────────────────────────────

def enqueue_notification(
    db: Session,
    event: NotificationEvent,
    payload: Dict[str, Any],
    recipients: Iterable[str],
) -> NotificationOutboxEntry:
    """Adds an outbox row to the caller's transaction. Does not commit."""
    row = NotificationOutboxEntry(
        event_type=event,
        payload_json=payload,
        recipients_json=sorted(set(recipients)),
        status=OutboxStatus.PENDING,
        attempts=0,
    )
    db.add(row)
    return row


@dataclass
class DrainReport:
    delivered: int = 0
    failed: int = 0
    dead: int = 0
    skipped: int = 0


class NotificationDispatcher:
    """
    Delivers pending outbox rows through the port.

    Each row is claimed before it is sent: a conditional UPDATE bumps
    ``attempts`` and sets ``claimed_until``, so a concurrent drain (request
    background task vs scheduler tick) skips it. At-least-once: a row is
    marked DELIVERED only after notify() returns; a drain that dies mid-send
    leaves the claim to lapse and the row is re-sent. Failures release the
    claim and are retried on later drains until max_attempts, then parked as
    DEAD. Never touches contracts/payments.
    """

    def __init__(
        self,
        port: NotificationPort,
        *,
        max_attempts: int = 5,
        batch_size: int = 100,
        claim_seconds: int = 300,
        clock: Clock | None = None,
    ):
        self.port = port
        self.max_attempts = max_attempts
        self.batch_size = batch_size
        self.claim_seconds = claim_seconds
        self.clock = clock or SystemClock()

    def pending(self, db: Session, limit: Optional[int] = None) -> List[NotificationOutboxEntry]:
        """PENDING rows nobody currently holds a claim on, oldest first."""
        now = self.clock.now()
        return list(
            db.execute(
                select(NotificationOutboxEntry)
                .where(
                    NotificationOutboxEntry.status == OutboxStatus.PENDING,
                    or_(
                        NotificationOutboxEntry.claimed_until.is_(None),
                        NotificationOutboxEntry.claimed_until <= now,
                    ),
                )
                .order_by(NotificationOutboxEntry.created_at, NotificationOutboxEntry.id)
                .limit(limit or self.batch_size)
            ).scalars().all()
        )

    def claim(self, db: Session, row: NotificationOutboxEntry) -> bool:
        """
        Takes ``row`` for this drain and commits. False when another drain
        claimed or finished it since it was read.
        """
        now = self.clock.now()
        stmt = (
            update(NotificationOutboxEntry)
            .where(
                NotificationOutboxEntry.id == row.id,
                NotificationOutboxEntry.status == OutboxStatus.PENDING,
                NotificationOutboxEntry.attempts == row.attempts,
                or_(
                    NotificationOutboxEntry.claimed_until.is_(None),
                    NotificationOutboxEntry.claimed_until <= now,
                ),
            )
            .values(
                attempts=row.attempts + 1,
                claimed_until=now + timedelta(seconds=self.claim_seconds),
            )
            .execution_options(synchronize_session=False)
        )
        claimed = db.execute(stmt).rowcount == 1
        db.commit()
        return claimed

    def drain(self, db: Session) -> DrainReport:
        report = DrainReport()
        for row in self.pending(db):
            if not self.claim(db, row):
                report.skipped += 1
                continue
            db.refresh(row)
            event_type = row.event_type.value
            try:
                self.port.notify(event_type, dict(row.payload_json or {}), list(row.recipients_json or []))
            except Exception as exc:
                row.last_error = f"{type(exc).__name__}: {exc}"[:2000]
                row.claimed_until = None
                if row.attempts >= self.max_attempts:
                    row.status = OutboxStatus.DEAD
                    report.dead += 1
                    logger.error(
                        "notification dead-lettered",
                        extra={"outbox_id": str(row.id), "event_type": event_type, "attempts": row.attempts},
                    )
                else:
                    report.failed += 1
                    logger.warning(
                        "notification delivery failed",
                        extra={"outbox_id": str(row.id), "event_type": event_type, "attempts": row.attempts},
                    )
            else:
                row.status = OutboxStatus.DELIVERED
                row.delivered_at = self.clock.now()
                row.claimed_until = None
                report.delivered += 1
            db.commit()
        if report.skipped:
            logger.info("notification rows claimed elsewhere", extra={"skipped": report.skipped})
        return report


def drain_outbox(session_factory, dispatcher: NotificationDispatcher) -> DrainReport:
    """Opens its own session; used from request background tasks."""
    db = session_factory()
    try:
        return dispatcher.drain(db)
    finally:
        db.close()
