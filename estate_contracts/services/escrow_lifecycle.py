# estate_contracts/services/escrow_lifecycle.py
from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, List, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from estate_contracts.core.clock import Clock, SystemClock
from estate_contracts.core.config import Settings, get_settings
from estate_contracts.core.errors import ContractNotFound, InvalidState, PaymentNotFound
from estate_contracts.core.references import generate_payment_reference
from estate_contracts.db.cas import compare_and_swap, run_with_cas_retry
from estate_contracts.models.contract import Contract
from estate_contracts.models.enums import (
    CommissionType,
    ContractStatus,
    ContractType,
    NotificationEvent,
    PaymentMethod,
    PaymentStatus,
)
from estate_contracts.models.payment import Payment
from estate_contracts.services.notifications import enqueue_notification, payment_payload

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")

COMMISSION_RATES: Dict[CommissionType, Decimal] = {
    CommissionType.LOCATION: Decimal("0.50"),       # half of one month's rent
    CommissionType.VENTE_TERRAIN: Decimal("0.01"),
    CommissionType.VENTE_MAISON: Decimal("0.02"),
}


def _to_dec(x: Any, field: str = "amount") -> Decimal:
    if isinstance(x, Decimal):
        return x
    try:
        return Decimal(str(x))
    except (InvalidOperation, TypeError):
        raise ValueError(f"Invalid numeric field: {field}.")


def resolve_commission_type(kind: Any) -> CommissionType:
    if isinstance(kind, CommissionType):
        return kind
    try:
        return commission_type_for(ContractType(kind))
    except ValueError:
        pass
    try:
        return CommissionType(kind)
    except ValueError:
        return CommissionType.LOCATION


def calculate_commission(amount: Any, commission_type: Any) -> Decimal:
    """
    Platform commission for ``amount``, rounded half-up to the cent.

    ``commission_type`` is a ``CommissionType`` or a ``ContractType``; a
    contract type is priced through ``commission_type_for``. Unrecognised
    values are charged at the rental rate.
    """
    value = _to_dec(amount)
    if value < 0:
        raise ValueError("Amount must not be negative.")
    ctype = resolve_commission_type(commission_type)
    return (value * COMMISSION_RATES[ctype]).quantize(CENT, rounding=ROUND_HALF_UP)


def commission_type_for(contract_type: ContractType) -> CommissionType:
    if contract_type == ContractType.LAND_SALE_PROMISE:
        return CommissionType.VENTE_TERRAIN
    return CommissionType.LOCATION


@dataclass(frozen=True)
class PaymentAmounts:
    rent_amount: Decimal = Decimal("0")
    deposit_amount: Decimal = Decimal("0")
    commission_amount: Decimal = Decimal("0")

    @property
    def total_amount(self) -> Decimal:
        return (self.rent_amount + self.deposit_amount + self.commission_amount).quantize(CENT)

    @classmethod
    def for_contract(cls, contract: Contract) -> "PaymentAmounts":
        """First payment of a contract: one period of rent, the deposit and the commission on it."""
        rent = _to_dec(contract.rent_amount).quantize(CENT)
        return cls(
            rent_amount=rent,
            deposit_amount=_to_dec(contract.deposit_amount).quantize(CENT),
            commission_amount=calculate_commission(rent, commission_type_for(contract.contract_type)),
        )


class EscrowLifecycleEngine:
    """
    PENDING -> IN_ESCROW -> COMPLETE | REFUNDED, PENDING -> FAILED | COMPLETE.

    Every public transition loads, validates, compare-and-swaps, queues its
    notification and commits; lost races are retried from a fresh read.
    """

    def __init__(self, *, settings: Settings | None = None, clock: Clock | None = None):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()

    # ─────────────────────────────────────────────
    # READS
    # ─────────────────────────────────────────────

    def get(self, db: Session, payment_id: uuid.UUID) -> Payment:
        row = db.get(Payment, payment_id)
        if not row:
            raise PaymentNotFound(payment_id)
        return row

    def for_contract(self, db: Session, contract_id: uuid.UUID) -> List[Payment]:
        return list(
            db.execute(
                select(Payment).where(Payment.contract_id == contract_id).order_by(Payment.created_at)
            ).scalars().all()
        )

    def live_payment_for(self, db: Session, contract_id: uuid.UUID) -> Optional[Payment]:
        """The contract's one payment that has not FAILED, if any."""
        return db.execute(
            select(Payment).where(
                Payment.contract_id == contract_id,
                Payment.status != PaymentStatus.FAILED,
            )
        ).scalars().first()

    def escrow_status(self, db: Session, payment_id: uuid.UUID) -> Dict[str, Any]:
        p = self.get(db, payment_id)
        now = self.clock.now()
        expires_at = p.escrow_expires_at if p.status == PaymentStatus.IN_ESCROW else None
        remaining = None
        if expires_at is not None:
            remaining = max(0.0, (expires_at - now).total_seconds() / 3600)
        return {
            "payment_id": p.id,
            "status": p.status,
            "in_escrow": p.status == PaymentStatus.IN_ESCROW,
            "escrow_started_at": p.escrow_started_at,
            "escrow_expires_at": expires_at,
            "hours_remaining": round(remaining, 2) if remaining is not None else None,
            "expired": expires_at is not None and expires_at <= now,
        }

    def get_expired_escrow(
        self,
        db: Session,
        now: Optional[datetime] = None,
        *,
        limit: Optional[int] = None,
    ) -> List[Payment]:
        """
        IN_ESCROW payments whose hold has run out and whose contract (if any)
        can no longer be retracted. Draft or cancelled contracts never release.
        """
        now = now or self.clock.now()
        window_closed = now - timedelta(hours=self.settings.retraction_hours)

        stmt = (
            select(Payment)
            .outerjoin(Contract, Payment.contract_id == Contract.id)
            .where(
                Payment.status == PaymentStatus.IN_ESCROW,
                Payment.escrow_expires_at <= now,
                or_(
                    Payment.contract_id.is_(None),
                    Contract.status.in_([ContractStatus.ACTIVE, ContractStatus.TERMINATED]),
                    and_(
                        Contract.status == ContractStatus.SIGNED,
                        Contract.signature_complete_at <= window_closed,
                    ),
                ),
            )
            .order_by(Payment.escrow_expires_at, Payment.id)
        )
        if limit:
            stmt = stmt.limit(limit)
        return list(db.execute(stmt).scalars().all())

    # ─────────────────────────────────────────────
    # CREATE
    # ─────────────────────────────────────────────

    def create(
        self,
        db: Session,
        *,
        contract_id: Optional[uuid.UUID],
        payer_id: str,
        beneficiary_id: str,
        amounts: Optional[PaymentAmounts] = None,
        method: PaymentMethod,
        reference: Optional[str] = None,
    ) -> Payment:
        contract = None
        if contract_id is not None:
            contract = db.get(Contract, contract_id)
            if contract is None:
                raise ContractNotFound(contract_id)
            if contract.status in (ContractStatus.CANCELLED, ContractStatus.TERMINATED):
                raise InvalidState("contract", "collect payment for", contract.status.value)
            self._ensure_no_live_payment(db, contract.id)

        if amounts is None:
            if contract is None:
                raise ValueError("amounts are required for a payment without a contract.")
            amounts = PaymentAmounts.for_contract(contract)

        for name in ("rent_amount", "deposit_amount", "commission_amount"):
            if getattr(amounts, name) < 0:
                raise ValueError(f"{name} must not be negative.")

        if not payer_id or not beneficiary_id:
            raise ValueError("payer_id and beneficiary_id are required.")

        now = self.clock.now()
        row = Payment(
            reference=reference or generate_payment_reference(now),
            contract_id=contract_id,
            payer_id=payer_id,
            beneficiary_id=beneficiary_id,
            rent_amount=amounts.rent_amount,
            deposit_amount=amounts.deposit_amount,
            commission_amount=amounts.commission_amount,
            total_amount=amounts.total_amount,
            method=PaymentMethod(method),
            status=PaymentStatus.PENDING,
            created_at=now,
            updated_at=now,
        )
        db.add(row)
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            if contract_id is not None:
                self._ensure_no_live_payment(db, contract_id)
            raise
        db.refresh(row)

        logger.info(
            "payment created",
            extra={"payment_id": str(row.id), "reference": row.reference, "total_amount": str(row.total_amount)},
        )
        return row

    def _ensure_no_live_payment(self, db: Session, contract_id: uuid.UUID) -> None:
        existing = self.live_payment_for(db, contract_id)
        if existing is not None:
            raise InvalidState(
                "payment",
                "create",
                existing.status.value,
                message=f"Contract {contract_id} already has payment {existing.reference} ({existing.status.value}).",
            )

    # ─────────────────────────────────────────────
    # TRANSITIONS
    # ─────────────────────────────────────────────

    def place_in_escrow(self, db: Session, payment_id: uuid.UUID, hold_hours: Optional[int] = None) -> Payment:
        hours = hold_hours if hold_hours is not None else self.settings.escrow_hold_hours
        if hours <= 0:
            raise ValueError("hold_hours must be positive.")

        def attempt() -> Payment:
            p = self.get(db, payment_id)
            self._require(p, "place in escrow", PaymentStatus.PENDING)
            now = self.clock.now()
            compare_and_swap(db, p, values={
                "status": PaymentStatus.IN_ESCROW,
                "escrow_started_at": now,
                "escrow_expires_at": now + timedelta(hours=hours),
                "updated_at": now,
            })
            self._notify(db, p, NotificationEvent.PAYMENT_IN_ESCROW)
            db.commit()
            return p

        p = self._run(db, attempt, "place_in_escrow", payment_id)
        logger.info("payment held in escrow", extra={"payment_id": str(p.id), "hold_hours": hours})
        return p

    def confirm(self, db: Session, payment_id: uuid.UUID, external_txn_id: Optional[str] = None) -> Payment:
        """Provider confirmed the payment (webhook); settles a pending or held payment."""

        def attempt() -> Payment:
            p = self.get(db, payment_id)
            self._require(p, "confirm", PaymentStatus.PENDING, PaymentStatus.IN_ESCROW)
            self.apply_completion(db, p, origin="confirmed", external_txn_id=external_txn_id, now=self.clock.now())
            db.commit()
            return p

        return self._run(db, attempt, "confirm", payment_id)

    def release_from_escrow(self, db: Session, payment_id: uuid.UUID) -> Payment:
        def attempt() -> Payment:
            p = self.get(db, payment_id)
            self._require(p, "release", PaymentStatus.IN_ESCROW)
            self.apply_completion(db, p, origin="escrow_released", now=self.clock.now())
            db.commit()
            return p

        return self._run(db, attempt, "release_from_escrow", payment_id)

    def refund(self, db: Session, payment_id: uuid.UUID, reason: Optional[str] = None) -> Payment:
        def attempt() -> Payment:
            p = self.get(db, payment_id)
            self._require(p, "refund", PaymentStatus.IN_ESCROW)
            self.apply_refund(db, p, reason=reason, now=self.clock.now())
            db.commit()
            return p

        return self._run(db, attempt, "refund", payment_id)

    def fail(self, db: Session, payment_id: uuid.UUID, reason: Optional[str] = None) -> Payment:
        def attempt() -> Payment:
            p = self.get(db, payment_id)
            self._require(p, "fail", PaymentStatus.PENDING)
            self.apply_failure(db, p, reason=reason, now=self.clock.now())
            db.commit()
            return p

        return self._run(db, attempt, "fail", payment_id)

    # ─────────────────────────────────────────────
    # IN-TRANSACTION STEPS (no commit; used by the contract engine too)
    # ─────────────────────────────────────────────

    def apply_completion(
        self,
        db: Session,
        p: Payment,
        *,
        origin: str,
        now: datetime,
        external_txn_id: Optional[str] = None,
    ) -> None:
        values: Dict[str, Any] = {
            "status": PaymentStatus.COMPLETE,
            "date_validation": now,
            "updated_at": now,
        }
        if origin == "escrow_released":
            values["escrow_released_at"] = now
        if external_txn_id:
            values["external_transaction_id"] = external_txn_id
        compare_and_swap(db, p, values=values)
        self._notify(db, p, NotificationEvent.PAYMENT_COMPLETED, origin=origin)
        logger.info("payment completed", extra={"payment_id": str(p.id), "origin": origin})

    def apply_refund(self, db: Session, p: Payment, *, reason: Optional[str], now: datetime) -> None:
        compare_and_swap(db, p, values={
            "status": PaymentStatus.REFUNDED,
            "refunded_at": now,
            "refund_reason": reason,
            "date_validation": now,
            "updated_at": now,
        })
        self._notify(db, p, NotificationEvent.PAYMENT_REFUNDED, reason=reason)
        logger.info("payment refunded", extra={"payment_id": str(p.id)})

    def apply_failure(self, db: Session, p: Payment, *, reason: Optional[str], now: datetime) -> None:
        compare_and_swap(db, p, values={
            "status": PaymentStatus.FAILED,
            "failure_reason": reason,
            "date_validation": now,
            "updated_at": now,
        })
        self._notify(db, p, NotificationEvent.PAYMENT_FAILED, reason=reason)
        logger.info("payment failed", extra={"payment_id": str(p.id)})

    # ─────────────────────────────────────────────
    # HELPERS
    # ─────────────────────────────────────────────

    @staticmethod
    def _require(p: Payment, attempted: str, *allowed: PaymentStatus) -> None:
        if p.status not in allowed:
            raise InvalidState("payment", attempted, p.status.value)

    def _notify(self, db: Session, p: Payment, event: NotificationEvent, **extra: Any) -> None:
        # p was expired by the swap; attribute access reloads the new row
        enqueue_notification(db, event, payment_payload(p, **extra), p.party_ids())

    def _run(self, db: Session, fn, operation: str, payment_id: Any) -> Payment:
        p = run_with_cas_retry(
            db, fn, attempts=self.settings.cas_max_retries, operation=operation, entity_id=payment_id
        )
        db.refresh(p)
        return p
