# estate_contracts/services/contract_lifecycle.py
from __future__ import annotations

import calendar
import logging
import uuid
from datetime import datetime, timedelta
from decimal import Decimal, InvalidOperation
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.orm import Session

from estate_contracts.core.clock import Clock, SystemClock
from estate_contracts.core.config import Settings, get_settings
from estate_contracts.core.errors import (
    AlreadySigned,
    ContractLocked,
    ContractNotFound,
    InvalidParty,
    InvalidState,
    LifecycleError,
    RenewalFailed,
    RetractionWindowExpired,
    TransactionFailed,
)
from estate_contracts.core.hashing import seal_digest
from estate_contracts.core.references import generate_contract_reference
from estate_contracts.db.cas import compare_and_swap, run_with_cas_retry
from estate_contracts.models.contract import Contract
from estate_contracts.models.enums import (
    ContractStatus,
    ContractType,
    NotificationEvent,
    PartyRole,
    PaymentStatus,
)
from estate_contracts.models.payment import Payment
from estate_contracts.services.escrow_lifecycle import EscrowLifecycleEngine
from estate_contracts.services.notifications import contract_payload, enqueue_notification
from estate_contracts.services.signature_ledger import SignatureLedger, SignatureMetadata, role_of

logger = logging.getLogger(__name__)

# Terms a draft may still change before anybody signs it
AMENDABLE_TERMS = ("rent_amount", "deposit_amount", "duration_months", "special_conditions")

# Fields a renewal may override on top of the old contract's terms
RENEWAL_OVERRIDES = AMENDABLE_TERMS + ("contract_type",)

_REFERENCE_ATTEMPTS = 5


def add_months(dt: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's length."""
    month_index = dt.month - 1 + months
    year = dt.year + month_index // 12
    month = month_index % 12 + 1
    day = min(dt.day, calendar.monthrange(year, month)[1])
    return dt.replace(year=year, month=month, day=day)


def _to_dec(x: Any, field: str) -> Decimal:
    try:
        value = Decimal(str(x))
    except (InvalidOperation, TypeError):
        raise ValueError(f"Invalid numeric field: {field}.")
    if value < 0:
        raise ValueError(f"{field} must not be negative.")
    return value.quantize(Decimal("0.01"))


def _clean_terms(changes: Dict[str, Any], allowed: tuple) -> Dict[str, Any]:
    unknown = sorted(set(changes) - set(allowed))
    if unknown:
        raise ValueError(f"Unknown or protected fields: {', '.join(unknown)}.")

    cleaned: Dict[str, Any] = {}
    for key, value in changes.items():
        if key in ("rent_amount", "deposit_amount"):
            cleaned[key] = _to_dec(value, key)
        elif key == "duration_months":
            months = int(value)
            if months < 1:
                raise ValueError("duration_months must be at least 1.")
            cleaned[key] = months
        elif key == "contract_type":
            cleaned[key] = ContractType(value)
        else:
            cleaned[key] = value
    return cleaned


class ContractLifecycleEngine:
    """
    DRAFT --(both parties signed)--> SIGNED --(retraction window elapsed)--> ACTIVE --> TERMINATED
                                        \\--(cancel inside the window)--> CANCELLED

    status only changes through compare-and-swap, and every transition commits
    together with the notifications it decided on.
    """

    def __init__(
        self,
        *,
        settings: Settings | None = None,
        clock: Clock | None = None,
        ledger: SignatureLedger | None = None,
        escrow: EscrowLifecycleEngine | None = None,
    ):
        self.settings = settings or get_settings()
        self.clock = clock or SystemClock()
        self.ledger = ledger or SignatureLedger()
        self.escrow = escrow or EscrowLifecycleEngine(settings=self.settings, clock=self.clock)

    @property
    def retraction_window(self) -> timedelta:
        return timedelta(hours=self.settings.retraction_hours)

    # ─────────────────────────────────────────────
    # READS
    # ─────────────────────────────────────────────

    def get(self, db: Session, contract_id: uuid.UUID) -> Contract:
        row = db.get(Contract, contract_id)
        if not row:
            raise ContractNotFound(contract_id)
        return row

    def list_for_party(
        self,
        db: Session,
        party_id: str,
        role: Optional[PartyRole] = None,
        *,
        include_archived: bool = False,
    ) -> List[Contract]:
        stmt = select(Contract)
        if role == PartyRole.OWNER:
            stmt = stmt.where(Contract.owner_id == party_id)
        elif role == PartyRole.TENANT:
            stmt = stmt.where(Contract.tenant_id == party_id)
        else:
            stmt = stmt.where((Contract.owner_id == party_id) | (Contract.tenant_id == party_id))
        if not include_archived:
            stmt = stmt.where(Contract.archived_at.is_(None))
        return list(db.execute(stmt.order_by(Contract.created_at.desc())).scalars().all())

    def statistics(self, db: Session) -> Dict[str, int]:
        counts = {s.value: 0 for s in ContractStatus}
        for status, n in db.execute(select(Contract.status, func.count(Contract.id)).group_by(Contract.status)).all():
            counts[status.value] = n
        locked = db.execute(select(func.count(Contract.id)).where(Contract.locked_at.is_not(None))).scalar_one()
        counts["total"] = sum(counts[s.value] for s in ContractStatus)
        counts["locked"] = locked
        return counts

    def window_started_at(self, db: Session, contract: Contract) -> Optional[datetime]:
        # the window runs from the later of the two signatures
        return contract.signature_complete_at or self.ledger.completed_at(db, contract.id)

    def can_retract(self, db: Session, contract_id: uuid.UUID) -> bool:
        contract = self.get(db, contract_id)
        return self._inside_window(db, contract, self.clock.now())

    def retraction_seconds_remaining(self, db: Session, contract_id: uuid.UUID) -> Optional[int]:
        """Seconds until the retraction window closes; None unless the contract is SIGNED."""
        contract = self.get(db, contract_id)
        if contract.status != ContractStatus.SIGNED:
            return None
        started = self.window_started_at(db, contract)
        if started is None:
            return None
        remaining = (started + self.retraction_window - self.clock.now()).total_seconds()
        return max(0, int(remaining))

    def _inside_window(self, db: Session, contract: Contract, now: datetime) -> bool:
        if contract.status != ContractStatus.SIGNED:
            return False
        started = self.window_started_at(db, contract)
        if started is None:
            return False
        return now - started < self.retraction_window

    # ─────────────────────────────────────────────
    # CREATE / EDIT
    # ─────────────────────────────────────────────

    def create_draft(
        self,
        db: Session,
        *,
        owner_id: str,
        tenant_id: str,
        contract_type: ContractType,
        rent_amount: Any,
        deposit_amount: Any = 0,
        duration_months: int = 12,
        listing_id: Optional[str] = None,
        special_conditions: Optional[str] = None,
        renewed_from_id: Optional[uuid.UUID] = None,
        commit: bool = True,
    ) -> Contract:
        if not owner_id or not tenant_id:
            raise ValueError("owner_id and tenant_id are required.")
        if owner_id == tenant_id:
            raise ValueError("Owner and tenant must be different parties.")

        terms = _clean_terms(
            {
                "rent_amount": rent_amount,
                "deposit_amount": deposit_amount,
                "duration_months": duration_months,
                "special_conditions": special_conditions,
                "contract_type": contract_type,
            },
            RENEWAL_OVERRIDES,
        )

        now = self.clock.now()
        row = Contract(
            reference=self._new_reference(db, now),
            owner_id=owner_id,
            tenant_id=tenant_id,
            listing_id=listing_id,
            status=ContractStatus.DRAFT,
            renewed_from_id=renewed_from_id,
            created_at=now,
            updated_at=now,
            **terms,
        )
        db.add(row)
        if commit:
            db.commit()
            db.refresh(row)
        else:
            db.flush()

        logger.info("contract drafted", extra={"contract_id": str(row.id), "reference": row.reference})
        return row

    def _new_reference(self, db: Session, now: datetime) -> str:
        prefix = self.settings.contract_reference_prefix
        for _ in range(_REFERENCE_ATTEMPTS):
            ref = generate_contract_reference(prefix, now)
            taken = db.execute(select(Contract.id).where(Contract.reference == ref)).first()
            if taken is None:
                return ref
        raise TransactionFailed("Could not allocate a unique contract reference.")

    def amend_terms(self, db: Session, contract_id: uuid.UUID, changes: Dict[str, Any]) -> Contract:
        cleaned = _clean_terms(changes, AMENDABLE_TERMS)

        def attempt() -> Contract:
            contract = self.get(db, contract_id)
            if contract.locked_at is not None:
                raise ContractLocked(contract.id, cleaned.keys())
            if contract.status != ContractStatus.DRAFT:
                raise InvalidState("contract", "amend", contract.status.value)
            if self.ledger.signed_party_ids(db, contract.id):
                raise InvalidState(
                    "contract", "amend", contract.status.value,
                    message="Terms cannot change once a party has signed.",
                )
            if cleaned:
                compare_and_swap(db, contract, values={**cleaned, "updated_at": self.clock.now()})
                db.commit()
            return contract

        return self._run(db, attempt, "amend_terms", contract_id)

    # ─────────────────────────────────────────────
    # SIGNATURES
    # ─────────────────────────────────────────────

    def record_signature(
        self,
        db: Session,
        contract_id: uuid.UUID,
        party_id: str,
        signature_hash: Optional[str] = None,
        metadata: Optional[SignatureMetadata] = None,
    ) -> Contract:
        """
        Appends party_id's signature. The second signature moves the contract
        to SIGNED and starts the retraction window.
        """
        metadata = metadata or SignatureMetadata()

        def attempt() -> Contract:
            contract = self.get(db, contract_id)
            role = role_of(contract, party_id)
            if role is None:
                raise InvalidParty(contract.id, party_id)
            if self.ledger.has_signed(db, contract.id, party_id):
                raise AlreadySigned(contract.id, party_id)
            if contract.status != ContractStatus.DRAFT:
                raise InvalidState("contract", "sign", contract.status.value)

            now = self.clock.now()
            try:
                self.ledger.record(
                    db,
                    contract=contract,
                    party_id=party_id,
                    role=role,
                    signature_hash=signature_hash,
                    signed_at=now,
                    metadata=metadata,
                )
            except IntegrityError:
                # the other request for the same party won the insert
                db.rollback()
                raise AlreadySigned(contract_id, party_id)

            signed = self.ledger.signed_party_ids(db, contract.id)
            parties = set(contract.party_ids())
            quorum = parties <= signed

            # bumps version even without quorum so concurrent signers serialise here
            values: Dict[str, Any] = {"updated_at": now}
            if quorum:
                values.update(status=ContractStatus.SIGNED, signature_complete_at=now)
            compare_and_swap(db, contract, values=values)

            if quorum:
                enqueue_notification(
                    db,
                    NotificationEvent.CONTRACT_SIGNED,
                    contract_payload(contract, retraction_hours=self.settings.retraction_hours),
                    contract.party_ids(),
                )
            else:
                enqueue_notification(
                    db,
                    NotificationEvent.SIGNATURE_RECORDED,
                    contract_payload(contract, signed_by=party_id, signer_role=role.value),
                    parties - signed,
                )
            db.commit()
            return contract

        contract = self._run(db, attempt, "record_signature", contract_id)
        logger.info(
            "signature recorded",
            extra={"contract_id": str(contract.id), "party_id": party_id, "status": contract.status.value},
        )
        return contract

    # ─────────────────────────────────────────────
    # TRANSITIONS
    # ─────────────────────────────────────────────

    def cancel(self, db: Session, contract_id: uuid.UUID, reason: Optional[str] = None) -> Contract:
        """
        Retraction inside the window. The contract, its held payment and the
        notifications commit together or not at all.
        """

        def attempt() -> Contract:
            contract = self.get(db, contract_id)
            if contract.status != ContractStatus.SIGNED:
                raise InvalidState("contract", "cancel", contract.status.value)
            now = self.clock.now()
            if not self._inside_window(db, contract, now):
                raise RetractionWindowExpired(contract.id, self.settings.retraction_hours)

            try:
                compare_and_swap(db, contract, values={
                    "status": ContractStatus.CANCELLED,
                    "cancelled_at": now,
                    "cancellation_reason": reason,
                    "updated_at": now,
                })
                refund_reason = f"Contract {contract.reference} cancelled during the retraction period."
                for p in self._open_payments(db, contract.id):
                    if p.status == PaymentStatus.IN_ESCROW:
                        self.escrow.apply_refund(db, p, reason=refund_reason, now=now)
                    else:
                        self.escrow.apply_failure(db, p, reason=refund_reason, now=now)
                enqueue_notification(
                    db,
                    NotificationEvent.CONTRACT_CANCELLED,
                    contract_payload(contract, reason=reason),
                    contract.party_ids(),
                )
                db.commit()
            except SQLAlchemyError as exc:
                db.rollback()
                logger.error(
                    "cancel transaction failed",
                    extra={"contract_id": str(contract_id), "integrity_alert": True},
                    exc_info=True,
                )
                raise TransactionFailed(f"Cancellation of contract {contract_id} failed: {exc}") from exc
            return contract

        contract = self._run(db, attempt, "cancel", contract_id)
        logger.info("contract cancelled", extra={"contract_id": str(contract.id)})
        return contract

    def activate(self, db: Session, contract_id: uuid.UUID) -> Contract:
        def attempt() -> Contract:
            contract = self.get(db, contract_id)
            if contract.status == ContractStatus.ACTIVE:
                return contract
            if contract.status != ContractStatus.SIGNED:
                raise InvalidState("contract", "activate", contract.status.value)
            now = self.clock.now()
            if self._inside_window(db, contract, now):
                raise InvalidState(
                    "contract", "activate", contract.status.value,
                    message=f"The {self.settings.retraction_hours}h retraction period is still running.",
                )

            compare_and_swap(db, contract, values={
                "status": ContractStatus.ACTIVE,
                "start_date": now,
                "planned_end_date": add_months(now, contract.duration_months),
                "updated_at": now,
            })
            enqueue_notification(
                db, NotificationEvent.CONTRACT_ACTIVATED, contract_payload(contract), contract.party_ids()
            )
            db.commit()
            logger.info("contract activated", extra={"contract_id": str(contract.id)})
            return contract

        return self._run(db, attempt, "activate", contract_id)

    def lock(self, db: Session, contract_id: uuid.UUID) -> Contract:
        """Freezes terms and parties and seals the signatures. Safe to repeat."""

        def attempt() -> Contract:
            contract = self.get(db, contract_id)
            if contract.locked_at is not None:
                return contract
            if contract.status not in (ContractStatus.SIGNED, ContractStatus.ACTIVE):
                raise InvalidState("contract", "lock", contract.status.value)
            if not self.ledger.has_quorum(db, contract):
                raise InvalidState(
                    "contract", "lock", contract.status.value,
                    message="Both parties must sign before the contract is locked.",
                )

            now = self.clock.now()
            seal = seal_digest(
                str(contract.id),
                contract.reference,
                [s.signature_hash for s in self.ledger.signatures(db, contract.id)],
            )
            compare_and_swap(db, contract, values={
                "is_locked": True,
                "locked_at": now,
                "seal_hash": seal,
                "updated_at": now,
            })
            enqueue_notification(
                db, NotificationEvent.CONTRACT_LOCKED, contract_payload(contract, seal_hash=seal), contract.party_ids()
            )
            db.commit()
            logger.info("contract locked", extra={"contract_id": str(contract.id)})
            return contract

        return self._run(db, attempt, "lock", contract_id)

    def verify_seal(self, db: Session, contract_id: uuid.UUID) -> bool:
        contract = self.get(db, contract_id)
        if not contract.seal_hash:
            return False
        signatures = self.ledger.signatures(db, contract.id)
        expected = seal_digest(str(contract.id), contract.reference, [s.signature_hash for s in signatures])
        return expected == contract.seal_hash

    def terminate(self, db: Session, contract_id: uuid.UUID, reason: Optional[str] = None) -> Contract:
        def attempt() -> Contract:
            contract = self.get(db, contract_id)
            if contract.status != ContractStatus.ACTIVE:
                raise InvalidState("contract", "terminate", contract.status.value)
            now = self.clock.now()
            compare_and_swap(db, contract, values={
                "status": ContractStatus.TERMINATED,
                "end_date": now,
                "updated_at": now,
            })
            enqueue_notification(
                db,
                NotificationEvent.CONTRACT_TERMINATED,
                contract_payload(contract, reason=reason),
                contract.party_ids(),
            )
            db.commit()
            logger.info("contract terminated", extra={"contract_id": str(contract.id)})
            return contract

        return self._run(db, attempt, "terminate", contract_id)

    def renew(self, db: Session, old_contract_id: uuid.UUID, overrides: Optional[Dict[str, Any]] = None) -> Contract:
        """
        Terminates the old contract, then drafts its successor. The two steps
        are separate transactions; if the second fails the old contract stays
        TERMINATED and RenewalFailed tells the caller to retry the draft.
        """
        overrides = _clean_terms(overrides or {}, RENEWAL_OVERRIDES)
        old = self.terminate(db, old_contract_id, reason="renewal")
        try:
            return self.create_renewal_draft(db, old.id, overrides)
        except (LifecycleError, SQLAlchemyError, ValueError) as exc:
            db.rollback()
            logger.error(
                "renewal draft failed after termination",
                extra={"contract_id": str(old.id)},
                exc_info=True,
            )
            raise RenewalFailed(old.id, str(exc)) from exc

    def create_renewal_draft(
        self,
        db: Session,
        old_contract_id: uuid.UUID,
        overrides: Optional[Dict[str, Any]] = None,
    ) -> Contract:
        overrides = _clean_terms(overrides or {}, RENEWAL_OVERRIDES)
        old = self.get(db, old_contract_id)
        if old.status != ContractStatus.TERMINATED:
            raise InvalidState("contract", "renew", old.status.value)

        existing = db.execute(
            select(Contract).where(Contract.renewed_from_id == old.id)
        ).scalars().first()
        if existing is not None:
            return existing

        terms = {
            "contract_type": old.contract_type,
            "rent_amount": old.rent_amount,
            "deposit_amount": old.deposit_amount,
            "duration_months": old.duration_months,
            "special_conditions": old.special_conditions,
        }
        terms.update(overrides)

        new = self.create_draft(
            db,
            owner_id=old.owner_id,
            tenant_id=old.tenant_id,
            listing_id=old.listing_id,
            renewed_from_id=old.id,
            commit=False,
            **terms,
        )
        enqueue_notification(
            db,
            NotificationEvent.CONTRACT_RENEWED,
            contract_payload(new, renewed_from=str(old.id), previous_reference=old.reference),
            new.party_ids(),
        )
        db.commit()
        db.refresh(new)
        logger.info("contract renewed", extra={"contract_id": str(new.id), "renewed_from": str(old.id)})
        return new

    def archive(self, db: Session, contract_id: uuid.UUID) -> Contract:
        def attempt() -> Contract:
            contract = self.get(db, contract_id)
            if contract.archived_at is not None:
                return contract
            if contract.status not in (ContractStatus.TERMINATED, ContractStatus.CANCELLED):
                raise InvalidState("contract", "archive", contract.status.value)
            now = self.clock.now()
            compare_and_swap(db, contract, values={"archived_at": now, "updated_at": now})
            db.commit()
            return contract

        return self._run(db, attempt, "archive", contract_id)

    # ─────────────────────────────────────────────
    # SWEEP SUPPORT
    # ─────────────────────────────────────────────

    def mark_reminder_sent(self, db: Session, contract_id: uuid.UUID) -> bool:
        """
        Queues the retraction reminder once per contract. Returns False when
        the contract is no longer eligible.
        """

        def attempt() -> bool:
            contract = self.get(db, contract_id)
            now = self.clock.now()
            if contract.retraction_reminder_sent_at is not None or not self._inside_window(db, contract, now):
                return False
            seconds_left = self.retraction_seconds_remaining(db, contract.id) or 0
            compare_and_swap(db, contract, values={"retraction_reminder_sent_at": now, "updated_at": now})
            enqueue_notification(
                db,
                NotificationEvent.RETRACTION_REMINDER,
                contract_payload(contract, hours_remaining=round(seconds_left / 3600, 1)),
                contract.party_ids(),
            )
            db.commit()
            return True

        return run_with_cas_retry(
            db, attempt, attempts=self.settings.cas_max_retries, operation="retraction_reminder", entity_id=contract_id
        )

    # ─────────────────────────────────────────────
    # HELPERS
    # ─────────────────────────────────────────────

    def _open_payments(self, db: Session, contract_id: uuid.UUID) -> List[Payment]:
        return list(
            db.execute(
                select(Payment).where(
                    Payment.contract_id == contract_id,
                    Payment.status.in_([PaymentStatus.PENDING, PaymentStatus.IN_ESCROW]),
                )
            ).scalars().all()
        )

    def _run(self, db: Session, fn: Callable[[], Contract], operation: str, contract_id: Any) -> Contract:
        contract = run_with_cas_retry(
            db, fn, attempts=self.settings.cas_max_retries, operation=operation, entity_id=contract_id
        )
        db.refresh(contract)
        return contract
