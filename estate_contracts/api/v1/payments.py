# estate_contracts/api/v1/payments.py
from __future__ import annotations

from decimal import Decimal
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query
from sqlalchemy.orm import Session

from estate_contracts.api.deps import (
    get_dispatcher,
    get_escrow_engine,
    get_session_factory,
    parse_uuid,
)
from estate_contracts.core.auth_deps import Principal, get_current_principal, require_admin
from estate_contracts.db.session import get_db
from estate_contracts.models.enums import CommissionType
from estate_contracts.models.payment import Payment
from estate_contracts.schemas.contracts import ReasonRequest
from estate_contracts.schemas.payments import (
    CommissionResponse,
    ConfirmRequest,
    EscrowRequest,
    EscrowStatusResponse,
    PaymentCreateRequest,
    PaymentResponse,
)
from estate_contracts.services.escrow_lifecycle import (
    EscrowLifecycleEngine,
    PaymentAmounts,
    calculate_commission,
    resolve_commission_type,
)
from estate_contracts.services.notifications import NotificationDispatcher, drain_outbox

router = APIRouter(prefix="/payments", tags=["payments"])


def _iso(dt):
    return dt.isoformat() if dt else None


def _to_resp(p: Payment) -> dict:
    return {
        "paymentId": str(p.id),
        "reference": p.reference,
        "contractId": str(p.contract_id) if p.contract_id else None,
        "payerId": p.payer_id,
        "beneficiaryId": p.beneficiary_id,
        "rentAmount": p.rent_amount,
        "depositAmount": p.deposit_amount,
        "commissionAmount": p.commission_amount,
        "totalAmount": p.total_amount,
        "method": p.method,
        "status": p.status,
        "externalTransactionId": p.external_transaction_id,
        "escrowStartedAtIso": _iso(p.escrow_started_at),
        "escrowExpiresAtIso": _iso(p.escrow_expires_at),
        "escrowReleasedAtIso": _iso(p.escrow_released_at),
        "refundedAtIso": _iso(p.refunded_at),
        "validatedAtIso": _iso(p.date_validation),
        "refundReason": p.refund_reason,
        "failureReason": p.failure_reason,
        "version": p.version,
    }


def _load_for(db: Session, engine: EscrowLifecycleEngine, raw_id: str, principal: Principal) -> Payment:
    payment = engine.get(db, parse_uuid(raw_id, "paymentId"))
    if not principal.is_admin and principal.party_id not in payment.party_ids():
        raise HTTPException(status_code=403, detail="Not a party to this payment.")
    return payment


# ─────────────────────────────────────────────
# READS
# ─────────────────────────────────────────────

@router.get("/commission", response_model=CommissionResponse)
async def get_commission(
    amount: Decimal = Query(..., ge=0),
    commissionType: str = Query(CommissionType.LOCATION.value),
):
    """Preview; accepts a commission or contract type, unknown types are priced as rentals."""
    ctype = resolve_commission_type(commissionType)
    return {"amount": amount, "commissionType": ctype, "commission": calculate_commission(amount, ctype)}


@router.get("/{paymentId}", response_model=PaymentResponse)
async def get_payment(
    paymentId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: EscrowLifecycleEngine = Depends(get_escrow_engine),
):
    return _to_resp(_load_for(db, engine, paymentId, principal))


@router.get("/{paymentId}/escrow", response_model=EscrowStatusResponse)
async def get_escrow_status(
    paymentId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: EscrowLifecycleEngine = Depends(get_escrow_engine),
):
    payment = _load_for(db, engine, paymentId, principal)
    st = engine.escrow_status(db, payment.id)
    return {
        "paymentId": str(st["payment_id"]),
        "status": st["status"],
        "inEscrow": st["in_escrow"],
        "escrowStartedAtIso": _iso(st["escrow_started_at"]),
        "escrowExpiresAtIso": _iso(st["escrow_expires_at"]),
        "hoursRemaining": st["hours_remaining"],
        "expired": st["expired"],
    }


# ─────────────────────────────────────────────
# WRITES
# ─────────────────────────────────────────────

@router.post("", response_model=PaymentResponse, status_code=201)
async def create_payment(
    body: PaymentCreateRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: EscrowLifecycleEngine = Depends(get_escrow_engine),
):
    contract_id = parse_uuid(body.contractId, "contractId") if body.contractId else None
    amounts = None
    if body.has_explicit_amounts:
        amounts = PaymentAmounts(
            rent_amount=body.rentAmount or Decimal("0"),
            deposit_amount=body.depositAmount or Decimal("0"),
            commission_amount=body.commissionAmount or Decimal("0"),
        )
    row = engine.create(
        db,
        contract_id=contract_id,
        payer_id=principal.party_id,
        beneficiary_id=body.beneficiaryId,
        amounts=amounts,
        method=body.method,
        reference=body.reference,
    )
    return _to_resp(row)


@router.post("/{paymentId}/escrow", response_model=PaymentResponse)
async def place_in_escrow(
    paymentId: str,
    background: BackgroundTasks,
    body: Optional[EscrowRequest] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: EscrowLifecycleEngine = Depends(get_escrow_engine),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    session_factory=Depends(get_session_factory),
):
    payment = _load_for(db, engine, paymentId, principal)
    row = engine.place_in_escrow(db, payment.id, hold_hours=body.holdHours if body else None)
    background.add_task(drain_outbox, session_factory, dispatcher)
    return _to_resp(row)


@router.post("/{paymentId}/confirm", response_model=PaymentResponse)
async def confirm_payment(
    paymentId: str,
    background: BackgroundTasks,
    body: Optional[ConfirmRequest] = None,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
    engine: EscrowLifecycleEngine = Depends(get_escrow_engine),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    session_factory=Depends(get_session_factory),
):
    row = engine.confirm(
        db,
        parse_uuid(paymentId, "paymentId"),
        external_txn_id=body.externalTransactionId if body else None,
    )
    background.add_task(drain_outbox, session_factory, dispatcher)
    return _to_resp(row)


@router.post("/{paymentId}/release", response_model=PaymentResponse)
async def release_payment(
    paymentId: str,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
    engine: EscrowLifecycleEngine = Depends(get_escrow_engine),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    session_factory=Depends(get_session_factory),
):
    row = engine.release_from_escrow(db, parse_uuid(paymentId, "paymentId"))
    background.add_task(drain_outbox, session_factory, dispatcher)
    return _to_resp(row)


@router.post("/{paymentId}/refund", response_model=PaymentResponse)
async def refund_payment(
    paymentId: str,
    background: BackgroundTasks,
    body: Optional[ReasonRequest] = None,
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
    engine: EscrowLifecycleEngine = Depends(get_escrow_engine),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    session_factory=Depends(get_session_factory),
):
    row = engine.refund(db, parse_uuid(paymentId, "paymentId"), reason=body.reason if body else None)
    background.add_task(drain_outbox, session_factory, dispatcher)
    return _to_resp(row)


@router.post("/{paymentId}/fail", response_model=PaymentResponse)
async def fail_payment(
    paymentId: str,
    background: BackgroundTasks,
    body: Optional[ReasonRequest] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: EscrowLifecycleEngine = Depends(get_escrow_engine),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    session_factory=Depends(get_session_factory),
):
    payment = _load_for(db, engine, paymentId, principal)
    if not principal.is_admin and principal.party_id != payment.payer_id:
        raise HTTPException(status_code=403, detail="Only the payer may abandon a payment.")
    row = engine.fail(db, payment.id, reason=body.reason if body else None)
    background.add_task(drain_outbox, session_factory, dispatcher)
    return _to_resp(row)
