# estate_contracts/api/v1/contracts.py
from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query, Request
from sqlalchemy.orm import Session

from estate_contracts.api.deps import (
    get_contract_engine,
    get_dispatcher,
    get_session_factory,
    parse_uuid,
)
from estate_contracts.api.v1.payments import _to_resp as payment_resp
from estate_contracts.core.auth_deps import Principal, get_current_principal, require_admin
from estate_contracts.core.errors import InvalidParty
from estate_contracts.db.session import get_db
from estate_contracts.models.contract import Contract
from estate_contracts.models.enums import PartyRole
from estate_contracts.schemas.contracts import (
    ContractCreateRequest,
    ContractListResponse,
    ContractResponse,
    ReasonRequest,
    RenewRequest,
    RetractionResponse,
    SignatureRequest,
    TermsPatchRequest,
)
from estate_contracts.schemas.payments import PaymentResponse
from estate_contracts.services.contract_lifecycle import ContractLifecycleEngine
from estate_contracts.services.notifications import NotificationDispatcher, drain_outbox
from estate_contracts.services.signature_ledger import SignatureMetadata

router = APIRouter(prefix="/contracts", tags=["contracts"])


def _iso(dt):
    return dt.isoformat() if dt else None


def _to_resp(c: Contract) -> dict:
    return {
        "contractId": str(c.id),
        "reference": c.reference,
        "contractType": c.contract_type,
        "status": c.status,
        "ownerId": c.owner_id,
        "tenantId": c.tenant_id,
        "listingId": c.listing_id,
        "rentAmount": c.rent_amount,
        "depositAmount": c.deposit_amount,
        "durationMonths": c.duration_months,
        "specialConditions": c.special_conditions,
        "signatureCompleteAtIso": _iso(c.signature_complete_at),
        "startDateIso": _iso(c.start_date),
        "plannedEndDateIso": _iso(c.planned_end_date),
        "endDateIso": _iso(c.end_date),
        "cancelledAtIso": _iso(c.cancelled_at),
        "cancellationReason": c.cancellation_reason,
        "isLocked": bool(c.is_locked),
        "lockedAtIso": _iso(c.locked_at),
        "sealHash": c.seal_hash,
        "renewedFromId": str(c.renewed_from_id) if c.renewed_from_id else None,
        "version": c.version,
        "signatures": [
            {
                "partyId": s.party_id,
                "partyRole": s.party_role,
                "signatureHash": s.signature_hash,
                "signedAtIso": _iso(s.signed_at),
                "ipAddress": s.ip_address,
            }
            for s in c.signatures
        ],
    }


def _load_for(
    db: Session,
    engine: ContractLifecycleEngine,
    raw_id: str,
    principal: Principal,
    *,
    owner_only: bool = False,
) -> Contract:
    contract = engine.get(db, parse_uuid(raw_id, "contractId"))
    if principal.is_admin:
        return contract
    allowed = [contract.owner_id] if owner_only else contract.party_ids()
    if principal.party_id not in allowed:
        raise InvalidParty(contract.id, principal.party_id)
    return contract


def _drain_later(background: BackgroundTasks, session_factory, dispatcher: NotificationDispatcher) -> None:
    background.add_task(drain_outbox, session_factory, dispatcher)


# ─────────────────────────────────────────────
# READS
# ─────────────────────────────────────────────

@router.get("/mine", response_model=ContractListResponse)
async def list_my_contracts(
    role: Optional[PartyRole] = Query(None),
    includeArchived: bool = Query(False),
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ContractLifecycleEngine = Depends(get_contract_engine),
):
    rows = engine.list_for_party(db, principal.party_id, role, include_archived=includeArchived)
    return {"partyId": principal.party_id, "contracts": [_to_resp(c) for c in rows]}


@router.get("/statistics")
async def contract_statistics(
    db: Session = Depends(get_db),
    _: Principal = Depends(require_admin),
    engine: ContractLifecycleEngine = Depends(get_contract_engine),
):
    return engine.statistics(db)


@router.get("/{contractId}", response_model=ContractResponse)
async def get_contract(
    contractId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ContractLifecycleEngine = Depends(get_contract_engine),
):
    return _to_resp(_load_for(db, engine, contractId, principal))


@router.get("/{contractId}/payments", response_model=List[PaymentResponse])
async def list_contract_payments(
    contractId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ContractLifecycleEngine = Depends(get_contract_engine),
):
    contract = _load_for(db, engine, contractId, principal)
    return [payment_resp(p) for p in engine.escrow.for_contract(db, contract.id)]


@router.get("/{contractId}/retraction", response_model=RetractionResponse)
async def get_retraction_status(
    contractId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ContractLifecycleEngine = Depends(get_contract_engine),
):
    contract = _load_for(db, engine, contractId, principal)
    return {
        "contractId": str(contract.id),
        "status": contract.status,
        "canRetract": engine.can_retract(db, contract.id),
        "secondsRemaining": engine.retraction_seconds_remaining(db, contract.id),
        "retractionHours": engine.settings.retraction_hours,
    }


# ─────────────────────────────────────────────
# WRITES
# ─────────────────────────────────────────────

@router.post("", response_model=ContractResponse, status_code=201)
async def create_contract(
    body: ContractCreateRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ContractLifecycleEngine = Depends(get_contract_engine),
):
    owner_id = body.ownerId if (principal.is_admin and body.ownerId) else principal.party_id
    row = engine.create_draft(
        db,
        owner_id=owner_id,
        tenant_id=body.tenantId,
        contract_type=body.contractType,
        rent_amount=body.rentAmount,
        deposit_amount=body.depositAmount,
        duration_months=body.durationMonths,
        listing_id=body.listingId,
        special_conditions=body.specialConditions,
    )
    return _to_resp(row)


@router.patch("/{contractId}/terms", response_model=ContractResponse)
async def amend_terms(
    contractId: str,
    body: TermsPatchRequest,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ContractLifecycleEngine = Depends(get_contract_engine),
):
    contract = _load_for(db, engine, contractId, principal, owner_only=True)
    return _to_resp(engine.amend_terms(db, contract.id, body.to_changes()))


@router.post("/{contractId}/signatures", response_model=ContractResponse, status_code=201)
async def sign_contract(
    contractId: str,
    request: Request,
    background: BackgroundTasks,
    body: Optional[SignatureRequest] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ContractLifecycleEngine = Depends(get_contract_engine),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    session_factory=Depends(get_session_factory),
):
    # the caller always signs as themselves, administrators included
    metadata = SignatureMetadata(
        ip_address=request.client.host if request.client else None,
        user_agent=request.headers.get("user-agent"),
    )
    row = engine.record_signature(
        db,
        parse_uuid(contractId, "contractId"),
        principal.party_id,
        signature_hash=body.signatureHash if body else None,
        metadata=metadata,
    )
    _drain_later(background, session_factory, dispatcher)
    return _to_resp(row)


@router.post("/{contractId}/cancel", response_model=ContractResponse)
async def cancel_contract(
    contractId: str,
    background: BackgroundTasks,
    body: Optional[ReasonRequest] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ContractLifecycleEngine = Depends(get_contract_engine),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    session_factory=Depends(get_session_factory),
):
    contract = _load_for(db, engine, contractId, principal)
    row = engine.cancel(db, contract.id, reason=body.reason if body else None)
    _drain_later(background, session_factory, dispatcher)
    return _to_resp(row)


@router.post("/{contractId}/activate", response_model=ContractResponse)
async def activate_contract(
    contractId: str,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ContractLifecycleEngine = Depends(get_contract_engine),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    session_factory=Depends(get_session_factory),
):
    contract = _load_for(db, engine, contractId, principal)
    row = engine.activate(db, contract.id)
    _drain_later(background, session_factory, dispatcher)
    return _to_resp(row)


@router.post("/{contractId}/lock", response_model=ContractResponse)
async def lock_contract(
    contractId: str,
    background: BackgroundTasks,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ContractLifecycleEngine = Depends(get_contract_engine),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    session_factory=Depends(get_session_factory),
):
    contract = _load_for(db, engine, contractId, principal)
    row = engine.lock(db, contract.id)
    _drain_later(background, session_factory, dispatcher)
    return _to_resp(row)


@router.post("/{contractId}/terminate", response_model=ContractResponse)
async def terminate_contract(
    contractId: str,
    background: BackgroundTasks,
    body: Optional[ReasonRequest] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ContractLifecycleEngine = Depends(get_contract_engine),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    session_factory=Depends(get_session_factory),
):
    contract = _load_for(db, engine, contractId, principal)
    row = engine.terminate(db, contract.id, reason=body.reason if body else None)
    _drain_later(background, session_factory, dispatcher)
    return _to_resp(row)


@router.post("/{contractId}/renew", response_model=ContractResponse, status_code=201)
async def renew_contract(
    contractId: str,
    background: BackgroundTasks,
    body: Optional[RenewRequest] = None,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ContractLifecycleEngine = Depends(get_contract_engine),
    dispatcher: NotificationDispatcher = Depends(get_dispatcher),
    session_factory=Depends(get_session_factory),
):
    contract = _load_for(db, engine, contractId, principal, owner_only=True)
    row = engine.renew(db, contract.id, body.to_changes() if body else None)
    _drain_later(background, session_factory, dispatcher)
    return _to_resp(row)


@router.post("/{contractId}/archive", response_model=ContractResponse)
async def archive_contract(
    contractId: str,
    db: Session = Depends(get_db),
    principal: Principal = Depends(get_current_principal),
    engine: ContractLifecycleEngine = Depends(get_contract_engine),
):
    contract = _load_for(db, engine, contractId, principal, owner_only=True)
    return _to_resp(engine.archive(db, contract.id))
