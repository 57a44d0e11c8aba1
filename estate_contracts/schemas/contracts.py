from __future__ import annotations

from decimal import Decimal
from typing import Dict, List, Optional

from pydantic import BaseModel, Field

from estate_contracts.models.enums import ContractStatus, ContractType, PartyRole


class ContractCreateRequest(BaseModel):
    """
    Owner drafts a contract for a listing.
    ownerId is only honoured for administrators; otherwise the caller is the owner.
    """
    tenantId: str = Field(..., min_length=1, max_length=64)
    contractType: ContractType
    rentAmount: Decimal = Field(..., ge=0)
    depositAmount: Decimal = Field(Decimal("0"), ge=0)
    durationMonths: int = Field(12, ge=1, le=1200)
    listingId: Optional[str] = Field(None, max_length=64)
    specialConditions: Optional[str] = None
    ownerId: Optional[str] = Field(None, max_length=64)


class TermsPatchRequest(BaseModel):
    rentAmount: Optional[Decimal] = Field(None, ge=0)
    depositAmount: Optional[Decimal] = Field(None, ge=0)
    durationMonths: Optional[int] = Field(None, ge=1, le=1200)
    specialConditions: Optional[str] = None

    def to_changes(self) -> Dict[str, object]:
        mapping = {
            "rentAmount": "rent_amount",
            "depositAmount": "deposit_amount",
            "durationMonths": "duration_months",
            "specialConditions": "special_conditions",
        }
        data = self.model_dump(exclude_unset=True)
        return {mapping[k]: v for k, v in data.items() if k in mapping}


class RenewRequest(TermsPatchRequest):
    contractType: Optional[ContractType] = None

    def to_changes(self) -> Dict[str, object]:
        changes = super().to_changes()
        if self.contractType is not None:
            changes["contract_type"] = self.contractType
        return changes


class SignatureRequest(BaseModel):
    # computed server-side when absent
    signatureHash: Optional[str] = Field(None, min_length=16, max_length=128)


class ReasonRequest(BaseModel):
    reason: Optional[str] = Field(None, max_length=2000)


class SignatureResponse(BaseModel):
    partyId: str
    partyRole: PartyRole
    signatureHash: str
    signedAtIso: str
    ipAddress: Optional[str] = None


class ContractResponse(BaseModel):
    contractId: str
    reference: str
    contractType: ContractType
    status: ContractStatus
    ownerId: str
    tenantId: str
    listingId: Optional[str] = None
    rentAmount: Decimal
    depositAmount: Decimal
    durationMonths: int
    specialConditions: Optional[str] = None

    signatureCompleteAtIso: Optional[str] = None
    startDateIso: Optional[str] = None
    plannedEndDateIso: Optional[str] = None
    endDateIso: Optional[str] = None
    cancelledAtIso: Optional[str] = None
    cancellationReason: Optional[str] = None

    isLocked: bool
    lockedAtIso: Optional[str] = None
    sealHash: Optional[str] = None
    renewedFromId: Optional[str] = None
    version: int

    signatures: List[SignatureResponse] = []


class RetractionResponse(BaseModel):
    contractId: str
    status: ContractStatus
    canRetract: bool
    secondsRemaining: Optional[int] = None
    retractionHours: int


class ContractListResponse(BaseModel):
    partyId: str
    contracts: List[ContractResponse]
