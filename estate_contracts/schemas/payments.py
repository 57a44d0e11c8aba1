from __future__ import annotations

from decimal import Decimal
from typing import Optional

from pydantic import BaseModel, Field, model_validator

from estate_contracts.models.enums import CommissionType, PaymentMethod, PaymentStatus


class PaymentCreateRequest(BaseModel):
    """
    Payer opens a payment. Without explicit amounts the breakdown is derived
    from the linked contract (rent + deposit + commission).
    """
    contractId: Optional[str] = None
    beneficiaryId: str = Field(..., min_length=1, max_length=64)
    method: PaymentMethod
    rentAmount: Optional[Decimal] = Field(None, ge=0)
    depositAmount: Optional[Decimal] = Field(None, ge=0)
    commissionAmount: Optional[Decimal] = Field(None, ge=0)
    reference: Optional[str] = Field(None, max_length=40)

    @model_validator(mode="after")
    def _amounts_or_contract(self):
        explicit = any(v is not None for v in (self.rentAmount, self.depositAmount, self.commissionAmount))
        if not explicit and not self.contractId:
            raise ValueError("Either contractId or explicit amounts are required.")
        return self

    @property
    def has_explicit_amounts(self) -> bool:
        return any(v is not None for v in (self.rentAmount, self.depositAmount, self.commissionAmount))


class EscrowRequest(BaseModel):
    holdHours: Optional[int] = Field(None, ge=1, le=24 * 90)


class ConfirmRequest(BaseModel):
    externalTransactionId: Optional[str] = Field(None, max_length=128)


class PaymentResponse(BaseModel):
    paymentId: str
    reference: str
    contractId: Optional[str] = None
    payerId: str
    beneficiaryId: str
    rentAmount: Decimal
    depositAmount: Decimal
    commissionAmount: Decimal
    totalAmount: Decimal
    method: PaymentMethod
    status: PaymentStatus
    externalTransactionId: Optional[str] = None

    escrowStartedAtIso: Optional[str] = None
    escrowExpiresAtIso: Optional[str] = None
    escrowReleasedAtIso: Optional[str] = None
    refundedAtIso: Optional[str] = None
    validatedAtIso: Optional[str] = None
    refundReason: Optional[str] = None
    failureReason: Optional[str] = None
    version: int


class EscrowStatusResponse(BaseModel):
    paymentId: str
    status: PaymentStatus
    inEscrow: bool
    escrowStartedAtIso: Optional[str] = None
    escrowExpiresAtIso: Optional[str] = None
    hoursRemaining: Optional[float] = None
    expired: bool


class CommissionResponse(BaseModel):
    amount: Decimal
    commissionType: CommissionType
    commission: Decimal
