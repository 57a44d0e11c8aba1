#estate_contracts/models/payment.py
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import Optional

from sqlalchemy import (
    CheckConstraint,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    func,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from estate_contracts.db.base import Base
from estate_contracts.db.types import UTCDateTime, closed_enum
from estate_contracts.models.enums import PaymentMethod, PaymentStatus


class Payment(Base):
    """
    Deposit / rent / commission payment held in escrow for a contract.

    COMPLETE, REFUNDED and FAILED rows are history: no transition leaves them.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reference: Mapped[str] = mapped_column(String(40), nullable=False, unique=True)

    contract_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("contracts.id", ondelete="RESTRICT"), nullable=True
    )
    payer_id: Mapped[str] = mapped_column(String(64), nullable=False)
    beneficiary_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Amount breakdown
    rent_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    deposit_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    commission_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)

    method: Mapped[PaymentMethod] = mapped_column(closed_enum(PaymentMethod, length=16), nullable=False)
    external_transaction_id: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    status: Mapped[PaymentStatus] = mapped_column(
        closed_enum(PaymentStatus, length=16),
        nullable=False,
        default=PaymentStatus.PENDING,
        server_default=text(f"'{PaymentStatus.PENDING.value}'"),
    )

    escrow_started_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    escrow_expires_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    escrow_released_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    date_validation: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default=text("1"))

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())

    contract = relationship("Contract")

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="ck_payments_total_non_negative"),
        Index("ix_payments_status_escrow_expires", "status", "escrow_expires_at"),
        Index("ix_payments_contract", "contract_id"),
        # at most one live payment per contract; FAILED attempts free the slot
        Index(
            "uq_payments_contract_live",
            "contract_id",
            unique=True,
            postgresql_where=text("status <> 'FAILED'"),
            sqlite_where=text("status <> 'FAILED'"),
        ),
    )

    def party_ids(self) -> list[str]:
        return [self.payer_id, self.beneficiary_id]
