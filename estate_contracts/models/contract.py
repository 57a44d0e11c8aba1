#estate_contracts/models/contract.py
from __future__ import annotations

import uuid
from datetime import datetime
from decimal import Decimal
from typing import List, Optional

from sqlalchemy import (
    Boolean,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    Uuid,
    event,
    func,
    inspect,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from estate_contracts.core.errors import ContractLocked
from estate_contracts.db.base import Base
from estate_contracts.db.types import UTCDateTime, closed_enum
from estate_contracts.models.enums import ContractStatus, ContractType


# Columns that become immutable once locked_at is set.
FROZEN_WHEN_LOCKED = frozenset({
    "reference",
    "contract_type",
    "listing_id",
    "owner_id",
    "tenant_id",
    "rent_amount",
    "deposit_amount",
    "duration_months",
    "special_conditions",
    "renewed_from_id",
})


class Contract(Base):
    """
    Rental / sale contract between an owner and a tenant.

    status is the single source of truth for the lifecycle and is only
    written through compare-and-swap in the lifecycle engine.
    """

    __tablename__ = "contracts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    reference: Mapped[str] = mapped_column(String(32), nullable=False, unique=True)

    contract_type: Mapped[ContractType] = mapped_column(closed_enum(ContractType), nullable=False)
    status: Mapped[ContractStatus] = mapped_column(
        closed_enum(ContractStatus, length=16),
        nullable=False,
        default=ContractStatus.DRAFT,
        server_default=text(f"'{ContractStatus.DRAFT.value}'"),
    )

    # Parties / listing are opaque references owned by other services
    listing_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    owner_id: Mapped[str] = mapped_column(String(64), nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False)

    # Terms
    rent_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    deposit_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False, default=Decimal("0"))
    duration_months: Mapped[int] = mapped_column(Integer, nullable=False, default=12)
    special_conditions: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lifecycle timestamps
    signature_complete_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    start_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    planned_end_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    end_date: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    retraction_reminder_sent_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    archived_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    # Immutability
    is_locked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default=text("false"))
    locked_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    seal_hash: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)

    renewed_from_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        Uuid, ForeignKey("contracts.id", ondelete="SET NULL"), nullable=True
    )

    # compare-and-swap counter
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1, server_default=text("1"))

    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False, server_default=func.now())

    signatures: Mapped[List["ContractSignature"]] = relationship(
        "ContractSignature",
        back_populates="contract",
        order_by="ContractSignature.signed_at",
        cascade="save-update, merge",
        passive_deletes="all",
    )

    __table_args__ = (
        Index("ix_contracts_status_signature_complete", "status", "signature_complete_at"),
        Index("ix_contracts_status_planned_end", "status", "planned_end_date"),
        Index("ix_contracts_owner", "owner_id"),
        Index("ix_contracts_tenant", "tenant_id"),
    )

    def party_ids(self) -> List[str]:
        return [self.owner_id, self.tenant_id]


@event.listens_for(Contract, "before_update")
def _reject_writes_to_locked_contract(mapper, connection, target: Contract) -> None:
    if target.locked_at is None:
        return
    state = inspect(target)
    changed = [
        name for name in FROZEN_WHEN_LOCKED
        if state.attrs[name].history.has_changes()
    ]
    if changed:
        raise ContractLocked(target.id, changed)
