#estate_contracts/models/contract_signature.py
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import ForeignKey, Index, String, Uuid, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column, relationship

from estate_contracts.db.base import Base
from estate_contracts.db.types import UTCDateTime, closed_enum
from estate_contracts.models.enums import PartyRole


class ContractSignature(Base):
    """
    One party's signature on a contract.

    Append-only: created once per (contract, party), never updated or deleted.
    """

    __tablename__ = "contract_signatures"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)

    contract_id: Mapped[uuid.UUID] = mapped_column(
        Uuid,
        ForeignKey("contracts.id", ondelete="RESTRICT"),
        nullable=False,
    )
    party_id: Mapped[str] = mapped_column(String(64), nullable=False)
    party_role: Mapped[PartyRole] = mapped_column(closed_enum(PartyRole, length=16), nullable=False)

    signature_hash: Mapped[str] = mapped_column(String(128), nullable=False)
    ip_address: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    user_agent: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    signed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    contract = relationship("Contract", back_populates="signatures")

    __table_args__ = (
        UniqueConstraint("contract_id", "party_id", name="uq_contract_signatures_party"),
        Index("ix_contract_signatures_contract", "contract_id"),
    )
