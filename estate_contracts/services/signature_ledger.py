# estate_contracts/services/signature_ledger.py
from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from estate_contracts.core.hashing import signature_digest
from estate_contracts.models.contract import Contract
from estate_contracts.models.contract_signature import ContractSignature
from estate_contracts.models.enums import PartyRole


@dataclass(frozen=True)
class SignatureMetadata:
    """Evidence captured alongside a signature."""

    ip_address: Optional[str] = None
    user_agent: Optional[str] = None


def role_of(contract: Contract, party_id: str) -> Optional[PartyRole]:
    if party_id == contract.owner_id:
        return PartyRole.OWNER
    if party_id == contract.tenant_id:
        return PartyRole.TENANT
    return None


class SignatureLedger:
    """
    Append-only record of who signed which contract.

    Uniqueness per (contract, party) is enforced by the table's unique
    constraint; callers translate the IntegrityError.
    """

    def signatures(self, db: Session, contract_id: uuid.UUID) -> List[ContractSignature]:
        return list(
            db.execute(
                select(ContractSignature)
                .where(ContractSignature.contract_id == contract_id)
                .order_by(ContractSignature.signed_at)
            ).scalars().all()
        )

    def has_signed(self, db: Session, contract_id: uuid.UUID, party_id: str) -> bool:
        found = db.execute(
            select(ContractSignature.id).where(
                ContractSignature.contract_id == contract_id,
                ContractSignature.party_id == party_id,
            )
        ).first()
        return found is not None

    def signed_party_ids(self, db: Session, contract_id: uuid.UUID) -> set[str]:
        return set(
            db.execute(
                select(ContractSignature.party_id).where(ContractSignature.contract_id == contract_id)
            ).scalars().all()
        )

    def has_quorum(self, db: Session, contract: Contract) -> bool:
        # Quorum: owner and tenant have both signed
        return set(contract.party_ids()) <= self.signed_party_ids(db, contract.id)

    def completed_at(self, db: Session, contract_id: uuid.UUID) -> Optional[datetime]:
        """Time of the latest signature; the retraction window runs from here."""
        return db.execute(
            select(func.max(ContractSignature.signed_at)).where(ContractSignature.contract_id == contract_id)
        ).scalar_one_or_none()

    def record(
        self,
        db: Session,
        *,
        contract: Contract,
        party_id: str,
        role: PartyRole,
        signature_hash: Optional[str],
        signed_at: datetime,
        metadata: SignatureMetadata,
    ) -> ContractSignature:
        """Adds a signature row to the current transaction. Does not commit."""
        row = ContractSignature(
            contract_id=contract.id,
            party_id=party_id,
            party_role=role,
            signature_hash=signature_hash or self.compute_hash(
                contract, party_id=party_id, signed_at=signed_at, ip_address=metadata.ip_address
            ),
            ip_address=metadata.ip_address,
            user_agent=(metadata.user_agent or None) and metadata.user_agent[:255],
            signed_at=signed_at,
        )
        db.add(row)
        db.flush()
        return row

    @staticmethod
    def compute_hash(
        contract: Contract,
        *,
        party_id: str,
        signed_at: datetime,
        ip_address: Optional[str],
    ) -> str:
        return signature_digest(
            contract_id=str(contract.id),
            contract_reference=contract.reference,
            party_id=party_id,
            signed_at_iso=signed_at.isoformat(),
            ip_address=ip_address,
        )

    def verify(self, contract: Contract, signature: ContractSignature) -> bool:
        expected = self.compute_hash(
            contract,
            party_id=signature.party_id,
            signed_at=signature.signed_at,
            ip_address=signature.ip_address,
        )
        return expected == signature.signature_hash
