from __future__ import annotations

import hashlib
import json
from typing import Any, Dict


def canonical_dumps(obj: Dict[str, Any]) -> str:
    # Deterministic JSON string: sorted keys, no whitespace
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), ensure_ascii=False, default=str)


def sha256_hex(s: str) -> str:
    return hashlib.sha256(s.encode("utf-8")).hexdigest()


def signature_digest(
    *,
    contract_id: str,
    contract_reference: str,
    party_id: str,
    signed_at_iso: str,
    ip_address: str | None,
) -> str:
    """
    SHA-256 over the facts a signature attests to.
    Recomputing it later with the stored metadata verifies the record.
    """
    return sha256_hex(canonical_dumps({
        "contract_id": contract_id,
        "contract_reference": contract_reference,
        "party_id": party_id,
        "signed_at": signed_at_iso,
        "ip_address": ip_address or "",
    }))


def seal_digest(contract_id: str, contract_reference: str, signature_hashes: list[str]) -> str:
    """Final seal applied when a contract is locked; order of signing is irrelevant."""
    return sha256_hex(canonical_dumps({
        "contract_id": contract_id,
        "contract_reference": contract_reference,
        "signatures": sorted(signature_hashes),
    }))
