from __future__ import annotations

from typing import Any, Dict, Optional


class LifecycleError(Exception):
    """Base class for every error raised by the lifecycle engines."""

    code = "lifecycle_error"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message}


# ─────────────────────────────────────────────
# LOOKUP
# ─────────────────────────────────────────────

class NotFound(LifecycleError, LookupError):
    code = "not_found"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} not found.")
        self.entity = entity
        self.entity_id = entity_id


class ContractNotFound(NotFound):
    def __init__(self, contract_id: Any):
        super().__init__("Contract", contract_id)


class PaymentNotFound(NotFound):
    def __init__(self, payment_id: Any):
        super().__init__("Payment", payment_id)


# ─────────────────────────────────────────────
# VALIDATION (recovered by the caller)
# ─────────────────────────────────────────────

class InvalidState(LifecycleError, ValueError):
    code = "invalid_state"

    def __init__(self, entity: str, attempted: str, current: str, message: Optional[str] = None):
        super().__init__(
            message or f"Cannot {attempted} {entity} while it is {current}."
        )
        self.entity = entity
        self.attempted = attempted
        self.current = current

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data.update({"attempted": self.attempted, "current": self.current})
        return data


class RetractionWindowExpired(InvalidState):
    code = "retraction_window_expired"

    def __init__(self, contract_id: Any, retraction_hours: int):
        super().__init__(
            "contract",
            attempted="cancel",
            current="SIGNED",
            message=(
                f"The {retraction_hours}h retraction period of contract {contract_id} "
                "has expired; it can no longer be cancelled."
            ),
        )
        self.contract_id = contract_id


class InvalidParty(LifecycleError, ValueError):
    code = "invalid_party"

    def __init__(self, contract_id: Any, party_id: str):
        super().__init__(f"User {party_id} is not a party to contract {contract_id}.")
        self.contract_id = contract_id
        self.party_id = party_id


class AlreadySigned(LifecycleError, ValueError):
    code = "already_signed"

    def __init__(self, contract_id: Any, party_id: str):
        super().__init__(f"User {party_id} has already signed contract {contract_id}.")
        self.contract_id = contract_id
        self.party_id = party_id


class ContractLocked(LifecycleError, ValueError):
    code = "locked"

    def __init__(self, contract_id: Any, fields=()):
        detail = f" (fields: {', '.join(sorted(fields))})" if fields else ""
        super().__init__(f"Contract {contract_id} is locked and cannot be modified{detail}.")
        self.contract_id = contract_id
        self.fields = tuple(fields)


# ─────────────────────────────────────────────
# CONCURRENCY / INTEGRITY
# ─────────────────────────────────────────────

class ConcurrentModification(LifecycleError):
    code = "concurrent_modification"

    def __init__(self, entity: str, entity_id: Any):
        super().__init__(f"{entity} {entity_id} was modified concurrently; retry.")
        self.entity = entity
        self.entity_id = entity_id


class TransactionFailed(LifecycleError):
    code = "transaction_failed"


class RenewalFailed(LifecycleError):
    """The old contract is terminated but the renewal draft was not created."""

    code = "renewal_failed"

    def __init__(self, old_contract_id: Any, reason: str):
        super().__init__(
            f"Contract {old_contract_id} was terminated but its renewal could not be created: {reason}"
        )
        self.old_contract_id = old_contract_id
