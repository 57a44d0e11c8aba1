# Importing the package registers every table on Base.metadata
from estate_contracts.models.contract import Contract
from estate_contracts.models.contract_signature import ContractSignature
from estate_contracts.models.notification_outbox import NotificationOutboxEntry
from estate_contracts.models.payment import Payment

__all__ = [
    "Contract",
    "ContractSignature",
    "NotificationOutboxEntry",
    "Payment",
]
