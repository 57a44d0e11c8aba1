#estate_contracts/models/enums.py
from __future__ import annotations
from enum import Enum


class ContractType(str, Enum):
    RESIDENTIAL_LEASE = "BAIL_LOCATION_RESIDENTIEL"
    COMMERCIAL_LEASE = "BAIL_LOCATION_COMMERCIAL"
    LAND_SALE_PROMISE = "PROMESSE_VENTE_TERRAIN"
    MANAGEMENT_MANDATE = "MANDAT_GESTION"
    CAUTION_ATTESTATION = "ATTESTATION_CAUTION"


class ContractStatus(str, Enum):
    DRAFT = "DRAFT"
    SIGNED = "SIGNED"
    ACTIVE = "ACTIVE"
    TERMINATED = "TERMINATED"
    CANCELLED = "CANCELLED"


class PartyRole(str, Enum):
    OWNER = "OWNER"
    TENANT = "TENANT"


class PaymentStatus(str, Enum):
    PENDING = "PENDING"
    IN_ESCROW = "IN_ESCROW"
    COMPLETE = "COMPLETE"
    FAILED = "FAILED"
    REFUNDED = "REFUNDED"


class PaymentMethod(str, Enum):
    ORANGE_MONEY = "ORANGE_MONEY"
    MTN_MOMO = "MTN_MOMO"
    VIREMENT = "VIREMENT"
    ESPECES = "ESPECES"


class CommissionType(str, Enum):
    LOCATION = "location"
    VENTE_TERRAIN = "vente_terrain"
    VENTE_MAISON = "vente_maison"


class NotificationEvent(str, Enum):
    # contracts
    SIGNATURE_RECORDED = "SIGNATURE_RECORDED"
    CONTRACT_SIGNED = "CONTRACT_SIGNED"
    CONTRACT_CANCELLED = "CONTRACT_CANCELLED"
    CONTRACT_ACTIVATED = "CONTRACT_ACTIVATED"
    CONTRACT_LOCKED = "CONTRACT_LOCKED"
    CONTRACT_TERMINATED = "CONTRACT_TERMINATED"
    CONTRACT_RENEWED = "CONTRACT_RENEWED"
    RETRACTION_REMINDER = "RETRACTION_REMINDER"

    # payments
    PAYMENT_IN_ESCROW = "PAYMENT_IN_ESCROW"
    PAYMENT_COMPLETED = "PAYMENT_COMPLETED"
    PAYMENT_REFUNDED = "PAYMENT_REFUNDED"
    PAYMENT_FAILED = "PAYMENT_FAILED"


class OutboxStatus(str, Enum):
    PENDING = "PENDING"
    DELIVERED = "DELIVERED"
    DEAD = "DEAD"


class PrincipalRole(str, Enum):
    USER = "USER"
    ADMIN = "ADMIN"
