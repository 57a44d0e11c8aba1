from decimal import Decimal

from sqlalchemy import select

from estate_contracts.core.security import create_access_token
from estate_contracts.models.enums import ContractType, NotificationEvent, PaymentMethod
from estate_contracts.models.notification_outbox import NotificationOutboxEntry

OWNER = "owner-1"
TENANT = "tenant-1"


def create_contract(contracts, db, **overrides):
    fields = dict(
        owner_id=OWNER,
        tenant_id=TENANT,
        contract_type=ContractType.RESIDENTIAL_LEASE,
        rent_amount=Decimal("2500000"),
        deposit_amount=Decimal("5000000"),
        duration_months=12,
        listing_id="listing-42",
    )
    fields.update(overrides)
    return contracts.create_draft(db, **fields)


def create_signed_contract(contracts, db, **overrides):
    c = create_contract(contracts, db, **overrides)
    contracts.record_signature(db, c.id, c.owner_id)
    return contracts.record_signature(db, c.id, c.tenant_id)


def create_escrowed_payment(escrow, db, contract):
    p = escrow.create(
        db,
        contract_id=contract.id,
        payer_id=contract.tenant_id,
        beneficiary_id=contract.owner_id,
        method=PaymentMethod.ORANGE_MONEY,
    )
    return escrow.place_in_escrow(db, p.id)


def outbox_events(db, event: NotificationEvent = None):
    stmt = select(NotificationOutboxEntry).order_by(NotificationOutboxEntry.created_at)
    if event is not None:
        stmt = stmt.where(NotificationOutboxEntry.event_type == event)
    return list(db.execute(stmt).scalars().all())


def bearer(party_id: str, role: str = "USER") -> dict:
    token = create_access_token(party_id, {"party_id": party_id, "role": role})
    return {"Authorization": f"Bearer {token}"}


# ─────────────────────────────────────────────
# HTTP
# ─────────────────────────────────────────────

PREFIX = "/api/v1"


def post_contract(client, headers, **overrides):
    body = {
        "tenantId": TENANT,
        "contractType": "BAIL_LOCATION_RESIDENTIEL",
        "rentAmount": "2500000",
        "depositAmount": "5000000",
        "durationMonths": 12,
        "listingId": "listing-42",
    }
    body.update(overrides)
    r = client.post(f"{PREFIX}/contracts", json=body, headers=headers)
    assert r.status_code == 201, r.text
    return r.json()


def sign_both(client, contract_id, owner, tenant):
    client.post(f"{PREFIX}/contracts/{contract_id}/signatures", headers=owner)
    r = client.post(f"{PREFIX}/contracts/{contract_id}/signatures", headers=tenant)
    assert r.status_code == 201, r.text
    return r.json()
