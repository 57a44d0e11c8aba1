from estate_contracts.tests.helpers import (
    OWNER,
    PREFIX,
    TENANT,
    bearer,
    post_contract as create,
    sign_both,
)


def open_payment(client, contract_id, tenant):
    r = client.post(
        f"{PREFIX}/payments",
        json={"contractId": contract_id, "beneficiaryId": OWNER, "method": "ORANGE_MONEY"},
        headers=tenant,
    )
    assert r.status_code == 201, r.text
    return r.json()


def test_commission_preview(client):
    r = client.get(f"{PREFIX}/payments/commission", params={"amount": "2500000", "commissionType": "location"})
    assert r.status_code == 200
    assert r.json()["commission"] == "1250000.00"

    r = client.get(f"{PREFIX}/payments/commission", params={"amount": "1000", "commissionType": "bogus"})
    assert r.json()["commissionType"] == "location"
    assert r.json()["commission"] == "500.00"


def test_payment_derived_from_contract(client, owner, tenant):
    c = create(client, owner)

    p = open_payment(client, c["contractId"], tenant)

    assert p["status"] == "PENDING"
    assert p["payerId"] == TENANT
    assert p["commissionAmount"] == "1250000.00"
    assert p["totalAmount"] == "8750000.00"


def test_payment_needs_contract_or_amounts(client, tenant):
    r = client.post(f"{PREFIX}/payments", json={"beneficiaryId": OWNER, "method": "VIREMENT"}, headers=tenant)
    assert r.status_code == 422


def test_escrow_then_admin_release(client, owner, tenant, admin, clock):
    c = create(client, owner)
    p = open_payment(client, c["contractId"], tenant)

    r = client.post(f"{PREFIX}/payments/{p['paymentId']}/escrow", headers=tenant)
    assert r.status_code == 200
    assert r.json()["status"] == "IN_ESCROW"

    clock.advance(hours=12)
    st = client.get(f"{PREFIX}/payments/{p['paymentId']}/escrow", headers=owner).json()
    assert st["inEscrow"] is True
    assert st["hoursRemaining"] == 36.0

    assert client.post(f"{PREFIX}/payments/{p['paymentId']}/release", headers=tenant).status_code == 403

    r = client.post(f"{PREFIX}/payments/{p['paymentId']}/release", headers=admin)
    assert r.status_code == 200
    assert r.json()["status"] == "COMPLETE"
    assert r.json()["escrowReleasedAtIso"] is not None

    r = client.post(f"{PREFIX}/payments/{p['paymentId']}/refund", headers=admin)
    assert r.status_code == 409
    assert r.json()["detail"]["current"] == "COMPLETE"


def test_refund_is_admin_only(client, owner, tenant, admin):
    c = create(client, owner)
    p = open_payment(client, c["contractId"], tenant)
    client.post(f"{PREFIX}/payments/{p['paymentId']}/escrow", headers=tenant)

    assert client.post(f"{PREFIX}/payments/{p['paymentId']}/refund", headers=tenant).status_code == 403

    r = client.post(f"{PREFIX}/payments/{p['paymentId']}/refund", json={"reason": "dispute"}, headers=admin)
    assert r.status_code == 200
    assert r.json()["status"] == "REFUNDED"
    assert r.json()["refundReason"] == "dispute"


def test_only_payer_abandons_payment(client, owner, tenant):
    c = create(client, owner)
    p = open_payment(client, c["contractId"], tenant)

    assert client.post(f"{PREFIX}/payments/{p['paymentId']}/fail", headers=owner).status_code == 403
    assert client.get(f"{PREFIX}/payments/{p['paymentId']}", headers=bearer("someone-else")).status_code == 403

    r = client.post(f"{PREFIX}/payments/{p['paymentId']}/fail", json={"reason": "changed provider"}, headers=tenant)
    assert r.status_code == 200
    assert r.json()["status"] == "FAILED"


def test_cancel_refunds_through_api(client, owner, tenant):
    c = create(client, owner)
    sign_both(client, c["contractId"], owner, tenant)
    p = open_payment(client, c["contractId"], tenant)
    client.post(f"{PREFIX}/payments/{p['paymentId']}/escrow", headers=tenant)

    r = client.post(f"{PREFIX}/contracts/{c['contractId']}/cancel", headers=tenant)
    assert r.status_code == 200

    p = client.get(f"{PREFIX}/payments/{p['paymentId']}", headers=tenant).json()
    assert p["status"] == "REFUNDED"
    assert p["refundedAtIso"] is not None


def test_contract_lists_its_payments(client, owner, tenant, clock):
    c = create(client, owner)
    first = open_payment(client, c["contractId"], tenant)
    client.post(f"{PREFIX}/payments/{first['paymentId']}/fail", headers=tenant)
    clock.advance(minutes=5)
    second = open_payment(client, c["contractId"], tenant)

    r = client.get(f"{PREFIX}/contracts/{c['contractId']}/payments", headers=owner)

    assert r.status_code == 200
    assert [p["paymentId"] for p in r.json()] == [first["paymentId"], second["paymentId"]]
    assert [p["status"] for p in r.json()] == ["FAILED", "PENDING"]
    assert client.get(f"{PREFIX}/contracts/{c['contractId']}/payments", headers=bearer("someone-else")).status_code == 403


def test_commission_preview_accepts_contract_type(client):
    r = client.get(
        f"{PREFIX}/payments/commission",
        params={"amount": "100000000", "commissionType": "PROMESSE_VENTE_TERRAIN"},
    )

    assert r.status_code == 200
    assert r.json()["commissionType"] == "vente_terrain"
    assert r.json()["commission"] == "1000000.00"


def test_second_live_payment_is_conflict(client, owner, tenant):
    c = create(client, owner)
    open_payment(client, c["contractId"], tenant)

    r = client.post(
        f"{PREFIX}/payments",
        json={"contractId": c["contractId"], "beneficiaryId": OWNER, "method": "VIREMENT"},
        headers=tenant,
    )

    assert r.status_code == 409
    assert r.json()["detail"]["current"] == "PENDING"
