import uuid
from datetime import timedelta
from decimal import Decimal

import pytest

from estate_contracts.core.errors import (
    AlreadySigned,
    ContractLocked,
    ContractNotFound,
    InvalidParty,
    InvalidState,
    RenewalFailed,
    RetractionWindowExpired,
)
from estate_contracts.core.references import CONTRACT_REFERENCE_RE
from estate_contracts.models.contract_signature import ContractSignature
from estate_contracts.models.enums import ContractStatus, ContractType, NotificationEvent
from estate_contracts.services.contract_lifecycle import add_months
from estate_contracts.tests.helpers import (
    OWNER,
    TENANT,
    create_contract,
    create_signed_contract,
    outbox_events,
)


def test_create_draft(contracts, db):
    c = create_contract(contracts, db)

    assert c.status == ContractStatus.DRAFT
    assert CONTRACT_REFERENCE_RE.match(c.reference)
    assert c.reference.startswith("IMMOG-202501-")
    assert c.rent_amount == Decimal("2500000.00")
    assert c.version == 1


def test_owner_and_tenant_must_differ(contracts, db):
    with pytest.raises(ValueError):
        create_contract(contracts, db, tenant_id=OWNER)


def test_first_signature_keeps_draft_and_notifies_other_party(contracts, db):
    c = create_contract(contracts, db)

    c = contracts.record_signature(db, c.id, OWNER)

    assert c.status == ContractStatus.DRAFT
    assert c.signature_complete_at is None
    rows = outbox_events(db, NotificationEvent.SIGNATURE_RECORDED)
    assert len(rows) == 1
    assert rows[0].recipients_json == [TENANT]


def test_second_signature_reaches_quorum(contracts, db, clock):
    c = create_contract(contracts, db)
    contracts.record_signature(db, c.id, OWNER)
    clock.advance(minutes=30)

    c = contracts.record_signature(db, c.id, TENANT)

    assert c.status == ContractStatus.SIGNED
    assert c.signature_complete_at == clock.now()
    assert len(c.signatures) == 2
    signed = outbox_events(db, NotificationEvent.CONTRACT_SIGNED)
    assert len(signed) == 1
    assert signed[0].recipients_json == sorted([OWNER, TENANT])


def test_signing_order_does_not_matter(contracts, db, clock):
    c = create_contract(contracts, db)

    c = contracts.record_signature(db, c.id, TENANT)
    assert c.status == ContractStatus.DRAFT
    assert c.signature_complete_at is None
    assert outbox_events(db, NotificationEvent.SIGNATURE_RECORDED)[0].recipients_json == [OWNER]

    clock.advance(minutes=30)
    c = contracts.record_signature(db, c.id, OWNER)

    assert c.status == ContractStatus.SIGNED
    assert c.signature_complete_at == clock.now()
    assert len(c.signatures) == 2
    assert len(outbox_events(db, NotificationEvent.CONTRACT_SIGNED)) == 1


def test_duplicate_signature_is_rejected(contracts, db):
    c = create_contract(contracts, db)
    contracts.record_signature(db, c.id, OWNER)

    with pytest.raises(AlreadySigned):
        contracts.record_signature(db, c.id, OWNER)

    count = db.query(ContractSignature).filter_by(contract_id=c.id).count()
    assert count == 1


def test_stranger_cannot_sign(contracts, db):
    c = create_contract(contracts, db)

    with pytest.raises(InvalidParty):
        contracts.record_signature(db, c.id, "someone-else")


def test_sign_unknown_contract(contracts, db):
    with pytest.raises(ContractNotFound):
        contracts.record_signature(db, uuid.uuid4(), OWNER)


def test_signature_hash_is_verifiable(contracts, db):
    c = create_contract(contracts, db)
    c = contracts.record_signature(db, c.id, OWNER)

    sig = c.signatures[0]
    assert contracts.ledger.verify(c, sig)


def test_retraction_window_boundary(contracts, db, clock):
    c = create_signed_contract(contracts, db)

    clock.advance(hours=47, minutes=59)
    assert contracts.can_retract(db, c.id) is True
    assert contracts.retraction_seconds_remaining(db, c.id) == 60
    with pytest.raises(InvalidState):
        contracts.activate(db, c.id)

    clock.advance(minutes=2)
    assert contracts.can_retract(db, c.id) is False
    assert contracts.retraction_seconds_remaining(db, c.id) == 0


def test_cancel_inside_window(contracts, db, clock):
    c = create_signed_contract(contracts, db)
    clock.advance(hours=47, minutes=59)

    c = contracts.cancel(db, c.id, reason="changed my mind")

    assert c.status == ContractStatus.CANCELLED
    assert c.cancelled_at == clock.now()
    assert c.cancellation_reason == "changed my mind"
    assert len(outbox_events(db, NotificationEvent.CONTRACT_CANCELLED)) == 1


def test_cancel_after_window_is_rejected(contracts, db, clock):
    c = create_signed_contract(contracts, db)
    clock.advance(hours=48, minutes=1)

    with pytest.raises(RetractionWindowExpired) as exc:
        contracts.cancel(db, c.id)

    assert exc.value.code == "retraction_window_expired"
    db.refresh(c)
    assert c.status == ContractStatus.SIGNED


def test_cancel_draft_is_invalid(contracts, db):
    c = create_contract(contracts, db)

    with pytest.raises(InvalidState) as exc:
        contracts.cancel(db, c.id)

    assert exc.value.current == "DRAFT"


def test_activate_after_window(contracts, db, clock):
    c = create_signed_contract(contracts, db)
    clock.advance(hours=48, minutes=1)

    c = contracts.activate(db, c.id)

    assert c.status == ContractStatus.ACTIVE
    assert c.start_date == clock.now()
    assert c.planned_end_date == clock.now().replace(year=clock.now().year + 1)


def test_activate_is_idempotent(contracts, db, clock):
    c = create_signed_contract(contracts, db)
    clock.advance(hours=49)

    contracts.activate(db, c.id)
    version = contracts.get(db, c.id).version
    again = contracts.activate(db, c.id)

    assert again.status == ContractStatus.ACTIVE
    assert again.version == version
    assert len(outbox_events(db, NotificationEvent.CONTRACT_ACTIVATED)) == 1


def test_lock_seals_and_freezes_terms(contracts, db):
    c = create_signed_contract(contracts, db)

    c = contracts.lock(db, c.id)

    assert c.is_locked is True
    assert c.locked_at is not None
    assert len(c.seal_hash) == 64
    assert contracts.verify_seal(db, c.id) is True

    # idempotent
    assert contracts.lock(db, c.id).seal_hash == c.seal_hash

    with pytest.raises(ContractLocked):
        contracts.amend_terms(db, c.id, {"rent_amount": "1"})

    # direct ORM writes are refused as well
    c = contracts.get(db, c.id)
    assert c.locked_at is not None
    c.rent_amount = Decimal("1.00")
    with pytest.raises(ContractLocked):
        db.commit()
    db.rollback()
    assert contracts.get(db, c.id).rent_amount == Decimal("2500000.00")


def test_lock_requires_quorum(contracts, db):
    c = create_contract(contracts, db)
    contracts.record_signature(db, c.id, OWNER)

    with pytest.raises(InvalidState):
        contracts.lock(db, c.id)


def test_amend_terms_only_before_any_signature(contracts, db):
    c = create_contract(contracts, db)

    c = contracts.amend_terms(db, c.id, {"rent_amount": "3000000", "duration_months": 6})
    assert c.rent_amount == Decimal("3000000.00")
    assert c.duration_months == 6

    with pytest.raises(ValueError):
        contracts.amend_terms(db, c.id, {"owner_id": "someone"})

    contracts.record_signature(db, c.id, OWNER)
    with pytest.raises(InvalidState):
        contracts.amend_terms(db, c.id, {"rent_amount": "1"})


def test_terminate_only_from_active(contracts, db, clock):
    c = create_signed_contract(contracts, db)
    with pytest.raises(InvalidState):
        contracts.terminate(db, c.id)

    clock.advance(hours=49)
    contracts.activate(db, c.id)
    c = contracts.terminate(db, c.id)

    assert c.status == ContractStatus.TERMINATED
    assert c.end_date == clock.now()

    with pytest.raises(InvalidState):
        contracts.terminate(db, c.id)


def test_renew_terminates_and_drafts_successor(contracts, db, clock):
    c = create_signed_contract(contracts, db)
    clock.advance(hours=49)
    contracts.activate(db, c.id)

    new = contracts.renew(db, c.id, {"rent_amount": "2750000"})

    old = contracts.get(db, c.id)
    assert old.status == ContractStatus.TERMINATED
    assert new.status == ContractStatus.DRAFT
    assert new.renewed_from_id == old.id
    assert new.reference != old.reference
    assert new.rent_amount == Decimal("2750000.00")
    assert new.deposit_amount == old.deposit_amount
    assert len(outbox_events(db, NotificationEvent.CONTRACT_RENEWED)) == 1


def test_renew_failure_after_termination_is_recoverable(contracts, db, clock, monkeypatch):
    c = create_signed_contract(contracts, db)
    clock.advance(hours=49)
    contracts.activate(db, c.id)

    def broken(*args, **kwargs):
        raise InvalidState("contract", "renew", "TERMINATED", message="listing withdrawn")

    monkeypatch.setattr(contracts, "create_renewal_draft", broken)
    with pytest.raises(RenewalFailed) as exc:
        contracts.renew(db, c.id)

    assert exc.value.old_contract_id == c.id
    assert contracts.get(db, c.id).status == ContractStatus.TERMINATED

    monkeypatch.undo()
    new = contracts.create_renewal_draft(db, c.id)
    assert new.renewed_from_id == c.id
    # retrying returns the same draft
    assert contracts.create_renewal_draft(db, c.id).id == new.id


def test_renew_rejects_bad_overrides_before_terminating(contracts, db, clock):
    c = create_signed_contract(contracts, db)
    clock.advance(hours=49)
    contracts.activate(db, c.id)

    with pytest.raises(ValueError):
        contracts.renew(db, c.id, {"tenant_id": "someone"})

    assert contracts.get(db, c.id).status == ContractStatus.ACTIVE


def test_archive_after_cancel(contracts, db):
    c = create_signed_contract(contracts, db)
    contracts.cancel(db, c.id)

    c = contracts.archive(db, c.id)

    assert c.archived_at is not None
    assert contracts.list_for_party(db, OWNER) == []
    assert len(contracts.list_for_party(db, OWNER, include_archived=True)) == 1


def test_archive_active_contract_is_invalid(contracts, db, clock):
    c = create_signed_contract(contracts, db)
    clock.advance(hours=49)
    contracts.activate(db, c.id)

    with pytest.raises(InvalidState):
        contracts.archive(db, c.id)


def test_statistics(contracts, db):
    create_contract(contracts, db)
    c = create_signed_contract(contracts, db, contract_type=ContractType.LAND_SALE_PROMISE)
    contracts.lock(db, c.id)

    stats = contracts.statistics(db)

    assert stats["DRAFT"] == 1
    assert stats["SIGNED"] == 1
    assert stats["total"] == 2
    assert stats["locked"] == 1


def test_planned_end_clamps_to_month_length(contracts, db, clock):
    start = clock.now().replace(month=1, day=31)
    assert add_months(start, 1).day == 28
    assert add_months(start, 13).month == 2
    assert add_months(start, 12) == start.replace(year=start.year + 1)
    assert add_months(start, 1) - start == timedelta(days=28)
