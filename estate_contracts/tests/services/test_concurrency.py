import pytest

from estate_contracts.core.errors import ConcurrentModification, InvalidState
from estate_contracts.db.cas import compare_and_swap, run_with_cas_retry
from estate_contracts.models.enums import ContractStatus, NotificationEvent, PaymentMethod, PaymentStatus
from estate_contracts.tests.helpers import (
    OWNER,
    TENANT,
    create_contract,
    create_escrowed_payment,
    create_signed_contract,
    outbox_events,
)


@pytest.fixture
def other(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


def test_stale_writer_loses_compare_and_swap(contracts, db, other):
    c = create_contract(contracts, db)
    stale = contracts.get(other, c.id)

    contracts.amend_terms(db, c.id, {"duration_months": 24})

    with pytest.raises(ConcurrentModification):
        compare_and_swap(other, stale, values={"duration_months": 6})
    other.rollback()

    assert contracts.get(other, c.id).duration_months == 24


def test_concurrent_activation_emits_one_event(contracts, db, other, clock):
    c = create_signed_contract(contracts, db)
    clock.advance(hours=49)
    # the second writer holds a pre-activation snapshot
    contracts.get(other, c.id)

    contracts.activate(db, c.id)
    result = contracts.activate(other, c.id)

    assert result.status == ContractStatus.ACTIVE
    assert len(outbox_events(db, NotificationEvent.CONTRACT_ACTIVATED)) == 1


def test_concurrent_signatures_reach_signed_once(contracts, db, other):
    c = create_contract(contracts, db)
    contracts.get(other, c.id)

    contracts.record_signature(db, c.id, OWNER)
    result = contracts.record_signature(other, c.id, TENANT)

    assert result.status == ContractStatus.SIGNED
    assert result.version == 3
    db.expire_all()
    assert len(outbox_events(db, NotificationEvent.CONTRACT_SIGNED)) == 1
    assert len(outbox_events(db, NotificationEvent.SIGNATURE_RECORDED)) == 1


def test_release_and_refund_race_has_one_winner(contracts, escrow, db, other, clock):
    c = create_signed_contract(contracts, db)
    p = create_escrowed_payment(escrow, db, c)
    clock.advance(hours=49)
    escrow.get(other, p.id)

    escrow.release_from_escrow(db, p.id)
    with pytest.raises(InvalidState):
        escrow.refund(other, p.id)

    db.expire_all()
    assert escrow.get(db, p.id).status == PaymentStatus.COMPLETE
    assert outbox_events(db, NotificationEvent.PAYMENT_REFUNDED) == []


def test_retry_gives_up_after_configured_attempts(db):
    calls = []

    def always_conflicts():
        calls.append(1)
        raise ConcurrentModification("Contract", "x")

    with pytest.raises(ConcurrentModification):
        run_with_cas_retry(db, always_conflicts, attempts=3, operation="test", entity_id="x")

    assert len(calls) == 3


def test_concurrent_payment_creation_has_one_winner(contracts, escrow, db, other, monkeypatch):
    c = create_contract(contracts, db)
    real = escrow.live_payment_for
    reads = []

    def stale_read(session, contract_id):
        # the second writer checked before the first one committed
        reads.append(contract_id)
        return None if len(reads) == 1 else real(session, contract_id)

    monkeypatch.setattr(escrow, "live_payment_for", stale_read)
    escrow.create(db, contract_id=c.id, payer_id=TENANT, beneficiary_id=OWNER, method=PaymentMethod.VIREMENT)
    reads.clear()

    with pytest.raises(InvalidState):
        escrow.create(
            other, contract_id=c.id, payer_id=TENANT, beneficiary_id=OWNER, method=PaymentMethod.VIREMENT
        )

    assert len(escrow.for_contract(db, c.id)) == 1
