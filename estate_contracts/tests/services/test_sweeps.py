from datetime import timedelta

from estate_contracts.models.enums import ContractStatus, NotificationEvent, PaymentStatus
from estate_contracts.services.sweeps import SweepService
from estate_contracts.tests.helpers import (
    create_contract,
    create_escrowed_payment,
    create_signed_contract,
    outbox_events,
)


def make_sweeps(contracts, escrow, settings, timer=None):
    kwargs = {"settings": settings}
    if timer is not None:
        kwargs["timer"] = timer
    return SweepService(contracts, escrow, **kwargs)


def test_activation_sweep_respects_window(contracts, escrow, db, clock, settings):
    c = create_signed_contract(contracts, db)
    sweeps = make_sweeps(contracts, escrow, settings)

    clock.advance(hours=47, minutes=59)
    report = sweeps.activate_due_contracts(db)
    assert report.processed == 0
    assert contracts.get(db, c.id).status == ContractStatus.SIGNED

    clock.advance(minutes=2)
    report = sweeps.activate_due_contracts(db)
    assert report.processed == 1
    assert contracts.get(db, c.id).status == ContractStatus.ACTIVE


def test_escrow_released_once_contract_can_no_longer_be_retracted(contracts, escrow, db, clock, settings):
    c = create_signed_contract(contracts, db)
    p = create_escrowed_payment(escrow, db, c)
    sweeps = make_sweeps(contracts, escrow, settings)

    clock.advance(hours=49)
    reports = sweeps.run_all(db)

    assert reports["activate_due_contracts"].processed == 1
    assert reports["release_due_escrows"].processed == 1
    p = escrow.get(db, p.id)
    assert p.status == PaymentStatus.COMPLETE
    assert p.escrow_released_at == clock.now()
    assert contracts.get(db, c.id).status == ContractStatus.ACTIVE


def test_escrow_of_draft_contract_is_not_released(contracts, escrow, db, clock, settings):
    c = create_contract(contracts, db)
    p = create_escrowed_payment(escrow, db, c)
    sweeps = make_sweeps(contracts, escrow, settings)

    clock.advance(hours=72)
    report = sweeps.release_due_escrows(db)

    assert report.processed == 0
    assert escrow.get(db, p.id).status == PaymentStatus.IN_ESCROW


def test_expire_overdue_contracts(contracts, escrow, db, clock, settings):
    c = create_signed_contract(contracts, db, duration_months=1)
    clock.advance(hours=49)
    contracts.activate(db, c.id)
    sweeps = make_sweeps(contracts, escrow, settings)

    assert sweeps.expire_overdue_contracts(db).processed == 0

    clock.advance(days=32)
    report = sweeps.expire_overdue_contracts(db)

    assert report.processed == 1
    assert contracts.get(db, c.id).status == ContractStatus.TERMINATED


def test_retraction_reminder_sent_once(contracts, escrow, db, clock, settings):
    c = create_signed_contract(contracts, db)
    sweeps = make_sweeps(contracts, escrow, settings)

    clock.advance(hours=40)
    assert sweeps.send_retraction_reminders(db).processed == 0

    clock.advance(hours=3)
    assert sweeps.send_retraction_reminders(db).processed == 1
    assert sweeps.send_retraction_reminders(db).processed == 0

    rows = outbox_events(db, NotificationEvent.RETRACTION_REMINDER)
    assert len(rows) == 1
    assert rows[0].payload_json["hours_remaining"] == 5.0
    assert contracts.get(db, c.id).retraction_reminder_sent_at is not None


def test_dry_run_reports_without_transitions(contracts, escrow, db, clock, settings):
    c = create_signed_contract(contracts, db)
    sweeps = make_sweeps(contracts, escrow, settings)
    clock.advance(hours=49)

    reports = sweeps.run_all(db, dry_run=True)

    assert reports["activate_due_contracts"].candidates == [str(c.id)]
    assert reports["activate_due_contracts"].processed == 0
    assert contracts.get(db, c.id).status == ContractStatus.SIGNED


def test_one_bad_item_does_not_stop_the_batch(contracts, escrow, db, clock, settings, monkeypatch):
    first = create_signed_contract(contracts, db, listing_id="a")
    second = create_signed_contract(contracts, db, listing_id="b")
    clock.advance(hours=49)

    real_activate = contracts.activate

    def flaky_activate(session, contract_id):
        if contract_id == first.id:
            raise RuntimeError("boom")
        return real_activate(session, contract_id)

    monkeypatch.setattr(contracts, "activate", flaky_activate)
    sweeps = make_sweeps(contracts, escrow, settings)

    report = sweeps.activate_due_contracts(db)

    assert report.failed == 1
    assert report.processed == 1
    assert report.failures[0]["item_id"] == str(first.id)
    assert contracts.get(db, first.id).status == ContractStatus.SIGNED
    assert contracts.get(db, second.id).status == ContractStatus.ACTIVE


def test_time_budget_defers_remaining_items(contracts, escrow, db, clock, settings):
    for listing in ("a", "b", "c"):
        create_signed_contract(contracts, db, listing_id=listing)
    clock.advance(hours=49)

    ticks = iter([0.0, 0.0, 1.0, settings.sweep_batch_budget_seconds + 1])
    sweeps = make_sweeps(contracts, escrow, settings, timer=lambda: next(ticks))

    report = sweeps.activate_due_contracts(db)

    assert report.processed == 2
    assert report.deferred == 1

    # next tick picks the rest up
    report = make_sweeps(contracts, escrow, settings).activate_due_contracts(db)
    assert report.processed == 1


def test_planned_end_after_activation(contracts, db, clock):
    c = create_signed_contract(contracts, db, duration_months=3)
    clock.advance(hours=49)

    c = contracts.activate(db, c.id)

    assert c.planned_end_date - c.start_date >= timedelta(days=89)
