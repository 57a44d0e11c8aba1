import threading

from estate_contracts import worker
from estate_contracts.models.enums import ContractStatus, OutboxStatus
from estate_contracts.services.scheduler import build_scheduler
from estate_contracts.tests.helpers import create_signed_contract, outbox_events


class RecordingPort:
    def __init__(self):
        self.sent = []
        self.delivered = threading.Event()

    def notify(self, event_type, payload, recipients):
        self.sent.append(event_type)
        self.delivered.set()


def test_run_once_sweeps_then_drains(contracts, db, session_factory, settings, clock):
    c = create_signed_contract(contracts, db)
    clock.advance(hours=49)
    port = RecordingPort()
    scheduler = build_scheduler(settings, session_factory, clock=clock, port=port)

    result = scheduler.run_once()

    assert result["sweeps"]["activate_due_contracts"].processed == 1
    assert result["notifications"].delivered == 3
    assert port.sent[-1] == "CONTRACT_ACTIVATED"
    db.expire_all()
    assert contracts.get(db, c.id).status == ContractStatus.ACTIVE
    assert all(r.status == OutboxStatus.DELIVERED for r in outbox_events(db))


def test_dry_run_leaves_outbox_alone(contracts, db, session_factory, settings, clock):
    create_signed_contract(contracts, db)
    clock.advance(hours=49)
    scheduler = build_scheduler(settings, session_factory, clock=clock, port=RecordingPort())

    result = scheduler.run_once(dry_run=True)

    assert result["notifications"] is None
    assert len(result["sweeps"]["activate_due_contracts"].candidates) == 1
    assert all(r.status == OutboxStatus.PENDING for r in outbox_events(db))


def test_start_and_stop(contracts, db, session_factory, settings, clock):
    create_signed_contract(contracts, db)
    port = RecordingPort()
    scheduler = build_scheduler(settings, session_factory, clock=clock, port=port)
    scheduler.interval_seconds = 0.05

    scheduler.start()
    try:
        assert scheduler.running
        assert port.delivered.wait(5)
    finally:
        scheduler.stop(timeout=5)

    assert not scheduler.running


def test_worker_once_exit_code(monkeypatch, contracts, db, session_factory, settings, clock):
    create_signed_contract(contracts, db)
    clock.advance(hours=49)
    monkeypatch.setattr(worker, "get_settings", lambda: settings)
    monkeypatch.setattr(worker, "configure_logging", lambda s: None)
    monkeypatch.setattr(worker, "SessionLocal", session_factory)
    monkeypatch.setattr(
        worker,
        "build_scheduler",
        lambda s, factory: build_scheduler(s, factory, clock=clock, port=RecordingPort()),
    )

    assert worker.main(["--once", "--dry-run"]) == 0
    db.expire_all()
    assert outbox_events(db)[0].status == OutboxStatus.PENDING

    assert worker.main(["--once"]) == 0
    db.expire_all()
    assert all(r.status == OutboxStatus.DELIVERED for r in outbox_events(db))
