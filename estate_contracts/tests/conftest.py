import pytest
from sqlalchemy import create_engine, event
from sqlalchemy.orm import sessionmaker

# FORCE model registration
import estate_contracts.models  # noqa

from estate_contracts.core.clock import FrozenClock
from estate_contracts.core.config import Settings
from estate_contracts.db.base import Base
from estate_contracts.services.contract_lifecycle import ContractLifecycleEngine
from estate_contracts.services.escrow_lifecycle import EscrowLifecycleEngine


@pytest.fixture
def engine(tmp_path):
    # file-backed so several sessions (and threads) see the same data
    eng = create_engine(
        f"sqlite:///{tmp_path / 'contracts.db'}",
        connect_args={"check_same_thread": False},
    )

    @event.listens_for(eng, "connect")
    def _enable_foreign_keys(dbapi_connection, _record):
        cursor = dbapi_connection.cursor()
        cursor.execute("PRAGMA foreign_keys=ON")
        cursor.close()

    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, autocommit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def settings():
    return Settings(database_url="sqlite://", retraction_hours=48, escrow_hold_hours=48)


@pytest.fixture
def clock():
    return FrozenClock()


@pytest.fixture
def escrow(settings, clock):
    return EscrowLifecycleEngine(settings=settings, clock=clock)


@pytest.fixture
def contracts(settings, clock, escrow):
    return ContractLifecycleEngine(settings=settings, clock=clock, escrow=escrow)
