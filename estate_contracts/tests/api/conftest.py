import pytest
from fastapi.testclient import TestClient

from estate_contracts.api.deps import get_clock, get_session_factory
from estate_contracts.db.session import get_db
from estate_contracts.main import create_app
from estate_contracts.tests.helpers import OWNER, TENANT, bearer


@pytest.fixture
def client(session_factory, clock):
    app = create_app()

    def override_get_db():
        db = session_factory()
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[get_clock] = lambda: clock
    with TestClient(app) as c:
        yield c

@pytest.fixture
def owner():
    return bearer(OWNER)

@pytest.fixture
def tenant():
    return bearer(TENANT)

@pytest.fixture
def admin():
    return bearer("admin-1", "ADMIN")
