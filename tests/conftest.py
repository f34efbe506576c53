import os

# Minimal values for tests; set before the app and settings are imported
os.environ.setdefault("DATABASE_URL", "sqlite:///:memory:")
os.environ["ENVIRONMENT"] = "test"
os.environ["TRUSTED_ORIGINS"] = "https://app.example"
os.environ.pop("COOKIE_SECURE", None)

from httpx import ASGITransport
from httpx import AsyncClient
import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from taskboard.app import app
from taskboard.client import CsrfClient
from taskboard.client import TaskApi
from taskboard.db import Base
from taskboard.db import get_db

TRUSTED_ORIGIN = "https://app.example"


class RecordingTransport(ASGITransport):
    """ASGI transport that remembers every request it carried."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        self.calls = []

    async def handle_async_request(self, request):
        self.calls.append((request.method, request.url.path))
        return await super().handle_async_request(request)


@pytest.fixture(scope="session")
def engine():
    test_engine = create_engine(
        "sqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(test_engine)
    yield test_engine
    Base.metadata.drop_all(test_engine)


@pytest.fixture(scope="function")
def session(engine):
    connection = engine.connect()
    transaction = connection.begin()
    Session = sessionmaker(bind=connection)
    session = Session()
    yield session
    session.close()
    transaction.rollback()  # keep the database clean for the next test
    connection.close()


# ---- Override get_db to yield our test session ----
@pytest.fixture(autouse=True)
def override_get_db(session):
    def _override():
        try:
            yield session
        finally:
            pass

    app.dependency_overrides[get_db] = _override
    yield
    app.dependency_overrides.pop(get_db, None)


# ---- HTTP client bound to the ASGI app, sending a trusted Origin ----
@pytest.fixture
async def client():
    transport = ASGITransport(app=app)
    async with AsyncClient(
        transport=transport, base_url="http://testserver", headers={"Origin": TRUSTED_ORIGIN}
    ) as ac:
        yield ac


@pytest.fixture
def transport():
    return RecordingTransport(app=app)


@pytest.fixture
async def csrf_client(transport):
    async with CsrfClient.connect(
        "http://testserver", origin=TRUSTED_ORIGIN, transport=transport
    ) as c:
        yield c


@pytest.fixture
def task_api(csrf_client):
    return TaskApi(csrf_client)


@pytest.fixture
async def csrf_headers(client):
    """Fetch a token the way the browser app does and return the header to send."""
    resp = await client.get("/csrf-token")
    data = resp.json()
    return {data["header"]: data["token"]}
