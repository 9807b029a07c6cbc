import os
from types import SimpleNamespace

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient

# In-memory DB, no demo seed, fixed signing key for tests
os.environ["DATABASE_PATH"] = ":memory:"
os.environ["DATABASE_URL"] = ""
os.environ["SEED_DEMO_DATA"] = "false"
os.environ["JWT_SECRET"] = "test-secret"

from app.database import close_db, init_db
from app.dependencies import install_realtime
from app.main import app
from app.services.auth import create_access_token
from app.services.dispatcher import Dispatcher
from app.services.lifecycle import LifecycleEngine
from app.services.presence import PresenceRegistry
from app.services.store import Store


class FakeChannel:
    """Stands in for a WebSocket: records every frame it is sent."""

    def __init__(self, fail: bool = False):
        self.sent: list[dict] = []
        self.fail = fail

    async def send_json(self, data):
        if self.fail:
            raise RuntimeError("socket closed")
        self.sent.append(data)

    def types(self) -> list[str]:
        return [frame["type"] for frame in self.sent]


@pytest_asyncio.fixture
async def db():
    """Provide a fresh in-memory database for each test."""
    import app.database as db_mod

    # Close any existing connection
    if db_mod._db is not None:
        try:
            await db_mod._db.close()
        except Exception:
            pass
    db_mod._db = None

    # Override module-level config directly (avoids fragile importlib.reload)
    db_mod.DATABASE_PATH = ":memory:"
    db_mod.DATABASE_URL = ""
    db_mod.SEED_DEMO_DATA = False

    await init_db()
    database = await db_mod.get_db()
    yield database
    await close_db()


@pytest.fixture(autouse=True)
def realtime():
    """Fresh presence registry and dispatcher on the app for every test."""
    install_realtime(app)
    return app.state


@pytest_asyncio.fixture
async def store(db):
    return Store(db)


@pytest.fixture
def channel_factory():
    return FakeChannel


@pytest.fixture
def presence():
    return PresenceRegistry()


@pytest.fixture
def dispatcher(presence):
    return Dispatcher(presence)


@pytest.fixture
def engine(store, dispatcher):
    return LifecycleEngine(store, dispatcher)


def auth_headers(user) -> dict:
    return {"Authorization": f"Bearer {create_access_token(user.id, user.role)}"}


@pytest.fixture
def auth():
    """Bearer headers for a user from the world fixture."""
    return auth_headers


@pytest_asyncio.fixture
async def world(store):
    """One hospital with staff, one patient, two ambulance crews parked nearby, and an admin."""
    hospital = await store.create_hospital(
        "Emergency Medical Center", 22.7196, 75.8577, general_beds=4, icu_beds=2
    )
    other_hospital = await store.create_hospital("Far Hospital", 23.5, 76.5, general_beds=2)
    patient = await store.create_user("patient1", "patient", first_name="John", last_name="Patient")
    other_patient = await store.create_user("patient2", "patient")
    staff = await store.create_user("hospital1", "hospital", hospital_id=hospital.id)
    admin = await store.create_user("admin1", "admin")
    operator_a = await store.create_user("ambulance1", "ambulance")
    operator_b = await store.create_user("ambulance2", "ambulance")
    ambulance_a = await store.create_ambulance(
        "AMB-001", operator_id=operator_a.id, hospital_id=hospital.id, latitude=22.7533, longitude=75.8937
    )
    ambulance_b = await store.create_ambulance(
        "AMB-002", operator_id=operator_b.id, latitude=22.7300, longitude=75.8700
    )
    return SimpleNamespace(
        hospital=hospital,
        other_hospital=other_hospital,
        patient=patient,
        other_patient=other_patient,
        staff=staff,
        admin=admin,
        operator_a=operator_a,
        operator_b=operator_b,
        ambulance_a=ambulance_a,
        ambulance_b=ambulance_b,
    )


@pytest.fixture
def client(db):
    """Provide a synchronous TestClient for HTTP endpoint tests."""
    return TestClient(app)


@pytest_asyncio.fixture
async def async_client(db):
    """Provide an async httpx client for async HTTP tests."""
    async with AsyncClient(
        transport=ASGITransport(app=app),
        base_url="http://test",
    ) as ac:
        yield ac
