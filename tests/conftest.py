import asyncio
import pytest
import pytest_asyncio
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import sessionmaker

from parking_sync.control_plane import crud
from parking_sync.control_plane.db import init_db
from parking_sync.erp.connectors.base import ErpConnector, ErpSession, RemoteResult
from parking_sync.erp.errors import AuthError, RemoteError
from parking_sync.erp.orchestrator import SyncOrchestrator

@pytest_asyncio.fixture
async def session_factory(tmp_path):
    # File-backed so that concurrent sessions see each other's commits
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'sync_test.db'}", echo=False)
    await init_db(bind=engine)
    yield sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    await engine.dispose()

@pytest.fixture
def seed_integration(session_factory):
    """Creates a connection + integration and returns the integration id."""
    async def _seed(object_name, table_name, config, last_sync_at=None):
        async with session_factory() as db:
            conn = await crud.create_connection(
                db, user_id="u1", name="Kolleris", username="api", password="s3cret", app_id="1001",
                base_url="https://s1.test/s1services",
            )
            integration = await crud.create_integration(
                db, user_id="u1", name=f"{object_name} sync", connection_id=conn.id,
                object_name=object_name, table_name=table_name, config=config, last_sync_at=last_sync_at,
            )
            return integration.id
    return _seed

class StepClock:
    """Deterministic clock; every call advances by one second."""
    def __init__(self, start=datetime(2025, 3, 1, 9, 0, 0)):
        self.now = start

    def __call__(self):
        current = self.now
        self.now = self.now + timedelta(seconds=1)
        return current

@pytest.fixture
def step_clock():
    return StepClock()

class FakeConnector(ErpConnector):
    """In-memory SoftOne stand-in; records every call it receives."""

    def __init__(self, rows=(), keys=(), named_rows=(), fail_auth=False, named_error=None, table_error=None,
                 per_parent=None, failing_parents=(), hang=False):
        self.rows = list(rows)
        self.keys = list(keys)
        self.named_rows = list(named_rows)
        self.fail_auth = fail_auth
        self.named_error = named_error
        self.table_error = table_error
        self.per_parent = per_parent
        self.failing_parents = set(failing_parents)
        self.hang = hang
        self.calls = []
        self.closed = False

    async def authenticate(self):
        self.calls.append(("login",))
        if self.fail_auth:
            raise AuthError("Login failed: Invalid credentials")
        return ErpSession(client_id="cid-1")

    async def fetch_table(self, session, table, fields, filter_expression="1=1", filters=None):
        self.calls.append(("table", table, filter_expression, filters))
        if self.hang:
            await asyncio.sleep(30)
        if self.table_error:
            raise self.table_error
        if self.per_parent is not None:
            parent = int(filter_expression.split("=")[1])
            if parent in self.failing_parents:
                raise RemoteError(f"GetTable failed for INST={parent}")
            return RemoteResult(rows=list(self.per_parent.get(parent, [])), keys=list(self.keys))
        return RemoteResult(rows=list(self.rows), keys=list(self.keys), count=len(self.rows))

    async def fetch_named_query(self, session, query_id, since=None):
        self.calls.append(("named", query_id, since))
        if self.named_error:
            raise self.named_error
        return RemoteResult(rows=list(self.named_rows))

    async def aclose(self):
        self.closed = True

@pytest.fixture
def fake_connector():
    return FakeConnector

@pytest.fixture
def make_orchestrator(session_factory, step_clock):
    """Orchestrator bound to the test database, a fake connector and a step clock."""
    def _make(connector, fanout=1):
        def factory(connection, password):
            assert password == "s3cret"
            return connector
        return SyncOrchestrator(session_factory, connector_factory=factory, clock=step_clock, fanout=fanout)
    return _make

@pytest.fixture
def add_rows(session_factory):
    async def _add(*rows):
        async with session_factory() as db:
            db.add_all(rows)
            await db.commit()
    return _add
