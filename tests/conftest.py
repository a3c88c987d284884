import os
import tempfile

_DB_DIR = tempfile.mkdtemp(prefix="gatepass-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_DB_DIR}/server.db"
os.environ["GATEWAY_BACKEND"] = "mock"
os.environ["WEBHOOK_BACKEND"] = "sql"
os.environ.setdefault("LOG_JSON", "false")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import httpx
import pytest_asyncio
from sqlalchemy import event

from gatepass.gateway import MockGateway
from gatepass.infra.sql import make_async_engine
from gatepass.model.db import Base
from gatepass.notify import LogNotifier


class WriteCounter:
    """Counts INSERT/UPDATE/DELETE statements sent to the database."""

    def __init__(self, engine):
        self.count = 0
        event.listen(engine.sync_engine, "before_cursor_execute", self._on)

    def _on(self, conn, cursor, statement, parameters, context, many):
        verb = statement.lstrip().split(None, 1)[0].upper()
        if verb in ("INSERT", "UPDATE", "DELETE"):
            self.count += 1


class Store:
    """Per-test database: engine, session factory, gate."""

    def __init__(self, engine, session_factory, gated):
        self.engine = engine
        self.session_factory = session_factory
        self.gated = gated
        self.writes = WriteCounter(engine)


@pytest_asyncio.fixture(scope="function")
async def store(tmp_path):
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path}/settle.db"
    )
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    try:
        yield Store(engine, SessionAsync, gated)
    finally:
        await engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def server(monkeypatch):
    from gatepass import server as srv

    async with srv.engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
        await conn.run_sync(Base.metadata.create_all)
    monkeypatch.setattr(srv, "gateway", MockGateway())
    monkeypatch.setattr(srv, "notifier", LogNotifier())
    try:
        yield srv
    finally:
        srv.app.dependency_overrides.clear()
        await srv.engine.dispose()


@pytest_asyncio.fixture(scope="function")
async def client(server):
    transport = httpx.ASGITransport(app=server.app)
    async with httpx.AsyncClient(
        transport=transport, base_url="http://test", timeout=10.0
    ) as c:
        yield c
