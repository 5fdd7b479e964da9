"""Pytest configuration and fixtures."""

import os
import tempfile
import time

# configuration is read at import time, so the environment goes first
_TMP = tempfile.mkdtemp(prefix="rafflebox-tests-")
os.environ["DATABASE_URL"] = f"sqlite:///{_TMP}/server.db"
os.environ["PROOF_UPLOAD_DIR"] = f"{_TMP}/proofs"
os.environ["REFS_BACKEND"] = "pg"
os.environ["CHECKOUT_WEBHOOK_SECRET"] = "test-checkout-secret"
os.environ["PIX_WEBHOOK_SECRET"] = ""
os.environ["CRON_SECRET"] = "test-cron-secret"
os.environ["ADMIN_USERNAME"] = "admin"
os.environ["ADMIN_PASSWORD"] = "supasecret"

import pytest

from rafflebox.infra.files import ProofFileStore
from rafflebox.infra.sql import GatedAsyncSession, make_async_engine
from rafflebox.model import inventory
from rafflebox.model.checkoutref import new_store
from rafflebox.model.checkoutref._postgres import (
    create_schema as create_refs_schema
)
from rafflebox.model.reservations import CustomerInfo
from rafflebox.model.schema import create_schema


@pytest.fixture
async def engine_parts(tmp_path):
    """Fresh SQLite database per test: (SessionAsync, gated)."""
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'raffle.db'}"
    )
    async with engine.begin() as conn:
        await create_schema(conn)
        await create_refs_schema(conn)
    yield SessionAsync, gated
    await engine.dispose()


@pytest.fixture
async def open_db(engine_parts):
    """Factory for extra sessions, e.g. to race two buyers."""
    SessionAsync, gated = engine_parts
    sessions = []

    def _open() -> GatedAsyncSession:
        session = SessionAsync()
        sessions.append(session)
        return GatedAsyncSession(session=session, gated=gated)

    yield _open
    for session in sessions:
        await session.close()


@pytest.fixture
def db(open_db) -> GatedAsyncSession:
    return open_db()


@pytest.fixture
async def refs(engine_parts):
    SessionAsync, gated = engine_parts
    async with SessionAsync() as session:
        yield new_store(db=session, gated=gated)


@pytest.fixture
def files(tmp_path) -> ProofFileStore:
    return ProofFileStore(str(tmp_path / "proofs"))


@pytest.fixture
def customer() -> CustomerInfo:
    return CustomerInfo(name="Maria Silva", email="maria@example.com",
                        phone="(11) 99999-0000")


@pytest.fixture
def t0() -> float:
    return time.time()


@pytest.fixture
def make_campaign(db):
    async def _make(total_tickets=10, status=inventory.C_ACTIVE, **kw):
        return await inventory.create_campaign(
            db, title="Rifa do carro", total_tickets=total_tickets,
            organizer_id="org-1", status=status, **kw
        )
    return _make
