"""
Shared test fixtures — file-backed SQLite async database + FastAPI AsyncClient.

Strategy:
1. Set DATABASE_URL to SQLite before anything loads
2. Inject a mock harmonizer.database module into sys.modules before harmonizer.main imports
3. All routers will use our test session via dependency override
4. The similarity scorer is replaced by a table-driven FakeScorer
"""
import os
import sys
import tempfile
import types
from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

# ── 1. Environment ──
# A file database, so that concurrent sessions (harmonize-all) each get their own connection
_DB_PATH = os.path.join(tempfile.mkdtemp(prefix="harmonizer-tests-"), "test.db")
TEST_DATABASE_URL = f"sqlite+aiosqlite:///{_DB_PATH}"

os.environ["DATABASE_URL"] = TEST_DATABASE_URL
os.environ["DEBUG"] = "false"
os.environ["SCORER_BACKEND"] = "token_overlap"

# ── 2. Test engine ──
TEST_ENGINE = create_async_engine(TEST_DATABASE_URL, echo=False, poolclass=NullPool)

TestSession = async_sessionmaker(
    TEST_ENGINE,
    class_=AsyncSession,
    expire_on_commit=False,
)


# ── 3. SQLite: foreign keys + real transactions for SAVEPOINT ──
@event.listens_for(TEST_ENGINE.sync_engine, "connect")
def _sqlite_connect(dbapi_conn, connection_record):
    dbapi_conn.isolation_level = None
    cursor = dbapi_conn.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.execute("PRAGMA busy_timeout=5000")
    cursor.close()


@event.listens_for(TEST_ENGINE.sync_engine, "begin")
def _sqlite_begin(conn):
    conn.exec_driver_sql("BEGIN")


# ── 4. Replace harmonizer.database BEFORE harmonizer.main is imported ──
async def _test_get_session() -> AsyncGenerator[AsyncSession, None]:
    async with TestSession() as session:
        yield session


async def _test_check_db() -> bool:
    return True


_fake_db = types.ModuleType("harmonizer.database")
_fake_db.engine = TEST_ENGINE
_fake_db.async_session = TestSession
_fake_db.get_session = _test_get_session
_fake_db.check_db_connection = _test_check_db
sys.modules["harmonizer.database"] = _fake_db

# ── 5. Now import the app ──
from harmonizer.main import app as fastapi_app  # noqa: E402
from harmonizer.models import Base, Control  # noqa: E402
from harmonizer.routers.control_mappings import get_session_factory  # noqa: E402
from harmonizer.services.scorers import SimilarityScorer, get_similarity_scorer  # noqa: E402

fastapi_app.dependency_overrides[get_session_factory] = lambda: TestSession


class FakeScorer(SimilarityScorer):
    """Deterministic scorer driven by a table of text pairs.

    A table value may be a float, an exception instance (raised) or a
    coroutine function (awaited, e.g. to simulate a slow backend). Pairs are
    looked up regardless of order.
    """

    name = "fake"

    def __init__(self, scores: dict | None = None, default=0.0):
        self.scores: dict = {}
        self.default = default
        self.calls: list[tuple[str, str]] = []
        for (a, b), value in (scores or {}).items():
            self.set(a, b, value)

    def set(self, text_a: str, text_b: str, value):
        self.scores[frozenset((text_a, text_b))] = value

    async def score(self, text_a, text_b):
        self.calls.append((text_a, text_b))
        value = self.scores.get(frozenset((text_a, text_b)), self.default)
        if isinstance(value, Exception):
            raise value
        if callable(value):
            return await value()
        return value


# ── Fixtures ──

@pytest_asyncio.fixture(autouse=True)
async def setup_database():
    """Create all tables before each test, drop after."""
    async with TEST_ENGINE.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with TEST_ENGINE.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)


@pytest_asyncio.fixture
async def client() -> AsyncGenerator[AsyncClient, None]:
    transport = ASGITransport(app=fastapi_app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


@pytest_asyncio.fixture
async def db() -> AsyncGenerator[AsyncSession, None]:
    async with TestSession() as session:
        yield session


@pytest.fixture
def scorer():
    """FakeScorer served to the endpoints for the duration of a test."""
    fake = FakeScorer()
    fastapi_app.dependency_overrides[get_similarity_scorer] = lambda: fake
    yield fake
    fastapi_app.dependency_overrides.pop(get_similarity_scorer, None)


@pytest.fixture
def session_factory():
    return TestSession


# ── Seed data helpers ──

@pytest.fixture
def make_controls(db: AsyncSession):
    """Factory: insert ``(control_id, name)`` rows of one framework, return the Controls."""
    async def _make(framework: str, rows, client_id: int | None = None) -> list[Control]:
        controls = [
            Control(control_id=code, name=name, framework=framework, client_id=client_id)
            for code, name in rows
        ]
        db.add_all(controls)
        await db.commit()
        return controls
    return _make


@pytest_asyncio.fixture
async def seed_frameworks(make_controls):
    """Three small global frameworks: ISO 27001, SOC2 and NIST CSF."""
    iso = await make_controls("ISO 27001", [
        ("A.5.1", "Information security policies"),
        ("A.8.1", "Asset inventory"),
    ])
    soc2 = await make_controls("SOC2", [
        ("CC1.1", "Security policy"),
        ("CC6.1", "Logical access controls"),
    ])
    nist = await make_controls("NIST CSF", [
        ("ID.AM-01", "Hardware inventory"),
    ])
    return {"iso": iso, "soc2": soc2, "nist": nist}
