"""
Shared fixtures.

SQL-backed tests run against a throwaway SQLite file through aiosqlite, with
the same engine setup (WAL, busy timeout, DB gate) the server uses.
"""
import time
from decimal import Decimal

import pytest
import fakeredis.aioredis

from eventpass.checkout import TicketDesk
from eventpass.config import Settings
from eventpass.errors import DispatchError
from eventpass.gateway import MockGateway
from eventpass.infra.sql import make_async_engine
from eventpass.model.catalog import EventCatalog, UserDirectory
from eventpass.model.ledger import new_ledgers
from eventpass.model.orm import Base, Event, User
from eventpass.notify import NotificationDispatcher
from eventpass.tickets import TicketIssuer

GATEWAY_SECRET = "test-gateway-secret"
WEBHOOK_SECRET = "test-webhook-secret"
TICKET_SECRET = "test-ticket-secret"
AUTH_SECRET = "test-auth-secret"

DAY = 24 * 3600


class FakeClock:
    def __init__(self, now: float) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingDispatcher(NotificationDispatcher):
    def __init__(self) -> None:
        self.sent = []
        self.fail = False

    async def send_ticket(self, recipient, ticket) -> None:
        if self.fail:
            raise DispatchError("mail relay down")
        self.sent.append((recipient, ticket))


@pytest.fixture
def clock():
    return FakeClock(time.time())


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def gateway():
    return MockGateway("rzp_test_key", GATEWAY_SECRET)


def seed_rows(now: float):
    return [
        User(id="u1", name="Alice", email="alice@example.com"),
        User(id="u2", name="Bob", email="bob@example.com"),
        Event(id="evt_open", title="RustConf", price=500,
              registration_deadline=now + DAY, organizer_id="org1"),
        Event(id="evt_frac", title="PyDay", price=Decimal("499.99"),
              registration_deadline=now + DAY, organizer_id="org1"),
        Event(id="evt_closed", title="Past Gala", price=100,
              registration_deadline=now - 60, organizer_id="org2"),
    ]


@pytest.fixture
def db_url(tmp_path):
    return f"sqlite:///{tmp_path / 'eventpass.db'}"


@pytest.fixture
async def database(db_url, clock):
    engine, SessionAsync, gated = make_async_engine(db_url)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    async with SessionAsync() as session:
        async with session.begin():
            session.add_all(seed_rows(clock.now))
    yield SessionAsync, gated
    await engine.dispose()


@pytest.fixture
async def fake_redis():
    r = fakeredis.aioredis.FakeRedis(decode_responses=True)
    yield r
    await r.flushall()
    await r.aclose()


@pytest.fixture
async def make_desk(database, gateway, dispatcher, clock):
    """
    Builds a TicketDesk bound to its own session, the way each request gets
    one. Pass ``redis=`` to put the ledgers on Redis instead.
    """
    SessionAsync, gated = database
    sessions = []

    def _make(redis=None) -> TicketDesk:
        db = SessionAsync()
        sessions.append(db)
        if redis is None:
            payments, registrations = new_ledgers("pg", db=db, gated=gated)
        else:
            payments, registrations = new_ledgers("redis", r=redis)
        issuer = TicketIssuer(
            registrations=registrations,
            dispatcher=dispatcher,
            secret=TICKET_SECRET,
            clock=clock,
        )
        return TicketDesk(
            events=EventCatalog(db=db, gated=gated),
            users=UserDirectory(db=db, gated=gated),
            payments=payments,
            registrations=registrations,
            gateway=gateway,
            issuer=issuer,
            gateway_secret=GATEWAY_SECRET,
            webhook_secret=WEBHOOK_SECRET,
            clock=clock,
        )

    yield _make
    for s in sessions:
        await s.close()


@pytest.fixture
def test_settings(db_url):
    return Settings(
        database_url=db_url,
        gateway_key_secret=GATEWAY_SECRET,
        gateway_webhook_secret=WEBHOOK_SECRET,
        ticket_secret=TICKET_SECRET,
        auth_secret=AUTH_SECRET,
        admin_username="admin",
        admin_password="s3cret",
        log_level="DEBUG",
    )
