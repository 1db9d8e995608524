# tests/conftest.py
import os
import re
import threading
from datetime import timedelta

import pytest

os.environ.setdefault("SECRET_KEY", "test-secret-key-not-for-production")
os.environ["SQLALCHEMY_DATABASE_URL"] = "sqlite://"
os.environ["MAIL_SUPPRESS_SEND"] = "true"

from fastapi.testclient import TestClient

from accessgate.config import settings
from accessgate.core.clock import Clock, RandomSource, utcnow
from accessgate.core.dependencies import get_clock, get_geolocation_provider, get_notifier
from accessgate.core.exceptions import ChallengeConflictError, UpstreamUnavailableError
from accessgate.core.rate_limiter import limiter
from accessgate.database import Base, SessionLocal, engine, get_db
from accessgate.main import app as fastapi_app
import accessgate.models  # noqa: F401
from accessgate.schemas.ledger import LocationSample
from accessgate.services.account_directory import SqlAccountDirectory
from accessgate.services.email_service import Notifier
from accessgate.services.ledger import Ledger, SqlLedger
from accessgate.services.orchestrator import VerificationOrchestrator

PASSWORD = "correct-horse-battery"


# ── Test doubles ──────────────────────────────────────────────────────────────

class FrozenClock(Clock):
    def __init__(self, now=None):
        self.current = now or utcnow()

    def now(self):
        return self.current

    def advance(self, **kwargs):
        self.current = self.current + timedelta(**kwargs)


class SequenceRandom(RandomSource):
    """randbelow() replays the queued values, then falls back to real randomness."""

    def __init__(self, values=()):
        self.values = list(values)

    def queue_code(self, code: str):
        self.values.append(int(code) - 100000)

    def randbelow(self, upper: int) -> int:
        if self.values:
            return self.values.pop(0)
        return super().randbelow(upper)


class FakeNotifier(Notifier):
    def __init__(self):
        self.sent = []
        self.fail = False

    async def send(self, contact, subject, body):
        if self.fail:
            raise UpstreamUnavailableError("notifier", "SMTP down")
        self.sent.append({"contact": contact, "subject": subject, "body": body})
        return f"msg-{len(self.sent)}"

    def last_code(self, contact=None) -> str:
        for message in reversed(self.sent):
            if contact is None or message["contact"] == contact:
                return re.search(r"code is: (\d{6})", message["body"]).group(1)
        raise AssertionError("no code was sent")


class FakeGeolocation:
    def __init__(self):
        self.places = {}
        self.fail = False
        self.calls = []

    def place(self, ip, city, country, latitude=None, longitude=None):
        self.places[ip] = (city, country, latitude, longitude)

    async def lookup(self, ip, observed_at):
        self.calls.append(ip)
        if self.fail:
            raise RuntimeError("provider exploded")
        if ip not in self.places:
            return LocationSample.unknown(ip, observed_at)
        city, country, latitude, longitude = self.places[ip]
        return LocationSample(
            ip=ip,
            city=city,
            country=country,
            latitude=latitude,
            longitude=longitude,
            observed_at=observed_at,
        )


class InMemoryLedger(Ledger):
    """
    Dict-backed ledger. consume_challenge holds a lock across the check and
    the flip, which is the in-process equivalent of the conditional UPDATE.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.challenges = {}
        self.events = []
        self.trusted = []
        self.samples = []

    def invalidate_challenges(self, purpose, subject, now):
        with self._lock:
            count = 0
            for c in self.challenges.values():
                if c.purpose == purpose and c.subject == subject and not c.consumed:
                    c.consumed = True
                    c.consumed_at = now
                    count += 1
            return count

    def put_challenge(self, challenge):
        with self._lock:
            if not challenge.consumed and any(
                c.purpose == challenge.purpose and c.subject == challenge.subject and not c.consumed
                for c in self.challenges.values()
            ):
                raise ChallengeConflictError("open challenge already exists")
            self.challenges[challenge.id] = challenge.model_copy()

    def get_challenge(self, challenge_id):
        c = self.challenges.get(challenge_id)
        return c.model_copy() if c else None

    def consume_challenge(self, purpose, subject, code_hash, now):
        with self._lock:
            for c in self.challenges.values():
                if (
                    c.purpose == purpose
                    and c.subject == subject
                    and c.code_hash == code_hash
                    and not c.consumed
                    and c.expires_at > now
                ):
                    c.consumed = True
                    c.consumed_at = now
                    return True
            return False

    def append_event(self, event):
        self.events.append(event)

    def latest_flow_event(self, flow_id):
        matching = [e for e in self.events if e.flow_id == flow_id]
        return matching[-1] if matching else None

    def latest_event(self, user_id, event_types):
        types = set(event_types)
        matching = [e for e in self.events if e.user_id == user_id and e.event_type in types]
        return matching[-1] if matching else None

    def flow_events(self, flow_id):
        return [e for e in self.events if e.flow_id == flow_id]

    def put_trusted_device(self, record):
        self.trusted.append(record)

    def active_trusted_devices(self, user_id, now):
        return [r for r in reversed(self.trusted) if r.user_id == user_id and r.trusted_until > now]

    def put_location_sample(self, user_id, sample):
        self.samples.append((user_id, sample))

    def location_history(self, user_id, limit):
        return [s for uid, s in reversed(self.samples) if uid == user_id][:limit]


# ── Database ──────────────────────────────────────────────────────────────────

@pytest.fixture(scope="session", autouse=True)
def create_tables():
    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture()
def db_session():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.rollback()
        session.close()
        # Ledger writes commit, so clean every table after each test
        with engine.begin() as conn:
            for table in reversed(Base.metadata.sorted_tables):
                conn.execute(table.delete())


# ── Components ────────────────────────────────────────────────────────────────

@pytest.fixture()
def clock():
    return FrozenClock()


@pytest.fixture()
def rng():
    return SequenceRandom()


@pytest.fixture()
def notifier():
    return FakeNotifier()


@pytest.fixture()
def geolocation():
    return FakeGeolocation()


@pytest.fixture()
def memory_ledger():
    return InMemoryLedger()


@pytest.fixture()
def sql_ledger(db_session):
    return SqlLedger(db_session)


@pytest.fixture()
def directory(db_session):
    return SqlAccountDirectory(db_session)


@pytest.fixture()
def account_id(directory):
    return directory.create_account("alice@example.com", PASSWORD, "Alice")


@pytest.fixture()
def orchestrator(sql_ledger, directory, notifier, geolocation, clock, rng):
    return VerificationOrchestrator(
        ledger=sql_ledger,
        directory=directory,
        notifier=notifier,
        geolocation=geolocation,
        clock=clock,
        rng=rng,
    )


# ── HTTP ──────────────────────────────────────────────────────────────────────

@pytest.fixture()
def client(db_session, notifier, geolocation, clock, monkeypatch):
    # Requests arrive through a reverse proxy whose socket address is TestClient's peer
    monkeypatch.setattr(settings, "trust_proxy_headers", True)
    monkeypatch.setattr(settings, "trusted_proxies", "testclient")

    def _get_db_override():
        yield db_session

    fastapi_app.dependency_overrides[get_db] = _get_db_override
    fastapi_app.dependency_overrides[get_notifier] = lambda: notifier
    fastapi_app.dependency_overrides[get_geolocation_provider] = lambda: geolocation
    fastapi_app.dependency_overrides[get_clock] = lambda: clock
    limiter.enabled = False
    try:
        with TestClient(fastapi_app) as test_client:
            yield test_client
    finally:
        limiter.enabled = True
        fastapi_app.dependency_overrides.clear()


@pytest.fixture()
def password():
    return PASSWORD
