# tests/conftest.py

from datetime import datetime, timedelta

import fakeredis
import pytest
from starlette.testclient import TestClient

from cache import QueueCache
from main import app, get_db_engine, get_queue_service
from models import Appointment, AppointmentStatus
from services import QueueService
from store import get_engine, init_db, open_session

# A Tuesday, mid-morning
FIXED_NOW = datetime(2026, 3, 10, 11, 0)
TODAY = FIXED_NOW.date()


@pytest.fixture
def engine(tmp_path):
    eng = get_engine(f"sqlite:///{tmp_path / 'queue_test.db'}", lock_timeout=10)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def redis_client():
    return fakeredis.FakeRedis(server=fakeredis.FakeServer(), decode_responses=True)


@pytest.fixture
def cache(redis_client):
    return QueueCache(redis_client)


@pytest.fixture
def clock():
    return lambda: FIXED_NOW


@pytest.fixture
def service(engine, cache, clock):
    return QueueService(engine, cache, clock=clock)


@pytest.fixture
def make_appointment(engine):
    """Insert an appointment row directly, bypassing the token sequencer."""

    def _make(
        scheduled_at=None,
        status=AppointmentStatus.scheduled,
        token_number=None,
        provider_id="dr-a",
        tenant_id="clinic-1",
        **fields,
    ):
        scheduled_at = scheduled_at or FIXED_NOW
        appointment = Appointment(
            tenant_id=tenant_id,
            provider_id=provider_id,
            scheduled_at=scheduled_at,
            status=status,
            token_number=token_number,
            token_date=scheduled_at.date() if token_number is not None else None,
            **fields,
        )
        with open_session(engine, write=True) as session, session.begin():
            session.add(appointment)
        return appointment

    return _make


@pytest.fixture
def make_completed(make_appointment):
    """Create ``count`` completed visits on ``day`` of ``minutes`` each."""

    def _make(count, day, minutes=10, provider_id="dr-a", tenant_id="clinic-1"):
        created = []
        start = datetime.combine(day, datetime.min.time()).replace(hour=9)
        for i in range(count):
            started = start + timedelta(minutes=i * minutes)
            created.append(make_appointment(
                scheduled_at=started,
                status=AppointmentStatus.completed,
                token_number=i + 1,
                provider_id=provider_id,
                tenant_id=tenant_id,
                started_at=started,
                completed_at=started + timedelta(minutes=minutes),
            ))
        return created

    return _make


@pytest.fixture
def test_client(engine, service):
    """
    Provides a TestClient bound to the per-test database and cache.
    Startup hooks are not run, so no scheduler is started.
    """
    app.dependency_overrides[get_db_engine] = lambda: engine
    app.dependency_overrides[get_queue_service] = lambda: service
    client = TestClient(app)
    yield client
    app.dependency_overrides.clear()
