# tests/conftest.py
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest
import pytest_asyncio
from fastapi.testclient import TestClient
from jose import jwt

from app.core.config import Settings
from app.core.errors import ExternalCallFailure
from app.db.session import build_engine, build_sessionmaker, init_db
from app.main import create_app
from app.services.attendance_service import AttendanceService

JWT_SECRET = "test-secret"
WEBHOOK_SECRET = "webhook-secret"
T0 = datetime(2025, 3, 3, 9, 0, tzinfo=timezone.utc)


class FakeClock:
    """
    Controllable replacement for utcnow().
    """

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, minutes: float = 0, seconds: float = 0) -> datetime:
        self.now = self.now + timedelta(minutes=minutes, seconds=seconds)
        return self.now

    def at(self, minutes: float) -> datetime:
        """Time `minutes` after T0."""
        return T0 + timedelta(minutes=minutes)


class FakePlatformClient:
    """
    In-memory stand-in for the Zoom client.

    - `participants[meeting_id]` is the live snapshot returned by
      list_current_participants().
    - `failures` is a list of exceptions raised (in order) before the
      snapshot is returned.
    """

    def __init__(self) -> None:
        self.participants: Dict[str, List[Dict[str, Any]]] = {}
        self.meetings: Dict[str, Dict[str, Any]] = {}
        self.failures: List[Exception] = []
        self.participant_calls = 0

    async def get_access_token(self) -> str:
        return "fake-token"

    async def list_current_participants(self, meeting_id: str) -> List[Dict[str, Any]]:
        self.participant_calls += 1
        if self.failures:
            raise self.failures.pop(0)
        return list(self.participants.get(meeting_id, []))

    async def get_meeting(self, meeting_id: str) -> Optional[Dict[str, Any]]:
        return self.meetings.get(meeting_id)


def retryable_failure(status_code: int = 503) -> ExternalCallFailure:
    return ExternalCallFailure(
        f"Zoom GET participants failed (status={status_code})",
        status_code=status_code,
        retryable=True,
    )


def make_token(sub: str = "student-1", **claims: Any) -> str:
    payload = {"sub": sub, "name": "Ada Lovelace", "email": "ada@example.edu"}
    payload.update(claims)
    return jwt.encode(payload, JWT_SECRET, algorithm="HS256")


def zoom_participant(
    user_id: str = "zu-1",
    name: str = "Ada Lovelace",
    email: Optional[str] = "ada@example.edu",
    join_time: Optional[datetime] = None,
) -> Dict[str, Any]:
    entry: Dict[str, Any] = {"id": user_id, "user_id": user_id, "user_name": name}
    if email is not None:
        entry["email"] = email
    if join_time is not None:
        entry["join_time"] = join_time.isoformat()
    return entry


def build_settings(tmp_path, **overrides: Any) -> Settings:
    values: Dict[str, Any] = dict(
        APP_ENV="test",
        DB_URL=f"sqlite+aiosqlite:///{tmp_path / 'attendance_test.db'}",
        JWT_SECRET_KEY=JWT_SECRET,
        ZOOM_WEBHOOK_SECRET_TOKEN=None,
        POLL_INTERVAL_SECONDS=60.0,
        POLL_GRACE_PERIOD_SECONDS=60.0,
        POLL_GRACE_MISSES=2,
        SNAPSHOT_CACHE_TTL_SECONDS=0.0,
        RETRY_MAX_ATTEMPTS=3,
        RETRY_BASE_DELAY_SECONDS=1.0,
        RETRY_MAX_DELAY_SECONDS=30.0,
        AUTO_TRACK_ON_MEETING_START=False,
        SWEEP_ENABLED=False,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def platform() -> FakePlatformClient:
    return FakePlatformClient()


@pytest.fixture
def sleeps() -> List[float]:
    """Delays requested by the retry loop (nothing actually sleeps)."""
    return []


@pytest.fixture
def settings(tmp_path) -> Settings:
    return build_settings(tmp_path)


@pytest_asyncio.fixture
async def sessionmaker(settings):
    engine = build_engine(settings.DB_URL)
    await init_db(engine)
    yield build_sessionmaker(engine)
    await engine.dispose()


@pytest_asyncio.fixture
async def service(settings, sessionmaker, clock, platform, sleeps):
    """
    AttendanceService on a fresh SQLite file with a fake Zoom client and a
    fixed clock.
    """

    async def _fake_sleep(delay: float) -> None:
        sleeps.append(delay)

    svc = AttendanceService(
        settings,
        sessionmaker,
        platform_client=platform,
        clock=clock,
        sleep=_fake_sleep,
    )
    await svc.startup()
    yield svc
    await svc.shutdown()


@pytest.fixture
def client(tmp_path, clock, platform) -> TestClient:
    """
    TestClient for the full application on its own SQLite file.
    """
    app = create_app(build_settings(tmp_path), platform_client=platform, clock=clock)
    with TestClient(app) as test_client:
        yield test_client
