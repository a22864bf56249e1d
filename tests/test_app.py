"""Tests for the cron trigger service."""

from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine

from capturebot.core.db import get_db
from capturebot.core.ratelimit import MemoryCounterStore, RateLimiter
from capturebot.core.settings import Settings
from capturebot.merger.pipeline import MergeRunStats
from capturebot.scheduler.delivery import DeliveryRunStats
from capturebot.services.app import app, get_app_settings
from capturebot.trender.pipeline import TrendRunStats

SECRET = "s3cret"
AUTH = {"Authorization": f"Bearer {SECRET}"}


async def _sqlite_db():
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    async with AsyncSession(engine) as session:
        yield session
    await engine.dispose()


class _BrokenSession:

    async def execute(self, *args, **kwargs):
        raise RuntimeError("database unreachable")


async def _broken_db():
    yield _BrokenSession()


@pytest.fixture
def client():
    app.dependency_overrides[get_db] = _sqlite_db
    app.dependency_overrides[get_app_settings] = lambda: Settings(
        cron_secret=SECRET, openai_api_key=None, delivery_webhook_url=None,
    )
    app.state.rate_limiter = RateLimiter(MemoryCounterStore(), max_attempts=2, window_seconds=900)
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()
    app.state.rate_limiter = None


def test_healthz(client):
    response = client.get("/healthz")

    assert response.status_code == 200
    assert response.json()["status"] == "healthy"
    assert response.json()["service"] == "capturebot"


def test_healthz_reports_database_failure(client):
    app.dependency_overrides[get_db] = _broken_db

    response = client.get("/healthz")

    assert response.status_code == 503
    assert response.json()["status"] == "unhealthy"


def test_root_lists_endpoints(client):
    response = client.get("/")

    assert response.status_code == 200
    data = response.json()
    assert data["service"] == "capturebot"
    assert "/trends/run (POST)" in data["endpoints"].values()


def test_trends_run_requires_secret(client):
    with patch("capturebot.services.app.run_trend_detection", new=AsyncMock()) as run:
        response = client.post("/trends/run")

    assert response.status_code == 401
    run.assert_not_awaited()


def test_trends_run(client):
    stats = TrendRunStats(users_total=2, users_processed=2, trends_stored=3)
    with patch("capturebot.services.app.run_trend_detection", new=AsyncMock(return_value=stats)):
        response = client.post("/trends/run", headers=AUTH)

    assert response.status_code == 200
    body = response.json()
    assert body["job"] == "trends"
    assert body["stats"]["trends_stored"] == 3


def test_failed_attempts_are_rate_limited(client):
    bad = {"Authorization": "Bearer wrong", "X-Forwarded-For": "10.0.0.9"}

    codes = [client.post("/containers/merge", headers=bad).status_code for _ in range(3)]

    assert codes == [401, 401, 429]
    blocked = client.post("/containers/merge", headers=bad)
    assert "Retry-After" in blocked.headers

    other = client.post("/containers/merge", headers={"Authorization": "Bearer wrong", "X-Forwarded-For": "10.0.0.10"})
    assert other.status_code == 401


def test_merge_run(client):
    stats = MergeRunStats(merges_executed=1, items_moved=4)
    with patch("capturebot.services.app.run_container_merges", new=AsyncMock(return_value=stats)):
        response = client.post("/containers/merge", headers=AUTH)

    assert response.status_code == 200
    assert response.json()["stats"]["items_moved"] == 4


def test_delivery_run_without_webhook(client):
    stats = DeliveryRunStats(users_selected=1)
    with patch("capturebot.services.app.run_delivery_tick", new=AsyncMock(return_value=stats)) as run:
        response = client.post("/delivery/run", headers=AUTH)

    assert response.status_code == 200
    assert response.json()["stats"]["users_selected"] == 1
    assert run.await_args.args[0] is None


def test_decay_run(client):
    with patch("capturebot.services.app.decay_stale_interests", new=AsyncMock(return_value=7)):
        response = client.post("/interests/decay", headers=AUTH)

    assert response.status_code == 200
    assert response.json()["stats"] == {"decayed": 7}


def test_job_failure_returns_500(client):
    with patch("capturebot.services.app.run_trend_detection", new=AsyncMock(side_effect=RuntimeError("boom"))):
        response = client.post("/trends/run", headers=AUTH)

    assert response.status_code == 500


def test_missing_secret_configuration(client):
    app.dependency_overrides[get_app_settings] = lambda: Settings(cron_secret=None)

    response = client.post("/trends/run", headers=AUTH)

    assert response.status_code == 503
