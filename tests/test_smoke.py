"""Smoke tests for the FastAPI app, configuration and Celery wiring."""

import fakeredis
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from uploadguard.main import app


@pytest.fixture
def fake_redis():
    """Replace the real Redis client with an in-process fake."""
    fake = fakeredis.FakeRedis(decode_responses=True)
    app.state.redis = fake
    yield fake
    app.state.redis = None


@pytest_asyncio.fixture
async def client(fake_redis):
    """Async HTTP client connected to the FastAPI app (no real I/O)."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac


class TestHealthEndpoint:
    @pytest.mark.asyncio
    async def test_healthz_returns_ok_status(self, client: AsyncClient):
        response = await client.get("/healthz")
        assert response.status_code == 200
        assert response.json() == {"status": "ok"}

    @pytest.mark.asyncio
    async def test_openapi_lists_upload_and_media_routes(self, client: AsyncClient):
        paths = (await client.get("/v1/openapi.json")).json()["paths"]
        assert "/v1/uploads/{profile}" in paths
        assert any(path.startswith("/media/") for path in paths)


class TestConfiguration:
    def test_roots_point_at_test_directory(self):
        from uploadguard.config import settings

        assert "uploadguard-tests-" in settings.quarantine_root
        assert "uploadguard-tests-" in settings.storage_root

    def test_redis_url_loaded(self):
        from uploadguard.config import settings

        assert settings.redis_url.startswith("redis://")


class TestRedisSmoke:
    def test_redis_client_on_app_state(self, fake_redis):
        assert app.state.redis is not None
        assert app.state.redis.ping() is True


class TestCelerySmoke:
    def test_worker_tasks_registered(self):
        import uploadguard.workers.upload_worker  # noqa: F401
        from uploadguard.celery_app import celery_app

        registered = {name for name in celery_app.tasks if name.startswith("uploadguard.")}
        assert "uploadguard.workers.upload_worker.process_upload_task" in registered
        assert "uploadguard.workers.upload_worker.prune_quarantine_task" in registered

    def test_json_serialisation_only(self):
        from uploadguard.celery_app import celery_app

        assert celery_app.conf.task_serializer == "json"
        assert celery_app.conf.accept_content == ["json"]
