import pytest
from httpx import ASGITransport, AsyncClient

from farmops.core.config import Settings
from farmops.main import create_app

pytestmark = pytest.mark.unit


@pytest.mark.asyncio
async def test_healthz_ok_without_sentry(monkeypatch):
    calls = []
    monkeypatch.setattr("farmops.main.sentry_sdk.init", lambda **kw: calls.append(kw))
    settings = Settings(storage_backend="memory", sentry_dsn=None, _env_file=None)
    app = create_app(settings)
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        r = await ac.get("/healthz")
        assert r.status_code == 200
        assert r.json() == {"ok": True}
    assert calls == []


def test_sentry_initialised_with_clamped_sample_rate(monkeypatch):
    calls = []
    monkeypatch.setattr("farmops.main.sentry_sdk.init", lambda **kw: calls.append(kw))
    settings = Settings(
        storage_backend="memory",
        app_env="prod",
        sentry_dsn="https://key@sentry.example/1",
        sentry_traces_rate=1.0,
        _env_file=None,
    )

    create_app(settings)

    [options] = calls
    assert options["environment"] == "prod"
    assert options["traces_sample_rate"] == 0.2
    assert options["send_default_pii"] is False
