from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from deep_research.config import AppSettings, EndpointConfig, ModelRouting, OrchestrationLimits
from deep_research.db import Database
from deep_research.main import create_app
from tests.fakes import FakeReasoningClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    base_url = overrides.pop("base_url", "http://llm.test/v1")
    limits = overrides.pop("limits", None) or OrchestrationLimits()
    settings = AppSettings(
        openrouter_api_key="test-key",
        openrouter_base_url=base_url,
        routing=ModelRouting(
            planner=EndpointConfig(base_url=base_url, model_id="planner-model", api_key="test-key"),
            verifier=EndpointConfig(base_url=base_url, model_id="verifier-model", api_key="test-key"),
            executor=EndpointConfig(base_url=base_url, model_id="executor-model", api_key="test-key"),
            synthesizer=EndpointConfig(base_url=base_url, model_id="synthesizer-model", api_key="test-key"),
        ),
        limits=limits,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(str(tmp_path / "sessions.db"))
    await database.init()
    return database


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(*, fake_llm: FakeReasoningClient | None = None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        llm_client = fake_llm or FakeReasoningClient()
        app = create_app(settings, llm_client=llm_client)
        return app, llm_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, llm_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.fake_llm = llm_client  # type: ignore[attr-defined]
            yield http_client
