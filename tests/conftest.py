from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from graphagent.config import AppSettings, EndpointConfig
from graphagent.db import Database
from graphagent.main import create_app
from graphagent.service import DelegationService
from graphagent.streaming import EventBus
from tests.fakes import PLANNER_MODEL, WORKER_MODEL, FakeTavilyClient, ScriptedChatClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    base_url = overrides.pop("base_url", "http://llm.test/v1")
    settings = AppSettings(
        llm_base_url=base_url,
        planner_endpoint=EndpointConfig(base_url=base_url, model_id=PLANNER_MODEL),
        worker_endpoint=EndpointConfig(base_url=base_url, model_id=WORKER_MODEL),
        tavily_api_key=None,
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        reaper_interval_s=0,
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
async def db(tmp_path: Path) -> Database:
    database = Database(str(tmp_path / "graph.db"))
    await database.init()
    return database


@pytest.fixture
def service_factory(tmp_path: Path, db: Database):
    def _factory(
        turns=None,
        *,
        web: FakeTavilyClient | None = None,
        bus: EventBus | None = None,
        usage_recorder=None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, database_path=db.path, **settings_overrides)
        llm = ScriptedChatClient(turns)
        service = DelegationService(
            db,
            llm,
            web or FakeTavilyClient(api_key="test-key"),
            settings,
            bus=bus,
            usage_recorder=usage_recorder,
        )
        return service, llm

    return _factory


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(
        *,
        fake_llm: ScriptedChatClient | None = None,
        fake_web: FakeTavilyClient | None = None,
        config_path: Path | None = None,
        **settings_overrides,
    ):
        settings = make_settings(tmp_path, **settings_overrides)
        llm_client = fake_llm or ScriptedChatClient()
        web_client = fake_web or FakeTavilyClient(api_key=settings.tavily_api_key)
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(settings, llm_client=llm_client, web_client=web_client, config_path=cfg_path)
        return app, cfg_path, llm_client, web_client

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, llm_client, web_client = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_llm = llm_client  # type: ignore[attr-defined]
            http_client.fake_web = web_client  # type: ignore[attr-defined]
            yield http_client
