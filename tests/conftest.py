import random
from pathlib import Path
from types import SimpleNamespace

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from simcrm.config import AppSettings, RateLimitConfig
from simcrm.db import Database
from simcrm.executor import RecordExecutor
from simcrm.generator import ContentCache, ContentGenerator
from simcrm.job_store import JobStore
from simcrm.main import create_app
from simcrm.metadata import CrmMetadataService
from simcrm.planner import StepPlanner
from simcrm.rate_limiter import RateLimiter
from simcrm.references import ReferenceResolver
from simcrm.runner import StepRunner
from tests.fakes import FakeClock, FakeCrmClient, FakeLLMClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        database_path=str(tmp_path / "test.db"),
        host="127.0.0.1",
        port=8000,
        crm_base_url="http://crm.test",
        crm_access_token="test-token",
        llm_base_url="http://llm.test/v1",
        llm_api_key="test-key",
        rate_limit=RateLimitConfig(max_concurrent_requests=5, max_retries=2, base_delay_s=1.0, max_delay_s=30.0),
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


def build_engine(settings: AppSettings, store: JobStore, crm, llm, clock) -> SimpleNamespace:
    limiter = RateLimiter(settings.rate_limit, clock=clock, rng=random.Random(7))
    cache = ContentCache(settings.generation.cache_ttl_s, clock=clock)
    metadata = CrmMetadataService(crm, limiter, clock=clock)
    resolver = ReferenceResolver(
        store,
        crm,
        limiter,
        strict=settings.references_strict,
        search_fallback=settings.references.search_fallback,
    )
    generator = ContentGenerator(
        llm, limiter, cache, config=settings.generation, metadata=metadata, strict=settings.generation_strict
    )
    executor = RecordExecutor(crm, limiter, settings.executor)
    planner = StepPlanner(store, settings.planner, clock=clock, rng=random.Random(3))
    runner = StepRunner(store, resolver, generator, executor, settings.runner, clock=clock)
    return SimpleNamespace(
        settings=settings,
        store=store,
        crm=crm,
        llm=llm,
        clock=clock,
        limiter=limiter,
        cache=cache,
        metadata=metadata,
        resolver=resolver,
        generator=generator,
        executor=executor,
        planner=planner,
        runner=runner,
    )


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
async def store(tmp_path: Path) -> JobStore:
    db = Database(str(tmp_path / "jobs.db"))
    await db.init()
    return JobStore(db.path)


@pytest.fixture
def engine_factory(tmp_path: Path, store: JobStore, clock: FakeClock):
    def _factory(*, crm=None, llm=None, **settings_overrides) -> SimpleNamespace:
        settings = make_settings(tmp_path, **settings_overrides)
        return build_engine(settings, store, crm or FakeCrmClient(), llm or FakeLLMClient(), clock)

    return _factory


@pytest.fixture
def engine(engine_factory) -> SimpleNamespace:
    return engine_factory()


@pytest.fixture
def app_factory(tmp_path: Path):
    def _factory(*, fake_crm=None, fake_llm=None, config_path: Path | None = None, **settings_overrides):
        settings = make_settings(tmp_path, **settings_overrides)
        crm = fake_crm or FakeCrmClient()
        llm = fake_llm or FakeLLMClient()
        cfg_path = config_path or (tmp_path / "config.json")
        app = create_app(
            settings,
            crm_client=crm,
            llm_client=llm,
            clock=FakeClock(),
            config_path=cfg_path,
            start_runner=False,
        )
        return app, cfg_path, crm, llm

    return _factory


@pytest.fixture
async def client(app_factory):
    app, config_path, crm, llm = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.config_path = config_path  # type: ignore[attr-defined]
            http_client.fake_crm = crm  # type: ignore[attr-defined]
            http_client.fake_llm = llm  # type: ignore[attr-defined]
            yield http_client
