from pathlib import Path

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from slm_manager.config import AppSettings, BackendBinaries
from slm_manager.main import create_app
from slm_manager.orchestrator import LocalModelOrchestrator
from tests.fakes import FakeSpawner, StubHealthClient


def make_settings(tmp_path: Path, **overrides) -> AppSettings:
    settings = AppSettings(
        config_dir=str(tmp_path / "config"),
        cache_paths=[str(tmp_path / "hf-cache")],
        hub_base_url="http://hub.test",
        health_check_interval_s=60.0,
        health_probe_timeout_s=0.5,
        stop_timeout_s=0.2,
        discover_on_startup=False,
        binaries=BackendBinaries(
            python_exe="python3",
            ollama_path=str(tmp_path / "bin" / "ollama"),
            llama_server_path=str(tmp_path / "bin" / "llama-server"),
        ),
    )
    if overrides:
        settings = settings.model_copy(update=overrides)
    return settings


@pytest.fixture
def orchestrator_factory(tmp_path: Path):
    def _factory(
        *,
        spawner: FakeSpawner | None = None,
        http_client=None,
        available: bool = True,
        **settings_overrides,
    ) -> LocalModelOrchestrator:
        settings = make_settings(tmp_path, **settings_overrides)
        return LocalModelOrchestrator(
            settings,
            spawner=spawner or FakeSpawner(),
            http_client=http_client or StubHealthClient(),
            backend_available=lambda backend: available,
        )

    return _factory


@pytest.fixture
def app_factory(orchestrator_factory):
    def _factory(**kwargs):
        orch = orchestrator_factory(**kwargs)
        app = create_app(orch.settings, orchestrator=orch)
        return app, orch

    return _factory


@pytest.fixture
async def client(app_factory):
    app, orch = app_factory()
    async with LifespanManager(app):
        transport = ASGITransport(app=app)
        async with AsyncClient(transport=transport, base_url="http://test") as http_client:
            http_client.app = app  # type: ignore[attr-defined]
            http_client.orchestrator = orch  # type: ignore[attr-defined]
            http_client.spawner = orch.supervisor.spawner  # type: ignore[attr-defined]
            yield http_client
