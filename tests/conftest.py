"""Shared pytest fixtures for Caverna tests."""

from __future__ import annotations

import shutil
import tempfile
import threading
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from io import BytesIO
from pathlib import Path

import pytest
from fastapi.testclient import TestClient
from PIL import Image

from caverna.api.main import create_app
from caverna.core.catalog import Catalog, load_catalog
from caverna.core.config import CavernaConfig
from caverna.core.job_store import JobStore
from caverna.core.orchestrator import GenerationOrchestrator
from caverna.core.prompt_cache import PromptCache
from caverna.core.retry import RetryPolicy
from caverna.core.storage import LocalAssetStorage
from caverna.providers.base import ProviderBase, ProviderResult


def make_png_bytes(color: tuple[int, int, int] = (120, 120, 120)) -> bytes:
    """Encode a tiny solid-colour PNG."""
    buffer = BytesIO()
    Image.new("RGB", (8, 8), color).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeProvider(ProviderBase):
    """Controllable provider for orchestrator tests.

    Args:
        config: Test configuration.
        name: Provider name recorded as ``service_used``.
        results: Results returned in order; once exhausted every call
            succeeds with a small PNG.
        gate: When set, each call blocks until the event is set.
        raises: Exception raised by every call.
    """

    def __init__(
        self,
        config: CavernaConfig,
        name: str = "fake",
        results: list[ProviderResult] | None = None,
        gate: threading.Event | None = None,
        raises: Exception | None = None,
    ) -> None:
        self.name = name
        super().__init__(config)
        self.results = list(results or [])
        self.gate = gate
        self.raises = raises
        self.calls: list[tuple[str, str]] = []
        self.closed = False
        self._lock = threading.Lock()

    def render(self, positive_prompt: str, negative_prompt: str) -> ProviderResult:
        with self._lock:
            self.calls.append((positive_prompt, negative_prompt))
        if self.gate is not None:
            self.gate.wait(timeout=10)
        if self.raises is not None:
            raise self.raises
        with self._lock:
            if self.results:
                return self.results.pop(0)
        return ProviderResult.ok(make_png_bytes())

    def close(self) -> None:
        self.closed = True


class MutableClock:
    """UTC clock that only moves when told to."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime.now(timezone.utc)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> None:
        self.now = self.now + timedelta(**kwargs)


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for test files.

    Yields:
        Path to temporary directory

    Cleanup:
        Directory is removed after test completes
    """
    temp_path = Path(tempfile.mkdtemp())
    try:
        yield temp_path
    finally:
        shutil.rmtree(temp_path, ignore_errors=True)


@pytest.fixture
def test_config(temp_dir: Path) -> CavernaConfig:
    """Create a test configuration with temporary directories and no delays."""
    return CavernaConfig(
        _env_file=None,
        data_dir=temp_dir / "data",
        gallery_dir=temp_dir / "gallery",
        models_dir=temp_dir / "models",
        device="cpu",
        torch_dtype="float32",
        providers=["mock"],
        provider_timeout_seconds=5,
        dispatch_max_attempts=2,
        dispatch_base_delay_seconds=0,
        dispatch_max_delay_seconds=0,
        dispatch_jitter=0,
        mock_delay_seconds=0,
        watchdog_interval_seconds=3600,
        worker_threads=4,
    )


@pytest.fixture
def catalog() -> Catalog:
    """The packaged reference catalog."""
    return load_catalog()


@pytest.fixture
def valid_selection() -> dict:
    return {
        "pose": "arms-crossed",
        "outfit": "hoodie-sweatpants",
        "footwear": "air-jordan-1-chicago",
    }


@pytest.fixture
def png_bytes() -> bytes:
    return make_png_bytes()


@pytest.fixture
def clock() -> MutableClock:
    return MutableClock()


@pytest.fixture
def fake_provider_factory(test_config: CavernaConfig) -> Callable[..., FakeProvider]:
    """Build :class:`FakeProvider` instances bound to the test config."""

    def _factory(**kwargs) -> FakeProvider:
        return FakeProvider(test_config, **kwargs)

    return _factory


@pytest.fixture
def job_store(test_config: CavernaConfig) -> JobStore:
    return JobStore(test_config.jobs_db_path)


@pytest.fixture
def asset_storage(test_config: CavernaConfig) -> LocalAssetStorage:
    return LocalAssetStorage(test_config.gallery_dir, test_config.public_base_url)


@pytest.fixture
def make_orchestrator(
    test_config: CavernaConfig,
    catalog: Catalog,
    job_store: JobStore,
    asset_storage: LocalAssetStorage,
    clock: MutableClock,
) -> Generator[Callable[..., GenerationOrchestrator], None, None]:
    """Factory for orchestrators wired to temporary storage.

    Every orchestrator built here is shut down after the test, after
    releasing any provider still blocked on its gate.
    """
    created: list[GenerationOrchestrator] = []

    def _factory(providers: list[ProviderBase], **kwargs) -> GenerationOrchestrator:
        options = {
            "prompt_cache": PromptCache(max_entries=100),
            "retry_policy": RetryPolicy(max_attempts=2, base_delay=0, max_delay=0, jitter=0),
            "provider_timeout": 5.0,
            "max_pending_seconds": 900.0,
            "worker_threads": 4,
            "sleep": lambda _seconds: None,
            "clock": clock,
        }
        options.update(kwargs)
        orchestrator = GenerationOrchestrator(
            catalog, job_store, asset_storage, providers, **options
        )
        created.append(orchestrator)
        return orchestrator

    yield _factory

    for orchestrator in created:
        for provider in orchestrator.providers:
            gate = getattr(provider, "gate", None)
            if gate is not None:
                gate.set()
        orchestrator.shutdown(wait=True)


@pytest.fixture
def api_provider(fake_provider_factory) -> FakeProvider:
    """The provider behind :func:`test_client`.  Tests may set ``gate`` or queue results."""
    return fake_provider_factory()


@pytest.fixture
def test_client(
    test_config: CavernaConfig,
    make_orchestrator: Callable[..., GenerationOrchestrator],
    api_provider: FakeProvider,
) -> Generator[TestClient, None, None]:
    """FastAPI TestClient wired to a temporary orchestrator.

    The lifespan runs for the whole test, so the app's orchestrator is
    available as ``test_client.app.state.orchestrator``.
    """
    app = create_app(test_config, orchestrator=make_orchestrator([api_provider]))
    with TestClient(app) as client:
        yield client
        # Release a gated provider before the app waits for its dispatch pool.
        if api_provider.gate is not None:
            api_provider.gate.set()
