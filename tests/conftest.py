"""Shared pytest fixtures for Photoforge tests."""

import io
import shutil
import tempfile
import time
from collections.abc import Callable
from datetime import datetime, timedelta
from pathlib import Path
from typing import Generator

import pytest
from PIL import Image

from photoforge.core.config import PhotoforgeConfig
from photoforge.core.database import Database
from photoforge.core.errors import ProviderError
from photoforge.core.generations import GenerationStore
from photoforge.core.orchestrator import GenerationOrchestrator
from photoforge.core.prompt_resolver import PresetCatalog, PromptResolver
from photoforge.core.providers.base import ImageProvider, ProviderResult
from photoforge.core.quota import QuotaLedger, QuotaStore
from photoforge.core.uploads import UploadIntake
from photoforge.core.users import Tier, User, UserStore


def encode_image(
    size: tuple[int, int] = (320, 240),
    color: tuple[int, int, int] = (200, 60, 40),
    fmt: str = "JPEG",
) -> bytes:
    """Encode a solid-colour test image."""
    buffer = io.BytesIO()
    Image.new("RGB", size, color=color).save(buffer, format=fmt)
    return buffer.getvalue()


class FakeClock:
    """Controllable replacement for ``datetime.now``."""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


class FakeProvider(ImageProvider):
    """In-process provider double.

    Attributes
    ----------
    error : Exception | None
        Raised from ``generate`` when set
    handler : Callable | None
        ``handler(prompt, image_bytes)`` returning a :class:`ProviderResult`
    delay : float
        Seconds to block before answering
    calls : list[dict]
        Arguments of every ``generate`` call
    """

    name = "Fake"
    description = "Test double"
    version = "test"

    def __init__(self, config: PhotoforgeConfig):
        super().__init__(config)
        self.error: Exception | None = None
        self.handler: Callable[[str, bytes], ProviderResult] | None = None
        self.delay = 0.0
        self.calls: list[dict] = []

    @property
    def is_available(self) -> bool:
        return True

    def generate(self, prompt, image_bytes, *, width, height, mime_type="image/jpeg"):
        self.calls.append(
            {"prompt": prompt, "image_bytes": image_bytes, "width": width, "height": height}
        )
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        if self.handler is not None:
            return self.handler(prompt, image_bytes)
        return ProviderResult(image_bytes=encode_image((64, 64), (10, 120, 220), "PNG"))


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
def test_config(temp_dir: Path, monkeypatch) -> PhotoforgeConfig:
    """Create a test configuration with temporary directories and no API key."""
    monkeypatch.delenv("PHOTOFORGE_GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("PHOTOFORGE_PROVIDER_NAME", raising=False)
    return PhotoforgeConfig(
        _env_file=None,
        data_dir=temp_dir / "data",
        uploads_dir=temp_dir / "uploads",
        outputs_dir=temp_dir / "outputs",
        gemini_api_key=None,
        provider_timeout_seconds=5.0,
    )


@pytest.fixture
def database(test_config: PhotoforgeConfig) -> Database:
    return Database(test_config.database_path)


@pytest.fixture
def user_store(database: Database) -> UserStore:
    return UserStore(database)


@pytest.fixture
def quota_store(database: Database) -> QuotaStore:
    return QuotaStore(database)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(datetime(2024, 3, 14, 9, 30))


@pytest.fixture
def ledger(quota_store: QuotaStore, test_config: PhotoforgeConfig, clock: FakeClock) -> QuotaLedger:
    return QuotaLedger(quota_store, test_config, clock=clock)


@pytest.fixture
def generation_store(database: Database, test_config: PhotoforgeConfig) -> GenerationStore:
    return GenerationStore(database, test_config.stored_prompt_max_length)


@pytest.fixture
def resolver(test_config: PhotoforgeConfig) -> PromptResolver:
    return PromptResolver(PresetCatalog(test_config.presets_path))


@pytest.fixture
def intake(test_config: PhotoforgeConfig) -> UploadIntake:
    return UploadIntake(test_config)


@pytest.fixture
def free_user(user_store: UserStore) -> User:
    return user_store.create_user("free@example.com", Tier.FREE, user_id="user-free")


@pytest.fixture
def paid_user(user_store: UserStore) -> User:
    return user_store.create_user("paid@example.com", Tier.PAID, user_id="user-paid")


@pytest.fixture
def image_bytes() -> bytes:
    """A valid 320x240 JPEG upload."""
    return encode_image()


@pytest.fixture
def fake_provider(test_config: PhotoforgeConfig) -> FakeProvider:
    return FakeProvider(test_config)


@pytest.fixture
def orchestrator(
    user_store: UserStore,
    ledger: QuotaLedger,
    generation_store: GenerationStore,
    resolver: PromptResolver,
    intake: UploadIntake,
    fake_provider: FakeProvider,
    test_config: PhotoforgeConfig,
) -> GenerationOrchestrator:
    """Orchestrator wired to the temporary stores and the fake provider."""
    return GenerationOrchestrator(
        users=user_store,
        ledger=ledger,
        generations=generation_store,
        resolver=resolver,
        intake=intake,
        provider=fake_provider,
        config=test_config,
    )


@pytest.fixture
def transient_error() -> ProviderError:
    return ProviderError("transient", detail="connection reset by peer")


@pytest.fixture
def make_image() -> Callable[..., bytes]:
    """Factory for encoded solid-colour test images."""
    return encode_image


@pytest.fixture
def test_client(test_config: PhotoforgeConfig, fake_provider: FakeProvider):
    """FastAPI TestClient running the full lifespan against the test config.

    The fake provider is injected so no SDK client is ever built.
    """
    from fastapi.testclient import TestClient

    from photoforge.api.main import create_app

    with TestClient(create_app(test_config, provider=fake_provider)) as client:
        yield client
