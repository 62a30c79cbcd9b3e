import pytest
from fastapi.testclient import TestClient

from main import app, get_upload_service
from core.config import Settings
from models.upload_models import PartSizePolicy
from services.byte_source import ByteSource
from services.coordinator import UploadCoordinator
from services.presign import PresignedUrlSimulator
from services.session_store import InMemorySessionStore
from services.transport import ScriptedTransport
from services.upload_service import UploadService


@pytest.fixture
def payload():
    """30 bytes of printable data, three 10-byte parts at part_size=10."""
    return b"The quick brown fox jumps over"


@pytest.fixture
def small_policy():
    return PartSizePolicy(fixed_part_size=10, min_part_size=1, max_parts=100)


@pytest.fixture
def transport():
    return ScriptedTransport()


@pytest.fixture
def presigner():
    return PresignedUrlSimulator(secret=b"test-secret")


@pytest.fixture
def make_coordinator(small_policy, transport, presigner):
    """Factory building a coordinator over the given payload with test defaults."""
    def _make(data, policy=None, **kwargs):
        kwargs.setdefault("transport", transport)
        kwargs.setdefault("presigner", presigner)
        kwargs.setdefault("max_retries", 3)
        kwargs.setdefault("concurrency_limit", 4)
        return UploadCoordinator(ByteSource(data), policy or small_policy, **kwargs)
    return _make


@pytest.fixture
async def completed_coordinator(make_coordinator, payload):
    coordinator = make_coordinator(payload)
    await coordinator.upload_all()
    return coordinator


@pytest.fixture
def test_settings():
    return Settings(
        DEFAULT_PART_SIZE=4,
        MIN_PART_SIZE=1,
        MAX_PARTS=100,
        MAX_RETRIES=2,
        CONCURRENCY_LIMIT=2,
        TOKEN_TTL_SECONDS=600,
        SIMULATED_LATENCY_SECONDS=0.0,
        REDIS_URL=None,
        STALE_SESSION_SECONDS=60,
        ARCHIVE_RETENTION_SECONDS=120,
    )


@pytest.fixture
def upload_service(test_settings):
    return UploadService(test_settings, store=InMemorySessionStore(), transport=ScriptedTransport())


@pytest.fixture
def test_client(upload_service):
    """Create a test client for the FastAPI app backed by a fresh service.

    Used as a context manager so every request shares one event loop, the
    way a single server worker does.
    """
    app.dependency_overrides[get_upload_service] = lambda: upload_service
    with TestClient(app) as client:
        yield client
    app.dependency_overrides.clear()
