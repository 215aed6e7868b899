import pytest
from fastapi.testclient import TestClient

from app.main import app
from app.services.prospecting.service import shutdown_pipeline_service
from tests.helpers.metrics_stub import StubMetrics
from tests.utils import make_target


@pytest.fixture
def client():
    """API client; the app lifespan runs so shutdown hooks are exercised too."""
    with TestClient(app) as test_client:
        yield test_client
    app.dependency_overrides.clear()


@pytest.fixture(autouse=True)
def _fresh_pipeline_service():
    """Never leak the process-wide pipeline service between tests."""
    yield
    shutdown_pipeline_service()


@pytest.fixture
def stub_metrics():
    return StubMetrics()


@pytest.fixture
def target():
    """Sample business used across pipeline tests."""
    return make_target()
