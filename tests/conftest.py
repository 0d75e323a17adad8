import httpx
import pytest

import leadflow.persistence as persistence
from leadflow.config import LeadflowConfig
from leadflow.http import HttpExecutor
from leadflow.persistence import InMemoryRepository


@pytest.fixture(autouse=True)
def _isolated_environment(tmp_path, monkeypatch):
    """Keep tests away from a developer's config.yaml and LEADFLOW_* variables."""
    monkeypatch.chdir(tmp_path)
    for name in (
        "LEADFLOW_CONFIG",
        "LEADFLOW_DATABASE_URL",
        "DATABASE_URL",
        "LEADFLOW_CRM_WEBHOOK_URL",
        "LEADFLOW_SYNC_URL",
    ):
        monkeypatch.delenv(name, raising=False)
    persistence._repository_instance = None
    yield
    persistence._repository_instance = None


@pytest.fixture
def repo() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def config() -> LeadflowConfig:
    return LeadflowConfig()


@pytest.fixture
def mock_http():
    """Build an HttpExecutor whose requests are answered by ``handler``."""

    def _build(handler) -> HttpExecutor:
        client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
        return HttpExecutor(client=client)

    return _build
