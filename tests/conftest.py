import os
import pytest
from fastapi.testclient import TestClient

# Disable OTLP export during tests to prevent connection errors
os.environ["OTEL_EXPORTER_OTLP_ENDPOINT"] = "none"

# Import app AFTER setting the environment variable
from src.canary.main import app
from src.canary.deployment.analysis_runner import AnalysisRunner
from src.canary.deployment.rollback import RollbackController
from src.canary.deployment.traffic import InMemoryTrafficRouter
from src.canary.providers import MappingCredentialResolver, ProviderRegistry
from tests.helpers import RecordingNotifier, ScriptedProvider


@pytest.fixture
def provider():
    return ScriptedProvider()


@pytest.fixture
def runner(provider):
    return AnalysisRunner(
        ProviderRegistry({"query": provider}),
        MappingCredentialResolver({"grafana/token": "s3cr3t-value"}),
        grace_seconds=1.0,
    )


@pytest.fixture
def router():
    return InMemoryTrafficRouter()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def rollback_controller(router, notifier):
    return RollbackController(router, notifier=notifier, confirm_timeout=0.2, poll_interval=0.01)


@pytest.fixture(scope="module")
def client():
    # Context manager triggers the lifespan events (startup/shutdown)
    with TestClient(app) as c:
        yield c
