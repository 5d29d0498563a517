"""
Pytest configuration and fixtures for vivault-automation tests.

This conftest.py provides shared fixtures and hooks for all tests.
"""
import pytest


@pytest.fixture(autouse=True)
def reset_singletons():
    """
    Reset singleton instances between tests to ensure test isolation.

    This is applied automatically to all tests (autouse=True).
    """
    from infra.metrics import MetricsRecorder

    MetricsRecorder._reset_for_testing()
    yield
    MetricsRecorder._reset_for_testing()


@pytest.fixture
def metrics():
    """Metrics recorder with the Prometheus collectors registered"""
    from infra.metrics import MetricsRecorder
    return MetricsRecorder(enabled=True, port=0)


@pytest.fixture
def state_store(tmp_path):
    from infra.state_store import StateStore
    return StateStore(str(tmp_path / "state.json"))
