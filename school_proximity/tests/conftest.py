"""
Pytest configuration for the proximity tests.

This file is automatically loaded by pytest and sets up the test environment.
"""
import os
import pytest

from school_proximity import metrics
from school_proximity.config import reset_config


@pytest.fixture(scope="session", autouse=True)
def setup_test_environment():
    """Set up test environment variables before any tests run."""
    os.environ["ENVIRONMENT"] = "testing"
    os.environ["BATCH_DELAY_MS"] = "0"
    os.environ.pop("RESULTS_STORE_URL", None)
    reset_config()
    yield
    os.environ.pop("ENVIRONMENT", None)
    os.environ.pop("BATCH_DELAY_MS", None)
    reset_config()


@pytest.fixture(autouse=True)
def clean_metrics():
    metrics.reset_metrics()
    yield
    metrics.reset_metrics()


@pytest.fixture
def app_module(monkeypatch):
    """The Quart app module with an empty run registry."""
    from school_proximity import app as module

    monkeypatch.setattr(module, 'active_runs', {})
    return module


@pytest.fixture
def app_client(app_module):
    """Create a test client for the Quart app."""
    app_module.app.config["TESTING"] = True
    return app_module.app.test_client()
