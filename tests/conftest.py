"""Shared fixtures for the Specster test suite."""

import tempfile
from pathlib import Path

import pytest

from specster.config import SpecsterConfig
from specster.engine import WorkflowEngine
from specster.specster_logging import ObservabilityHooks
from specster.state import StateManager
from specster.store import MemoryStateStore

pytest_plugins = ["pytest_asyncio"]


@pytest.fixture
def config():
    """Configuration with a short lock timeout so failures surface quickly."""
    return SpecsterConfig(lock_timeout=2.0, lock_poll_interval=0.01)


@pytest.fixture
def hooks():
    return ObservabilityHooks()


@pytest.fixture
def state_manager(config, hooks):
    return StateManager(MemoryStateStore(), config, hooks=hooks)


@pytest.fixture
def engine(state_manager, config):
    return WorkflowEngine(state_manager, config)


@pytest.fixture
def temp_root():
    """Temporary project root."""
    with tempfile.TemporaryDirectory() as temp_dir:
        yield Path(temp_dir)
