"""
Pytest Configuration and Fixtures for the DataStore access layer tests
======================================================================

Purpose
-------
Centralized fixtures shared by the unit and integration suites.

Responsibilities
----------------
- Deterministic time: a manually advanced clock and a recording sleep
- In-memory backend and access layer factories for unit tests
- Redis testcontainer for integration tests

Non-Responsibilities
--------------------
- Test implementation (delegated to test files)
- Production configuration (test-specific only)

Architecture Notes
------------------
- Unit tests never touch the network and never wait on real backoff
  delays: every component takes its clock and sleep as arguments
- Integration tests use testcontainers (real Redis)
- Fixtures follow scope hierarchy: session > function
"""

from __future__ import annotations

import asyncio
import os
from typing import Any, Callable, Generator, List

import pytest
from testcontainers.redis import RedisContainer

from datastore_manager.core.backends.memory import InMemoryDataStoreBackend
from datastore_manager.core.config.config import Config
from datastore_manager.core.config.settings import DataStoreConfig
from datastore_manager.core.datastore.service import DataStoreAccessLayer
from datastore_manager.core.logging.logger import clear_log_context, get_logger

logger = get_logger(__name__)

# ============================================================================
# PYTEST CONFIGURATION
# ============================================================================


def pytest_configure(config):
    """Configure pytest environment."""
    os.environ["ENVIRONMENT"] = "testing"
    os.environ["LOG_LEVEL"] = "DEBUG"
    Config.load()


@pytest.fixture(autouse=True)
def _isolated_log_context() -> Generator[None, None, None]:
    clear_log_context()
    yield
    clear_log_context()


# ============================================================================
# TIME FIXTURES
# ============================================================================


class FakeClock:
    """Monotonic clock that only moves when told to."""

    def __init__(self, start: float = 1_000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSleep:
    """
    Async sleep replacement.

    Records each requested delay, advances the fake clock by it, then yields
    to the event loop once so other tasks can interleave.
    """

    def __init__(self, clock: FakeClock) -> None:
        self.clock = clock
        self.delays: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)
        self.clock.advance(seconds)
        await asyncio.sleep(0)


@pytest.fixture
def fake_clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_sleep(fake_clock: FakeClock) -> RecordingSleep:
    return RecordingSleep(fake_clock)


# ============================================================================
# ACCESS LAYER FIXTURES (Unit Tests)
# ============================================================================


@pytest.fixture
def backend() -> InMemoryDataStoreBackend:
    """
    In-memory backend with fault injection hooks.

    Scope: function (fresh store per test)
    """
    return InMemoryDataStoreBackend()


@pytest.fixture
def datastore_config() -> DataStoreConfig:
    """Default configuration with jitter disabled for exact delay assertions."""
    return DataStoreConfig(retry_jitter=0.0)


@pytest.fixture
def make_layer(
    backend: InMemoryDataStoreBackend,
    datastore_config: DataStoreConfig,
    fake_clock: FakeClock,
    fake_sleep: RecordingSleep,
) -> Callable[..., DataStoreAccessLayer]:
    """
    Factory for access layers sharing the test clock and sleep.

    Usage:
        layer = make_layer(request_budget_per_window=2)
    """

    def factory(**overrides: Any) -> DataStoreAccessLayer:
        config = datastore_config.replace(**overrides) if overrides else datastore_config
        return DataStoreAccessLayer(backend, config, clock=fake_clock, sleep=fake_sleep)

    return factory


@pytest.fixture
def layer(make_layer: Callable[..., DataStoreAccessLayer]) -> DataStoreAccessLayer:
    return make_layer()


# ============================================================================
# TESTCONTAINERS FIXTURES (Integration Tests)
# ============================================================================


@pytest.fixture(scope="session")
def redis_container() -> Generator[RedisContainer, None, None]:
    """
    Start Redis testcontainer for integration tests.

    Scope: session (container persists across all tests)
    Uses: Integration tests that need real Redis
    """
    logger.info("Starting Redis testcontainer...")
    container = RedisContainer(image="redis:7-alpine")
    container.start()

    logger.info(
        "Redis testcontainer started: %s:%s",
        container.get_container_host_ip(),
        container.get_exposed_port(6379),
    )

    yield container

    logger.info("Stopping Redis testcontainer...")
    container.stop()


@pytest.fixture
def redis_url(redis_container: RedisContainer) -> str:
    host = redis_container.get_container_host_ip()
    port = redis_container.get_exposed_port(6379)
    return f"redis://{host}:{port}/0"
