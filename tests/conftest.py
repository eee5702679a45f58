"""
Shared test configuration for crawlstream.

Provides in-memory sources, configuration and sinks so engine behaviour can
be exercised without network or disk access.
"""

import os
import tempfile
from pathlib import Path
from typing import Generator

import pytest

# Keep the Prometheus exporter off and metric registration idempotent.
os.environ["CRAWLSTREAM_TEST_MODE"] = "1"

from crawlstream.config import Config  # noqa: E402
from crawlstream.sinks import CollectingSink  # noqa: E402
from tests.helpers.fakes import InMemoryFetcher, RecordingSleep, SimpleNormalizer, make_records  # noqa: E402

# ============================================================================
# Pytest Configuration
# ============================================================================


def pytest_configure(config):
    """Configure pytest with custom markers."""
    os.environ["CRAWLSTREAM_TEST_MODE"] = "1"
    config.addinivalue_line("markers", "unit: Unit tests for individual components")
    config.addinivalue_line("markers", "integration: Integration tests across modules")
    config.addinivalue_line("markers", "e2e: End-to-end crawl scenarios")


# ============================================================================
# Fixtures
# ============================================================================


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Provide a temporary directory for checkpoint files."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def test_config(temp_dir) -> Config:
    """Configuration with fast retries and a temp checkpoint store."""
    return Config(
        crawl={"page_size": 10, "max_attempts": 3, "retry_delay_seconds": 1.0, "preflight_auth": False},
        checkpoint={"path": temp_dir / "checkpoints.json"},
        monitoring={"log_level": "DEBUG", "log_file": None},
    )


@pytest.fixture
def records():
    return make_records(25)


@pytest.fixture
def fetcher(records) -> InMemoryFetcher:
    return InMemoryFetcher(records)


@pytest.fixture
def normalizer() -> SimpleNormalizer:
    return SimpleNormalizer()


@pytest.fixture
def sink() -> CollectingSink:
    return CollectingSink()


@pytest.fixture
def sleep() -> RecordingSleep:
    return RecordingSleep()
