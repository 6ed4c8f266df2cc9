import logging

import pytest

from objloadtest.config import RunConfig
from objloadtest.logging_setup import LOGGER_NAME
from tests.mocks import FakeClock

MB = 1024 * 1024


@pytest.fixture(autouse=True)
def reset_logger():
    """Drop handlers installed by setup_logging between tests."""
    yield
    logger = logging.getLogger(LOGGER_NAME)
    for handler in logger.handlers:
        handler.close()
    logger.handlers.clear()
    logger.propagate = True
    logger.setLevel(logging.NOTSET)


@pytest.fixture
def make_config(tmp_path):
    """Factory for RunConfig with test-friendly defaults."""

    def _make(**overrides):
        values = {
            "container": "objtest0",
            "sizes": {"1MB": MB},
            "duration": 5,
            "run_dir": str(tmp_path),
            "cpu_count": 2,
            "container_wait": 0,
        }
        values.update(overrides)
        return RunConfig(**values)

    return _make


@pytest.fixture
def clock():
    return FakeClock()
