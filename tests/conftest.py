import pytest
import structlog


@pytest.fixture(autouse=True)
def reset_structlog():
    """Drop logging configuration bound to streams of a finished test."""
    yield
    structlog.reset_defaults()
