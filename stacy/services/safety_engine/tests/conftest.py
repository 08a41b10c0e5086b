"""Shared fixtures for Safety Engine tests."""
import pytest

from stacy.shared.utils import configure_log_salt


class FakeClock:
    """Logical millisecond clock advanced explicitly by tests."""

    def __init__(self, start_ms: float = 0.0):
        self.now_ms = start_ms

    def __call__(self) -> float:
        return self.now_ms

    def advance(self, ms: float) -> float:
        self.now_ms += ms
        return self.now_ms


@pytest.fixture(autouse=True)
def setup_log_salt():
    """Configure identifier hashing salt before each test."""
    configure_log_salt("test_salt_that_is_at_least_32_characters_long")


@pytest.fixture
def clock():
    return FakeClock()
