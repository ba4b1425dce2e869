"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

import pytest

# Add src to path for imports
src_path = Path(__file__).parent.parent / "src"
sys.path.insert(0, str(src_path))

# Add tests to path for azure_mock imports
tests_path = Path(__file__).parent
sys.path.insert(0, str(tests_path))

from armsync.waiter import StatusPoller  # noqa: E402

SUBSCRIPTION_ID = "00000000-0000-0000-0000-000000000000"
RESOURCE_ID = (
    f"/subscriptions/{SUBSCRIPTION_ID}/resourceGroups/rg-test"
    "/providers/Microsoft.Storage/storageAccounts/sttest"
)


class FakeClock:
    """Monotonic clock advanced only by the fake sleep."""

    def __init__(self) -> None:
        self.now = 0.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    async def sleep(self, delay: float) -> None:
        self.sleeps.append(delay)
        self.now += delay


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def poller(clock: FakeClock) -> StatusPoller:
    """StatusPoller that never really sleeps."""
    return StatusPoller(clock=clock, sleep=clock.sleep)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Keep provider settings from the developer environment out of tests."""
    for name in (
        "AZURE_SUBSCRIPTION_ID",
        "DEFAULT_TAGS",
        "IGNORE_TAG_KEYS",
        "IGNORE_TAG_KEY_PREFIXES",
        "CREATE_TIMEOUT",
        "READ_TIMEOUT",
        "UPDATE_TIMEOUT",
        "DELETE_TIMEOUT",
        "POLL_MIN_DELAY",
        "POLL_MAX_DELAY",
        "POLL_BACKOFF_FACTOR",
        "NOT_FOUND_CHECKS",
        "TAG_POLICY_FILE",
    ):
        monkeypatch.delenv(name, raising=False)
