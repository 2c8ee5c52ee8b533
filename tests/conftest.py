"""Pytest configuration and fixtures for the device sync tests."""

from typing import Any

import pytest

from ha_device_sync.api import HomeAssistantClient
from ha_device_sync.config import SyncConfig

TEST_HOST = "ha.local"
TEST_PORT = 8123
TEST_TOKEN = "test-token"
BASE_URL = f"http://{TEST_HOST}:{TEST_PORT}/api"

SWITCH_IDS = ["switch.a", "switch.b", "switch.c"]


def make_state(
    entity_id: str,
    state: str,
    attributes: dict[str, Any] | None = None,
) -> dict[str, Any]:
    """Build one state object as returned by the REST API.

    Args:
        entity_id: Entity ID of the state object.
        state: State string.
        attributes: Optional attributes; a friendly name is added by default.

    Returns:
        A dictionary in the shape of a /api/states entry.

    """
    if attributes is None:
        attributes = {"friendly_name": entity_id.split(".", 1)[1].upper()}
    return {
        "entity_id": entity_id,
        "state": state,
        "attributes": attributes,
        "last_changed": "2024-05-01T10:00:00+00:00",
        "last_updated": "2024-05-01T10:00:05+00:00",
    }


class RecordingSleep:
    """Awaitable stand-in for asyncio.sleep that records the delays."""

    def __init__(self) -> None:
        self.delays: list[float] = []

    async def __call__(self, delay: float) -> None:
        self.delays.append(delay)


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


@pytest.fixture
def recorded_sleep() -> RecordingSleep:
    """Fixture providing a sleep replacement that records delays."""
    return RecordingSleep()


@pytest.fixture
def fake_clock() -> FakeClock:
    """Fixture providing a manually advanced clock."""
    return FakeClock()


@pytest.fixture
def client(recorded_sleep: RecordingSleep) -> HomeAssistantClient:
    """Fixture providing an initialized client that does not really sleep."""
    api_client = HomeAssistantClient(sleep=recorded_sleep)
    api_client.initialize(TEST_HOST, TEST_PORT, TEST_TOKEN)
    return api_client


@pytest.fixture
def sample_listing() -> list[dict[str, Any]]:
    """Fixture providing a bulk state listing with all three switches."""
    return [
        make_state("sun.sun", "above_horizon"),
        make_state("switch.a", "on"),
        make_state("sensor.temperature", "24.5"),
        make_state("switch.b", "off"),
        make_state("switch.c", "on"),
    ]


@pytest.fixture
def raw_config() -> dict[str, Any]:
    """Fixture providing a minimal valid configuration mapping."""
    return {
        "host": TEST_HOST,
        "access_token": TEST_TOKEN,
        "switches": [
            {"entity_id": "switch.a", "label": "Pump"},
            {"entity_id": "switch.b", "label": "Light"},
            {"entity_id": "switch.c"},
        ],
        "sensors": ["sensor.temperature", "sensor.humidity"],
    }


@pytest.fixture
def sync_config(raw_config: dict[str, Any]) -> SyncConfig:
    """Fixture providing a validated configuration."""
    return SyncConfig.from_dict(raw_config)
