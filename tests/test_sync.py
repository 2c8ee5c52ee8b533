"""Tests for the per-device sync tracker."""

import logging
from unittest.mock import AsyncMock

import pytest
from conftest import FakeClock, RecordingSleep

from ha_device_sync.api import (
    DeviceDisabledError,
    HomeAssistantInvalidArgumentError,
    HomeAssistantStatusError,
    HomeAssistantTransportError,
)
from ha_device_sync.models import DeviceState, EntityState, SyncStatus
from ha_device_sync.sync import ALLOWED_TRANSITIONS, SyncTracker

DEVICES = [("switch.a", "Pump"), ("switch.b", "Light")]


def entity(state: str, entity_id: str = "switch.a") -> EntityState:
    """Build an EntityState for a switch."""
    return EntityState(entity_id=entity_id, state=state)


@pytest.fixture
def mock_client() -> AsyncMock:
    """Fixture providing a mocked API client."""
    return AsyncMock()


@pytest.fixture
def tracker(
    mock_client: AsyncMock,
    fake_clock: FakeClock,
    recorded_sleep: RecordingSleep,
) -> SyncTracker:
    """Fixture providing a tracker with a manual clock."""
    return SyncTracker(
        mock_client,
        DEVICES,
        retry_ceiling=3,
        min_check_interval=5.0,
        clock=fake_clock,
        sleep=recorded_sleep,
    )


class TestSyncTrackerInit:
    """Tests for SyncTracker construction and lookups."""

    def test_devices_start_unknown_and_enabled(self, tracker: SyncTracker) -> None:
        """Test that every configured device starts UNKNOWN and enabled."""
        assert tracker.entity_ids == ["switch.a", "switch.b"]
        device = tracker.get("switch.a")
        assert device.friendly_name == "Pump"
        assert device.sync_status is SyncStatus.UNKNOWN
        assert device.local_state is DeviceState.UNKNOWN
        assert device.enabled is True
        assert device.failed_attempts == 0

    def test_get_unknown_device_raises(self, tracker: SyncTracker) -> None:
        """Test that looking up an untracked device raises."""
        with pytest.raises(HomeAssistantInvalidArgumentError):
            tracker.get("switch.missing")

    def test_snapshot_returns_copies(self, tracker: SyncTracker) -> None:
        """Test that snapshot records do not alias the live table."""
        snapshot = tracker.snapshot()
        snapshot[0].failed_attempts = 99
        assert tracker.get("switch.a").failed_attempts == 0


class TestSetDesiredState:
    """Tests for SyncTracker.set_desired_state."""

    @pytest.mark.parametrize("state", [DeviceState.UNKNOWN, DeviceState.UNAVAILABLE])
    def test_rejects_non_target_states(
        self, tracker: SyncTracker, state: DeviceState
    ) -> None:
        """Test that UNKNOWN and UNAVAILABLE cannot be desired."""
        with pytest.raises(HomeAssistantInvalidArgumentError):
            tracker.set_desired_state("switch.a", state)

    @pytest.mark.asyncio
    async def test_synced_device_drops_to_unknown_then_resyncs(
        self,
        tracker: SyncTracker,
        mock_client: AsyncMock,
        fake_clock: FakeClock,
    ) -> None:
        """Test that a synced device is invalidated and re-synced by a check."""
        mock_client.async_get_entity_state.return_value = entity("on")
        assert await tracker.async_prime("switch.a") is SyncStatus.SYNCED

        tracker.set_desired_state("switch.a", DeviceState.ON)
        assert tracker.get("switch.a").sync_status is SyncStatus.UNKNOWN

        fake_clock.advance(5.0)
        assert await tracker.async_check_status("switch.a") is SyncStatus.SYNCED
        assert tracker.get("switch.a").last_sync_time == fake_clock.now

    @pytest.mark.asyncio
    async def test_out_of_sync_device_drops_only_on_target_change(
        self,
        tracker: SyncTracker,
        mock_client: AsyncMock,
    ) -> None:
        """Test that OUT_OF_SYNC is kept unless the target actually changes."""
        tracker.set_desired_state("switch.a", DeviceState.ON)
        mock_client.async_get_entity_state.return_value = entity("off")
        assert await tracker.async_check_status("switch.a") is SyncStatus.OUT_OF_SYNC

        tracker.set_desired_state("switch.a", DeviceState.ON)
        assert tracker.get("switch.a").sync_status is SyncStatus.OUT_OF_SYNC

        tracker.set_desired_state("switch.a", DeviceState.OFF)
        assert tracker.get("switch.a").sync_status is SyncStatus.UNKNOWN

    def test_disabled_device_keeps_disabled_status(self, tracker: SyncTracker) -> None:
        """Test that setting a target on a disabled device does not re-enable it."""
        tracker.set_enabled("switch.a", False)
        tracker.set_desired_state("switch.a", DeviceState.ON)
        device = tracker.get("switch.a")
        assert device.sync_status is SyncStatus.DISABLED
        assert device.local_state is DeviceState.ON


class TestAsyncCheckStatus:
    """Tests for SyncTracker.async_check_status."""

    @pytest.mark.asyncio
    async def test_repeated_failures_disable_device(
        self,
        tracker: SyncTracker,
        mock_client: AsyncMock,
        fake_clock: FakeClock,
    ) -> None:
        """Test that three consecutive fetch failures disable the device."""
        tracker.set_desired_state("switch.a", DeviceState.ON)
        mock_client.async_get_entity_state.side_effect = HomeAssistantTransportError(
            "unreachable"
        )

        statuses = []
        for _ in range(3):
            statuses.append(await tracker.async_check_status("switch.a"))
            fake_clock.advance(10.0)

        assert statuses == [SyncStatus.FAILED, SyncStatus.FAILED, SyncStatus.DISABLED]
        device = tracker.get("switch.a")
        assert device.enabled is False
        assert device.failed_attempts == 3

    @pytest.mark.asyncio
    async def test_disabled_device_stays_disabled_until_reenabled(
        self,
        tracker: SyncTracker,
        mock_client: AsyncMock,
        fake_clock: FakeClock,
    ) -> None:
        """Test that only set_enabled(True) leaves DISABLED and resets failures."""
        mock_client.async_get_entity_state.side_effect = HomeAssistantTransportError(
            "unreachable"
        )
        for _ in range(3):
            await tracker.async_check_status("switch.a", force=True)
        assert tracker.get("switch.a").sync_status is SyncStatus.DISABLED

        mock_client.async_get_entity_state.side_effect = None
        mock_client.async_get_entity_state.return_value = entity("on")
        fake_clock.advance(10.0)
        assert await tracker.async_check_status("switch.a") is SyncStatus.DISABLED
        assert mock_client.async_get_entity_state.await_count == 3

        tracker.apply_remote_state("switch.a", entity("on"))
        assert tracker.get("switch.a").sync_status is SyncStatus.DISABLED

        tracker.set_enabled("switch.a", True)
        device = tracker.get("switch.a")
        assert device.enabled is True
        assert device.failed_attempts == 0
        assert device.sync_status is SyncStatus.UNKNOWN

    @pytest.mark.asyncio
    async def test_check_is_debounced(
        self,
        tracker: SyncTracker,
        mock_client: AsyncMock,
        fake_clock: FakeClock,
    ) -> None:
        """Test that checks within the minimum interval skip the transport."""
        tracker.set_desired_state("switch.a", DeviceState.OFF)
        mock_client.async_get_entity_state.return_value = entity("off")

        await tracker.async_check_status("switch.a")
        fake_clock.advance(1.0)
        await tracker.async_check_status("switch.a")
        assert mock_client.async_get_entity_state.await_count == 1

        await tracker.async_check_status("switch.a", force=True)
        assert mock_client.async_get_entity_state.await_count == 2

    @pytest.mark.asyncio
    async def test_success_resets_failed_attempts(
        self,
        tracker: SyncTracker,
        mock_client: AsyncMock,
    ) -> None:
        """Test that a successful fetch clears the failure count."""
        tracker.set_desired_state("switch.a", DeviceState.ON)
        mock_client.async_get_entity_state.side_effect = [
            HomeAssistantTransportError("unreachable"),
            entity("on"),
        ]

        assert (
            await tracker.async_check_status("switch.a", force=True)
            is SyncStatus.FAILED
        )
        assert (
            await tracker.async_check_status("switch.a", force=True)
            is SyncStatus.SYNCED
        )
        assert tracker.get("switch.a").failed_attempts == 0
        assert tracker.get("switch.a").remote_state is DeviceState.ON


class TestAsyncSynchronize:
    """Tests for SyncTracker.async_synchronize."""

    @pytest.mark.asyncio
    async def test_pushes_desired_state_and_confirms(
        self,
        tracker: SyncTracker,
        mock_client: AsyncMock,
        recorded_sleep: RecordingSleep,
    ) -> None:
        """Test that synchronize calls turn_on, waits and re-checks."""
        tracker.set_desired_state("switch.a", DeviceState.ON)
        mock_client.async_get_entity_state.return_value = entity("on")

        assert await tracker.async_synchronize("switch.a") is True
        mock_client.async_turn_on.assert_awaited_once_with("switch.a")
        mock_client.async_turn_off.assert_not_awaited()
        assert recorded_sleep.delays == [0.5]
        assert tracker.get("switch.a").sync_status is SyncStatus.SYNCED

    @pytest.mark.asyncio
    async def test_reports_unconfirmed_state(
        self,
        tracker: SyncTracker,
        mock_client: AsyncMock,
    ) -> None:
        """Test that synchronize returns False when the server disagrees."""
        tracker.set_desired_state("switch.a", DeviceState.OFF)
        mock_client.async_get_entity_state.return_value = entity("on")

        assert await tracker.async_synchronize("switch.a") is False
        mock_client.async_turn_off.assert_awaited_once_with("switch.a")
        assert tracker.get("switch.a").sync_status is SyncStatus.OUT_OF_SYNC

    @pytest.mark.asyncio
    async def test_noop_without_desired_state(
        self, tracker: SyncTracker, mock_client: AsyncMock
    ) -> None:
        """Test that a device without a target is not pushed."""
        assert await tracker.async_synchronize("switch.a") is False
        mock_client.async_turn_on.assert_not_awaited()
        mock_client.async_turn_off.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_noop_when_disabled(
        self, tracker: SyncTracker, mock_client: AsyncMock
    ) -> None:
        """Test that a disabled device is not pushed."""
        tracker.set_desired_state("switch.a", DeviceState.ON)
        tracker.set_enabled("switch.a", False)
        assert await tracker.async_synchronize("switch.a") is False
        mock_client.async_turn_on.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_service_call_counts_as_failed_attempt(
        self, tracker: SyncTracker, mock_client: AsyncMock
    ) -> None:
        """Test that a rejected service call is recorded as a failure."""
        tracker.set_desired_state("switch.a", DeviceState.ON)
        mock_client.async_turn_on.side_effect = HomeAssistantStatusError(
            500, "server error"
        )

        assert await tracker.async_synchronize("switch.a") is False
        device = tracker.get("switch.a")
        assert device.failed_attempts == 1
        assert device.sync_status is SyncStatus.FAILED
        mock_client.async_get_entity_state.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_set_and_synchronize_refuses_disabled_device(
        self, tracker: SyncTracker
    ) -> None:
        """Test that operator commands on a disabled device raise."""
        tracker.set_enabled("switch.b", False)
        with pytest.raises(DeviceDisabledError):
            await tracker.async_set_and_synchronize("switch.b", DeviceState.ON)


class TestAsyncPrime:
    """Tests for SyncTracker.async_prime."""

    @pytest.mark.asyncio
    async def test_assumes_device_starts_in_sync(
        self, tracker: SyncTracker, mock_client: AsyncMock
    ) -> None:
        """Test that priming adopts the remote state as the target."""
        mock_client.async_get_entity_state.return_value = entity("off")

        assert await tracker.async_prime("switch.a") is SyncStatus.SYNCED
        device = tracker.get("switch.a")
        assert device.local_state is DeviceState.OFF
        assert device.remote_state is DeviceState.OFF

    @pytest.mark.asyncio
    async def test_failure_leaves_one_failed_attempt(
        self, tracker: SyncTracker, mock_client: AsyncMock
    ) -> None:
        """Test that a failed prime is counted once."""
        mock_client.async_get_entity_state.side_effect = HomeAssistantTransportError(
            "unreachable"
        )

        assert await tracker.async_prime("switch.a") is SyncStatus.FAILED
        assert tracker.get("switch.a").failed_attempts == 1


class TestTransitions:
    """Tests for the sync status state machine."""

    def test_disabled_has_no_outgoing_transitions(self) -> None:
        """Test that DISABLED is only left through set_enabled."""
        assert ALLOWED_TRANSITIONS[SyncStatus.DISABLED] == frozenset()

    def test_unknown_cannot_stay_unknown(self) -> None:
        """Test that UNKNOWN only moves to a checked status or DISABLED."""
        assert SyncStatus.UNKNOWN not in ALLOWED_TRANSITIONS[SyncStatus.UNKNOWN]

    def test_invalid_transition_is_ignored_and_logged(
        self, tracker: SyncTracker, caplog: pytest.LogCaptureFixture
    ) -> None:
        """Test that a forbidden transition leaves the status unchanged."""
        tracker.set_enabled("switch.a", False)
        device = tracker.get("switch.a")

        with caplog.at_level(logging.WARNING):
            assert tracker._transition(device, SyncStatus.SYNCED) is False

        assert device.sync_status is SyncStatus.DISABLED
        assert "Ignoring invalid transition" in caplog.text

    def test_record_failure_on_disabled_device_is_ignored(
        self, tracker: SyncTracker
    ) -> None:
        """Test that failures are not counted for a disabled device."""
        tracker.set_enabled("switch.a", False)
        assert tracker.record_failure("switch.a", "late") is SyncStatus.DISABLED
        assert tracker.get("switch.a").failed_attempts == 0


class TestObservedState:
    """Tests for states observed by the poller."""

    def test_first_observation_seeds_desired_state(self, tracker: SyncTracker) -> None:
        """Test that an unset desired state adopts the polled state."""
        assert tracker.apply_observed_state("switch.a", entity("on")) is (
            SyncStatus.SYNCED
        )
        device = tracker.get("switch.a")
        assert device.local_state is DeviceState.ON
        assert device.last_sync_time == 1000.0

    def test_observation_keeps_explicit_desired_state(
        self, tracker: SyncTracker
    ) -> None:
        """Test that a desired state set by the user is not overwritten."""
        tracker.set_desired_state("switch.a", DeviceState.OFF)

        assert tracker.apply_observed_state("switch.a", entity("on")) is (
            SyncStatus.OUT_OF_SYNC
        )
        assert tracker.get("switch.a").local_state is DeviceState.OFF

    def test_unavailable_observation_does_not_seed(self, tracker: SyncTracker) -> None:
        """Test that an unavailable device leaves the desired state unset."""
        tracker.apply_observed_state("switch.a", entity("unavailable"))
        assert tracker.get("switch.a").local_state is DeviceState.UNKNOWN

    def test_mark_unreachable_forgets_states(self, tracker: SyncTracker) -> None:
        """Test that losing the server resets every enabled device."""
        tracker.apply_observed_state("switch.a", entity("on"))
        tracker.set_enabled("switch.b", False)

        tracker.mark_unreachable()

        device = tracker.get("switch.a")
        assert device.remote_state is DeviceState.UNAVAILABLE
        assert device.local_state is DeviceState.UNKNOWN
        assert device.sync_status is SyncStatus.UNKNOWN
        assert tracker.get("switch.b").sync_status is SyncStatus.DISABLED
