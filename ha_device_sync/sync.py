"""Per-device synchronization tracking.

The tracker keeps one DeviceSync record per controlled switch, compares the
desired (local) state with the state observed on the server and disables
devices whose state cannot be fetched after repeated attempts.
"""

from __future__ import annotations

import asyncio
import dataclasses
import logging
import time
from collections.abc import Awaitable, Callable, Iterable
from typing import TYPE_CHECKING

from .api import (
    DeviceDisabledError,
    HomeAssistantApiError,
    HomeAssistantInvalidArgumentError,
)
from .const import (
    DEFAULT_CONFIRM_DELAY,
    DEFAULT_MIN_CHECK_INTERVAL,
    DEFAULT_RETRY_COUNT,
)
from .models import DeviceState, DeviceSync, EntityState, SyncStatus

if TYPE_CHECKING:
    from .api import HomeAssistantClient

_LOGGER = logging.getLogger(__name__)

_ACTIVE = frozenset(
    {
        SyncStatus.SYNCED,
        SyncStatus.OUT_OF_SYNC,
        SyncStatus.FAILED,
        SyncStatus.UNKNOWN,
        SyncStatus.DISABLED,
    }
)

# DISABLED is left only through set_enabled(True), never through _transition.
ALLOWED_TRANSITIONS: dict[SyncStatus, frozenset[SyncStatus]] = {
    SyncStatus.UNKNOWN: frozenset(
        {
            SyncStatus.SYNCED,
            SyncStatus.OUT_OF_SYNC,
            SyncStatus.FAILED,
            SyncStatus.DISABLED,
        }
    ),
    SyncStatus.SYNCED: _ACTIVE,
    SyncStatus.OUT_OF_SYNC: _ACTIVE,
    SyncStatus.FAILED: _ACTIVE,
    SyncStatus.DISABLED: frozenset(),
}


class SyncTracker:
    """Tracks desired versus observed state for a fixed set of devices."""

    def __init__(
        self,
        client: HomeAssistantClient,
        devices: Iterable[tuple[str, str]],
        *,
        retry_ceiling: int = DEFAULT_RETRY_COUNT,
        min_check_interval: float = DEFAULT_MIN_CHECK_INTERVAL,
        confirm_delay: float = DEFAULT_CONFIRM_DELAY,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the tracker.

        Args:
            client: Transport used to fetch and push state.
            devices: (entity_id, friendly_name) pairs of the controlled devices.
            retry_ceiling: Consecutive fetch failures that disable a device.
            min_check_interval: Seconds between two non-forced status checks.
            confirm_delay: Seconds to wait after a service call before
                re-fetching the state.
            clock: Monotonic time source.
            sleep: Coroutine used for the confirmation delay.

        """
        self._client = client
        self._retry_ceiling = retry_ceiling
        self._min_check_interval = min_check_interval
        self._confirm_delay = confirm_delay
        self._clock = clock
        self._sleep = sleep
        self._devices: dict[str, DeviceSync] = {
            entity_id: DeviceSync(entity_id=entity_id, friendly_name=name)
            for entity_id, name in devices
        }

    @property
    def entity_ids(self) -> list[str]:
        """Return the tracked entity IDs in configuration order."""
        return list(self._devices)

    def get(self, entity_id: str) -> DeviceSync:
        """Return the live record of a device.

        Raises:
            HomeAssistantInvalidArgumentError: If the device is not tracked.

        """
        try:
            return self._devices[entity_id]
        except KeyError:
            msg = f"Unknown device: {entity_id}"
            raise HomeAssistantInvalidArgumentError(msg) from None

    def snapshot(self) -> list[DeviceSync]:
        """Return copies of all records for lock-free reads."""
        return [dataclasses.replace(device) for device in self._devices.values()]

    def is_enabled(self, entity_id: str) -> bool:
        """Return True if the device is enabled for control."""
        return self.get(entity_id).enabled

    def _transition(self, device: DeviceSync, status: SyncStatus) -> bool:
        if status not in ALLOWED_TRANSITIONS[device.sync_status]:
            _LOGGER.warning(
                "Ignoring invalid transition of %s: %s -> %s",
                device.entity_id,
                device.sync_status.name,
                status.name,
            )
            return False
        if device.sync_status is not status:
            _LOGGER.debug(
                "%s: %s -> %s",
                device.entity_id,
                device.sync_status.name,
                status.name,
            )
        device.sync_status = status
        return True

    def set_desired_state(self, entity_id: str, state: DeviceState) -> None:
        """Set the state the device should be in.

        A synced device drops back to UNKNOWN until it is checked again.
        OUT_OF_SYNC and FAILED devices do the same when the target changes.

        Raises:
            HomeAssistantInvalidArgumentError: For UNKNOWN or UNAVAILABLE.

        """
        if state in (DeviceState.UNKNOWN, DeviceState.UNAVAILABLE):
            msg = f"Cannot set {entity_id} to invalid state {state.name}"
            raise HomeAssistantInvalidArgumentError(msg)

        device = self.get(entity_id)
        changed = device.local_state is not state
        _LOGGER.info("Setting %s desired state: %s", entity_id, state.name)
        device.local_state = state

        if device.sync_status is SyncStatus.SYNCED or (
            changed
            and device.sync_status in (SyncStatus.OUT_OF_SYNC, SyncStatus.FAILED)
        ):
            self._transition(device, SyncStatus.UNKNOWN)

    def apply_remote_state(self, entity_id: str, state: EntityState) -> SyncStatus:
        """Record a successfully fetched remote state."""
        device = self.get(entity_id)
        now = self._clock()
        device.remote_state = DeviceState.from_remote(state.state)
        device.last_check_time = now

        if not device.enabled:
            return device.sync_status

        device.failed_attempts = 0
        if device.local_state is device.remote_state:
            if self._transition(device, SyncStatus.SYNCED):
                device.last_sync_time = now
        else:
            self._transition(device, SyncStatus.OUT_OF_SYNC)
            _LOGGER.debug(
                "%s out of sync: local=%s, remote=%s",
                entity_id,
                device.local_state.name,
                device.remote_state.name,
            )
        return device.sync_status

    def apply_observed_state(self, entity_id: str, state: EntityState) -> SyncStatus:
        """Record a polled remote state.

        A device without a desired state adopts the first ON or OFF it
        observes, so it starts in sync.
        """
        device = self.get(entity_id)
        observed = DeviceState.from_remote(state.state)
        if device.local_state is DeviceState.UNKNOWN and observed in (
            DeviceState.ON,
            DeviceState.OFF,
        ):
            _LOGGER.info("Seeding %s desired state: %s", entity_id, observed.name)
            device.local_state = observed
        return self.apply_remote_state(entity_id, state)

    def mark_unreachable(self) -> None:
        """Forget observed and desired states after losing the server."""
        for device in self._devices.values():
            device.remote_state = DeviceState.UNAVAILABLE
            device.local_state = DeviceState.UNKNOWN
            if device.enabled and device.sync_status is not SyncStatus.UNKNOWN:
                self._transition(device, SyncStatus.UNKNOWN)

    def record_failure(self, entity_id: str, reason: object = None) -> SyncStatus:
        """Count a failed remote exchange, disabling the device at the ceiling."""
        device = self.get(entity_id)
        device.last_check_time = self._clock()

        if not device.enabled:
            return device.sync_status

        device.failed_attempts += 1
        _LOGGER.warning(
            "Failed to sync %s (attempt %d/%d): %s",
            entity_id,
            device.failed_attempts,
            self._retry_ceiling,
            reason,
        )

        if device.failed_attempts >= self._retry_ceiling:
            device.enabled = False
            self._transition(device, SyncStatus.DISABLED)
            _LOGGER.error("%s disabled due to sync failures", entity_id)
        else:
            self._transition(device, SyncStatus.FAILED)
        return device.sync_status

    async def async_prime(self, entity_id: str) -> SyncStatus:
        """Fetch the initial state and assume the device starts in sync."""
        device = self.get(entity_id)
        _LOGGER.info("Initializing sync for %s", entity_id)
        try:
            state = await self._client.async_get_entity_state(entity_id)
        except HomeAssistantApiError as err:
            _LOGGER.warning("Failed to get initial state of %s: %s", entity_id, err)
            return self.record_failure(entity_id, err)

        device.local_state = DeviceState.from_remote(state.state)
        return self.apply_remote_state(entity_id, state)

    async def async_check_status(
        self, entity_id: str, *, force: bool = False
    ) -> SyncStatus:
        """Compare the desired state with the server's state.

        Calls closer together than the minimum check interval return the
        current status without contacting the server, unless forced.
        """
        device = self.get(entity_id)
        now = self._clock()

        if (
            not force
            and device.last_check_time is not None
            and now - device.last_check_time < self._min_check_interval
        ):
            return device.sync_status

        device.last_check_time = now
        if not device.enabled:
            return SyncStatus.DISABLED

        try:
            state = await self._client.async_get_entity_state(entity_id)
        except HomeAssistantApiError as err:
            return self.record_failure(entity_id, err)
        return self.apply_remote_state(entity_id, state)

    async def async_synchronize(self, entity_id: str) -> bool:
        """Push the desired state to the server and confirm it took effect."""
        device = self.get(entity_id)
        if not device.enabled:
            _LOGGER.warning("Cannot sync disabled device %s", entity_id)
            return False
        if device.local_state not in (DeviceState.ON, DeviceState.OFF):
            _LOGGER.debug("No desired state set for %s", entity_id)
            return False

        _LOGGER.info("Synchronizing %s to %s", entity_id, device.local_state.name)
        try:
            if device.local_state is DeviceState.ON:
                await self._client.async_turn_on(entity_id)
            else:
                await self._client.async_turn_off(entity_id)
        except HomeAssistantApiError as err:
            self.record_failure(entity_id, err)
            return False

        await self._sleep(self._confirm_delay)
        status = await self.async_check_status(entity_id, force=True)
        return status is SyncStatus.SYNCED

    async def async_set_and_synchronize(
        self, entity_id: str, state: DeviceState
    ) -> bool:
        """Set the desired state and push it in one step.

        Raises:
            DeviceDisabledError: If the device was disabled after failures.

        """
        if not self.is_enabled(entity_id):
            msg = f"{entity_id} is disabled"
            raise DeviceDisabledError(msg)
        self.set_desired_state(entity_id, state)
        return await self.async_synchronize(entity_id)

    def set_enabled(self, entity_id: str, enabled: bool) -> None:
        """Enable or disable a device explicitly.

        Re-enabling resets the failure count and the status to UNKNOWN.
        """
        device = self.get(entity_id)
        if enabled is device.enabled:
            return

        _LOGGER.info("%s %s", entity_id, "ENABLED" if enabled else "DISABLED")
        if enabled:
            device.enabled = True
            device.failed_attempts = 0
            device.sync_status = SyncStatus.UNKNOWN
        else:
            device.enabled = False
            self._transition(device, SyncStatus.DISABLED)
