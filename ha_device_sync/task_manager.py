"""Background worker that keeps the device table in step with the server.

The task manager owns the single worker task. Init and immediate-sync
requests reach the worker through capacity-one channels so that rapid
duplicate requests coalesce into one event. Between requests the worker
polls the switch states with one bulk request, falls back to individual
requests when the bulk request fails, and refreshes the sensors every other
cycle. Switch control requests from the UI wait in a bounded queue and are
pushed to the server by the worker between polls.
"""

from __future__ import annotations

import asyncio
import contextlib
import functools
import logging
import sys
import time
from dataclasses import dataclass, replace
from typing import TYPE_CHECKING

from .api import (
    DeviceDisabledError,
    HomeAssistantApiError,
    HomeAssistantEntityNotFoundError,
)
from .const import (
    CONTROL_QUEUE_SIZE,
    DEFAULT_CONFIRM_DELAY,
    DOMAIN,
    FALLBACK_REQUEST_DELAY,
    HEALTH_REPORT_EVERY,
    IMMEDIATE_SYNC_COOLDOWN,
    RETRY_BACKOFF_STEP,
    SENSOR_POLL_EVERY,
    SENSOR_PRE_DELAY,
    SENSOR_REQUEST_DELAY,
    STATUS_CONNECTED,
    STATUS_FAILED,
    STATUS_OFFLINE,
    STATUS_READY,
    STATUS_STARTING,
    STATUS_STOPPING,
    STATUS_SYNC_ERROR,
    STATUS_SYNCING,
)
from .models import DeviceState, DeviceSync

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable, Sequence

    from .api import HomeAssistantClient
    from .config import SyncConfig
    from .models import EntityState
    from .presentation import Presenter
    from .sync import SyncTracker
    from .watchdog import Watchdog

_LOGGER = logging.getLogger(__name__)


class RequestChannel:
    """Capacity-one channel carrying request events to the worker.

    Offering while an event is already pending drops the new event, so any
    number of rapid requests is delivered as a single one.
    """

    def __init__(self, name: str) -> None:
        self.name = name
        self._queue: asyncio.Queue[None] = asyncio.Queue(maxsize=1)

    @property
    def pending(self) -> bool:
        """Return True if an event is waiting to be taken."""
        return not self._queue.empty()

    def offer(self) -> bool:
        """Offer an event without blocking.

        Returns:
            True if the event was queued, False if it coalesced with a
            pending one.

        """
        try:
            self._queue.put_nowait(None)
        except asyncio.QueueFull:
            _LOGGER.debug("%s request already pending", self.name)
            return False
        return True

    def take(self) -> bool:
        """Take the pending event, if any."""
        try:
            self._queue.get_nowait()
        except asyncio.QueueEmpty:
            return False
        return True

    def drain(self) -> None:
        """Drop any pending event."""
        while self.take():
            pass


@dataclass(frozen=True, slots=True)
class SwitchCommand:
    """Desired state of one switch, requested by the UI."""

    entity_id: str
    state: DeviceState


@dataclass(frozen=True, slots=True)
class ConnectionSummary:
    """Point-in-time view of the worker and the tracked devices."""

    connected: bool
    status_text: str
    total_devices: int
    online_devices: int
    offline_devices: int
    last_full_update: float | None
    cycle_count: int
    missed_deadlines: int


class TaskManager:
    """Runs the sync worker and exposes its lifecycle."""

    def __init__(
        self,
        config: SyncConfig,
        client: HomeAssistantClient,
        tracker: SyncTracker,
        presenter: Presenter,
        watchdog: Watchdog,
        *,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        """Initialize the task manager.

        Args:
            config: Engine configuration.
            client: Transport client, initialized by the worker on request.
            tracker: Per-device sync records.
            presenter: Receives switch, sensor and status updates.
            watchdog: Liveness watchdog fed by the worker.
            sleep: Coroutine used for the pacing delays between requests.
            clock: Monotonic time source.

        """
        self._config = config
        self._client = client
        self._tracker = tracker
        self._presenter = presenter
        self._watchdog = watchdog
        self._sleep = sleep
        self._clock = clock

        self._init_channel = RequestChannel("init")
        self._sync_channel = RequestChannel("sync")
        self._control_queue: asyncio.Queue[SwitchCommand] = asyncio.Queue(
            maxsize=CONTROL_QUEUE_SIZE
        )
        self._wake = asyncio.Event()
        self._lifecycle_lock = asyncio.Lock()

        self._loop: asyncio.AbstractEventLoop | None = None
        self._worker: asyncio.Task[None] | None = None
        self._monitor: asyncio.Task[None] | None = None
        self._pending_callbacks: set[asyncio.Future[None]] = set()

        self._initialized = False
        self._cycle_count = 0
        self._status_text = STATUS_OFFLINE
        self._connected = False
        self._last_full_update: float | None = None

    @property
    def is_running(self) -> bool:
        """Return True while the worker task is alive."""
        return self._worker is not None and not self._worker.done()

    @property
    def initialized(self) -> bool:
        """Return True once the worker has initialized the client."""
        return self._initialized

    @property
    def cycle_count(self) -> int:
        """Return the number of completed poll waits."""
        return self._cycle_count

    def status(self) -> ConnectionSummary:
        """Summarize the connection and device health."""
        devices = self._tracker.snapshot()
        online = sum(
            1
            for device in devices
            if device.enabled
            and device.remote_state in (DeviceState.ON, DeviceState.OFF)
        )
        return ConnectionSummary(
            connected=self._connected,
            status_text=self._status_text,
            total_devices=len(devices),
            online_devices=online,
            offline_devices=len(devices) - online,
            last_full_update=self._last_full_update,
            cycle_count=self._cycle_count,
            missed_deadlines=self._watchdog.missed_deadlines,
        )

    def _set_status(self, text: str, connected: bool) -> None:
        self._status_text = text
        self._connected = connected
        self._presenter.update_status(text, connected)

    async def async_start(self) -> bool:
        """Start the worker.

        Returns:
            False if the worker was already running.

        """
        if self.is_running:
            _LOGGER.warning("Sync worker already running")
            return False

        self._loop = asyncio.get_running_loop()
        self._set_status(STATUS_STARTING, False)
        self._worker = asyncio.create_task(self._async_run(), name=f"{DOMAIN}_worker")
        self._monitor = asyncio.create_task(
            self._watchdog.async_monitor(), name=f"{DOMAIN}_watchdog"
        )
        _LOGGER.info("Sync worker started")
        self._set_status(STATUS_READY, False)
        return True

    async def async_stop(self) -> bool:
        """Stop the worker and forget the client session.

        Returns:
            False if the worker was not running.

        """
        if not self.is_running:
            _LOGGER.debug("Sync worker not running")
            return False

        _LOGGER.info("Stopping sync worker")
        self._set_status(STATUS_STOPPING, False)

        for task in (self._worker, self._monitor):
            if task is None:
                continue
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._worker = None
        self._monitor = None

        self._initialized = False
        self._init_channel.drain()
        self._sync_channel.drain()
        while not self._control_queue.empty():
            self._control_queue.get_nowait()
        self._client.deinitialize()
        self._tracker.mark_unreachable()

        self._set_status(STATUS_OFFLINE, False)
        _LOGGER.info("Sync worker stopped")
        return True

    def _offer(self, channel: RequestChannel) -> bool:
        if not self.is_running:
            _LOGGER.warning("Sync worker not running, dropping %s request", channel.name)
            return False
        channel.offer()
        self._wake.set()
        return True

    def request_init(self) -> bool:
        """Ask the worker to initialize the client."""
        return self._offer(self._init_channel)

    def request_immediate_sync(self) -> bool:
        """Ask the worker to fetch the switch states now."""
        return self._offer(self._sync_channel)

    def request_switch(self, entity_id: str, turn_on: bool) -> bool:
        """Ask the worker to turn a switch on or off.

        The worker sets the desired state and pushes it to the server, then
        shows the confirmed state on the display.

        Returns:
            False if the worker is not running or the control queue is full.

        Raises:
            HomeAssistantInvalidArgumentError: If the switch is not tracked.

        """
        self._tracker.get(entity_id)
        command = SwitchCommand(
            entity_id, DeviceState.ON if turn_on else DeviceState.OFF
        )
        if not self.is_running:
            _LOGGER.warning(
                "Sync worker not running, dropping control of %s", entity_id
            )
            return False
        try:
            self._control_queue.put_nowait(command)
        except asyncio.QueueFull:
            _LOGGER.warning(
                "Control queue full, dropping %s -> %s",
                entity_id,
                command.state.name,
            )
            return False
        self._wake.set()
        return True

    def request_toggle(self, entity_id: str) -> bool:
        """Ask the worker to flip a switch from its last known state."""
        device = self._tracker.get(entity_id)
        current = device.remote_state
        if current not in (DeviceState.ON, DeviceState.OFF):
            current = device.local_state
        return self.request_switch(entity_id, current is not DeviceState.ON)

    def set_device_enabled(self, entity_id: str, enabled: bool) -> None:
        """Enable or disable a device for polling and control.

        Re-enabling a device on a running worker also requests an immediate
        sync so its state is fetched without waiting for the next poll.
        """
        self._tracker.set_enabled(entity_id, enabled)
        if enabled and self.is_running:
            self.request_immediate_sync()

    def device_status(self, entity_id: str) -> DeviceSync:
        """Return a copy of one device's sync record."""
        return replace(self._tracker.get(entity_id))

    async def async_handle_connectivity(self, is_connected: bool) -> None:
        """Start or stop the worker as the network comes and goes."""
        async with self._lifecycle_lock:
            if is_connected:
                _LOGGER.info("Network connected, starting sync worker")
                if not self.is_running:
                    await self.async_start()
                self.request_init()
            elif self.is_running:
                _LOGGER.info("Network disconnected, stopping sync worker")
                await self.async_stop()

    def on_connectivity_changed(self, is_connected: bool) -> None:
        """Handle a connectivity change reported from any thread."""
        try:
            running_loop: asyncio.AbstractEventLoop | None = asyncio.get_running_loop()
        except RuntimeError:
            running_loop = None

        loop = self._loop or running_loop
        if loop is None:
            _LOGGER.error("No event loop to handle connectivity change")
            return

        coro = self.async_handle_connectivity(is_connected)
        if loop is running_loop:
            future: asyncio.Future[None] = loop.create_task(coro)
            self._pending_callbacks.add(future)
            future.add_done_callback(self._pending_callbacks.discard)
        else:
            asyncio.run_coroutine_threadsafe(coro, loop)

    def attach_loop(self, loop: asyncio.AbstractEventLoop) -> None:
        """Bind the loop used for connectivity changes reported from threads."""
        self._loop = loop

    async def async_activate_scene(self) -> bool:
        """Activate the configured scene.

        Returns:
            True if the scene was activated.

        """
        if self._config.scene is None or not self._initialized:
            return False
        try:
            await self._client.async_activate_scene(self._config.scene)
        except HomeAssistantApiError as err:
            _LOGGER.warning("Failed to activate scene %s: %s", self._config.scene, err)
            return False
        return True

    async def _async_run(self) -> None:
        while True:
            await self._async_guarded(
                self._async_process_requests,
                self._deadline_for(1, IMMEDIATE_SYNC_COOLDOWN),
            )
            await self._async_process_controls()
            if await self._async_wait_for_request():
                continue
            self._cycle_count += 1
            await self._async_guarded(self._async_poll, self._poll_deadline())

    def _deadline_for(self, fetches: int, pacing: float = 0.0) -> float:
        """Return a step deadline covering fetches that exhaust their retries.

        Never shorter than the watchdog timeout.
        """
        retries = self._config.retry_count
        per_fetch = (
            retries * self._config.request_timeout
            + RETRY_BACKOFF_STEP * retries * (retries - 1) / 2
        )
        return max(self._watchdog.timeout, fetches * per_fetch + pacing)

    def _poll_deadline(self) -> float:
        switches = len(self._tracker.entity_ids)
        sensors = len(self._config.sensors)
        pacing = (
            FALLBACK_REQUEST_DELAY * switches
            + SENSOR_PRE_DELAY
            + SENSOR_REQUEST_DELAY * sensors
        )
        # Bulk fetch, then one fallback fetch per switch, then the sensors
        return self._deadline_for(1 + switches + sensors, pacing)

    async def _async_guarded(
        self,
        step: Callable[[], Awaitable[None]],
        deadline: float | None = None,
    ) -> None:
        """Run one step of the worker under a deadline.

        The deadline defaults to the watchdog timeout. The watchdog is fed
        around the step and by the step itself before each request.
        """
        if deadline is None:
            deadline = self._watchdog.timeout
        self._watchdog.feed()
        try:
            async with asyncio.timeout(deadline):
                await step()
        except TimeoutError:
            self._watchdog.record_missed_deadline()
            _LOGGER.error("Sync step exceeded %.1f seconds, abandoning it", deadline)
        except Exception:
            _LOGGER.exception("Unexpected error in sync worker")
        finally:
            self._watchdog.feed()

    async def _async_wait_for_request(self) -> bool:
        """Wait out the poll interval.

        Returns:
            True if a request arrived before the interval elapsed.

        """
        self._wake.clear()
        if (
            self._init_channel.pending
            or self._sync_channel.pending
            or not self._control_queue.empty()
        ):
            return True

        loop = asyncio.get_running_loop()
        deadline = loop.time() + self._config.poll_interval
        while (remaining := deadline - loop.time()) > 0:
            try:
                async with asyncio.timeout(min(remaining, self._watchdog.timeout / 2)):
                    await self._wake.wait()
            except TimeoutError:
                # Idle is not a stall
                self._watchdog.feed()
            else:
                return True
        return False

    async def _async_process_requests(self) -> None:
        if self._init_channel.take():
            if self._initialized:
                _LOGGER.debug("API client already initialized")
            else:
                self._initialize_client()

        if self._sync_channel.take():
            if self._initialized:
                await self._async_immediate_sync()
            else:
                _LOGGER.debug("Dropping sync request, API client not initialized")

    async def _async_process_controls(self) -> None:
        while not self._control_queue.empty():
            command = self._control_queue.get_nowait()
            await self._async_guarded(
                functools.partial(self._async_apply_control, command),
                self._deadline_for(2, DEFAULT_CONFIRM_DELAY),
            )

    async def _async_apply_control(self, command: SwitchCommand) -> None:
        entity_id = command.entity_id
        if not self._initialized:
            _LOGGER.debug(
                "Dropping control of %s, API client not initialized", entity_id
            )
            return

        _LOGGER.info("Switch control: %s -> %s", entity_id, command.state.name)
        try:
            synced = await self._tracker.async_set_and_synchronize(
                entity_id, command.state
            )
        except DeviceDisabledError as err:
            _LOGGER.warning("Ignoring switch control: %s", err)
            return
        finally:
            self._watchdog.feed()

        remote_state = self._tracker.get(entity_id).remote_state
        if remote_state in (DeviceState.ON, DeviceState.OFF):
            self._presenter.set_switch(entity_id, remote_state is DeviceState.ON)
        if not synced:
            _LOGGER.warning("%s did not reach %s", entity_id, command.state.name)

    def _initialize_client(self) -> None:
        _LOGGER.info("Processing API initialization request")
        try:
            self._client.initialize(
                self._config.host,
                self._config.port,
                self._config.access_token,
            )
        except HomeAssistantApiError as err:
            _LOGGER.error("Failed to initialize API client: %s", err)
            self._set_status(STATUS_FAILED, False)
            return

        self._initialized = True
        self._set_status(STATUS_CONNECTED, True)
        self._sync_channel.offer()
        _LOGGER.info("Immediate sync requested after initialization")

    async def _async_immediate_sync(self) -> None:
        _LOGGER.info("Processing immediate sync request")
        if await self._async_bulk_refresh():
            self._set_status(STATUS_CONNECTED, True)
        else:
            self._set_status(STATUS_SYNC_ERROR, False)
        await self._sleep(IMMEDIATE_SYNC_COOLDOWN)

    async def _async_poll(self) -> None:
        if self._cycle_count % HEALTH_REPORT_EVERY == 0:
            self._report_health()

        if not self._initialized:
            _LOGGER.warning("API client not initialized, skipping device state fetch")
            return

        _LOGGER.info("Syncing switch states (cycle %d)", self._cycle_count)
        self._set_status(STATUS_SYNCING, True)

        if await self._async_bulk_refresh():
            self._set_status(STATUS_CONNECTED, True)
        else:
            self._set_status(STATUS_SYNC_ERROR, False)
            await self._async_fallback_refresh()

        if self._config.sensors and self._cycle_count % SENSOR_POLL_EVERY == 0:
            await self._async_refresh_sensors()

        _LOGGER.debug("Device state sync completed (cycle %d)", self._cycle_count)

    def _report_health(self) -> None:
        _LOGGER.info(
            "Health: %d tasks, %d allocated blocks, %d missed deadlines",
            len(asyncio.all_tasks()),
            sys.getallocatedblocks(),
            self._watchdog.missed_deadlines,
        )

    def _apply_state(self, entity_id: str, state: EntityState) -> None:
        self._tracker.apply_observed_state(entity_id, state)
        self._presenter.set_switch(entity_id, state.is_on)

    def _apply_states(
        self, entity_ids: Sequence[str], states: Sequence[EntityState | None]
    ) -> None:
        for entity_id, state in zip(entity_ids, states, strict=True):
            if state is not None:
                self._apply_state(entity_id, state)

    async def _async_bulk_refresh(self) -> bool:
        """Fetch every switch with one request.

        Returns:
            True if every switch state was received.

        """
        entity_ids = self._tracker.entity_ids
        self._watchdog.feed()
        try:
            states = await self._client.async_get_multiple_entity_states(entity_ids)
        except HomeAssistantEntityNotFoundError as err:
            _LOGGER.warning("Bulk state fetch incomplete: %s", err)
            self._apply_states(entity_ids, err.states)
            return False
        except HomeAssistantApiError as err:
            _LOGGER.warning("Bulk state fetch failed: %s", err)
            return False
        finally:
            self._watchdog.feed()

        self._apply_states(entity_ids, states)
        self._last_full_update = self._clock()
        _LOGGER.info(
            "Switch states synced: %s",
            ", ".join(f"{state.entity_id}={state.state}" for state in states),
        )
        return True

    async def _async_fallback_refresh(self) -> None:
        """Fetch each enabled switch on its own, pacing the requests."""
        _LOGGER.info("Attempting individual entity requests as fallback")
        entity_ids = [
            entity_id
            for entity_id in self._tracker.entity_ids
            if self._tracker.is_enabled(entity_id)
        ]
        for index, entity_id in enumerate(entity_ids):
            if index:
                await self._sleep(FALLBACK_REQUEST_DELAY)
            self._watchdog.feed()
            try:
                state = await self._client.async_get_entity_state(entity_id)
            except HomeAssistantApiError as err:
                self._tracker.record_failure(entity_id, err)
                continue
            self._apply_state(entity_id, state)
        _LOGGER.info("Individual fallback requests completed")

    async def _async_refresh_sensors(self) -> None:
        await self._sleep(SENSOR_PRE_DELAY)
        for index, entity_id in enumerate(self._config.sensors):
            if index:
                await self._sleep(SENSOR_REQUEST_DELAY)
            self._watchdog.feed()
            try:
                value = await self._client.async_get_sensor_value(entity_id)
            except HomeAssistantApiError as err:
                _LOGGER.debug("Failed to fetch sensor %s: %s", entity_id, err)
                continue
            self._presenter.update_sensor(entity_id, value)
        _LOGGER.debug("Sensor fetch completed")
