"""Data models for the Home Assistant device sync engine."""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from homeassistant.const import STATE_OFF, STATE_ON, STATE_UNAVAILABLE


class DeviceState(Enum):
    """On/off state of a controlled switch."""

    UNKNOWN = "unknown"
    ON = "on"
    OFF = "off"
    UNAVAILABLE = "unavailable"

    @classmethod
    def from_remote(cls, state: str | None) -> DeviceState:
        """Map a remote state string onto a device state."""
        if state == STATE_ON:
            return cls.ON
        if state == STATE_OFF:
            return cls.OFF
        if state == STATE_UNAVAILABLE:
            return cls.UNAVAILABLE
        return cls.UNKNOWN


class SyncStatus(Enum):
    """Agreement between desired and observed device state."""

    UNKNOWN = "unknown"
    SYNCED = "synced"
    OUT_OF_SYNC = "out_of_sync"
    FAILED = "failed"
    DISABLED = "disabled"


@dataclass(frozen=True, slots=True)
class EntityState:
    """Represents one entity's state as last reported by the server."""

    entity_id: str
    state: str
    friendly_name: str = ""
    attributes: dict[str, str] = field(default_factory=dict)
    last_changed: datetime | None = None
    last_updated: datetime | None = None

    @property
    def is_on(self) -> bool:
        """Return True if the entity reports the "on" state."""
        return self.state == STATE_ON

    @property
    def numeric_value(self) -> float | None:
        """Return the state as a float, or None for non-numeric states."""
        try:
            return float(self.state)
        except ValueError:
            return None


@dataclass(frozen=True, slots=True)
class ServiceCall:
    """A remote-effecting service invocation."""

    domain: str
    service: str
    entity_id: str
    service_data: dict[str, Any] | None = None

    @property
    def path(self) -> str:
        """Return the API path of the service endpoint."""
        return f"/services/{self.domain}/{self.service}"

    def payload(self) -> dict[str, Any]:
        """Build the JSON body sent to the service endpoint."""
        body: dict[str, Any] = {"entity_id": self.entity_id}
        if self.service_data:
            body.update(self.service_data)
        return body


@dataclass(slots=True)
class ApiResponse:
    """Result of one HTTP exchange.

    The body is owned by the request scope that produced the response and is
    dropped by ``release`` when that scope exits.
    """

    status_code: int = 0
    body: bytes | None = None
    error_message: str = ""
    result: Any = None

    @property
    def success(self) -> bool:
        """Return True for 2xx status codes."""
        return 200 <= self.status_code < 300

    @property
    def released(self) -> bool:
        """Return True once the body has been dropped."""
        return self.body is None

    def json(self) -> Any:
        """Decode the body as JSON."""
        if self.body is None:
            msg = "Response body already released"
            raise ValueError(msg)
        return json.loads(self.body)

    def release(self) -> None:
        """Drop the response body."""
        self.body = None


@dataclass(slots=True)
class DeviceSync:
    """Synchronization record of one controlled device."""

    entity_id: str
    friendly_name: str
    local_state: DeviceState = DeviceState.UNKNOWN
    remote_state: DeviceState = DeviceState.UNKNOWN
    sync_status: SyncStatus = SyncStatus.UNKNOWN
    last_sync_time: float = 0.0
    last_check_time: float | None = None
    failed_attempts: int = 0
    enabled: bool = True
