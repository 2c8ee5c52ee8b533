"""Presentation layer interface."""

from __future__ import annotations

import logging
from typing import Protocol

_LOGGER = logging.getLogger(__name__)


class Presenter(Protocol):
    """Receives state updates from the sync worker.

    Implementations are called from the worker task and must not block.
    """

    def set_switch(self, entity_id: str, is_on: bool) -> None:
        """Show the observed on/off state of a switch."""

    def update_status(self, text: str, connected: bool) -> None:
        """Show the connection status text."""

    def update_sensor(self, entity_id: str, value: float) -> None:
        """Show the latest value of a sensor."""


class LoggingPresenter:
    """Presenter that logs updates and keeps the last values."""

    def __init__(self) -> None:
        self.switches: dict[str, bool] = {}
        self.sensors: dict[str, float] = {}
        self.status_text = ""
        self.connected = False

    def set_switch(self, entity_id: str, is_on: bool) -> None:
        if self.switches.get(entity_id) is not is_on:
            _LOGGER.info("%s is %s", entity_id, "on" if is_on else "off")
        self.switches[entity_id] = is_on

    def update_status(self, text: str, connected: bool) -> None:
        if text != self.status_text or connected is not self.connected:
            _LOGGER.info("Status: %s (connected=%s)", text, connected)
        self.status_text = text
        self.connected = connected

    def update_sensor(self, entity_id: str, value: float) -> None:
        _LOGGER.debug("%s = %s", entity_id, value)
        self.sensors[entity_id] = value
