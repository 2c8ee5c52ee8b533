"""Keeps Home Assistant switches in sync with a local display."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .api import HomeAssistantClient
from .presentation import LoggingPresenter
from .sync import SyncTracker
from .task_manager import TaskManager
from .watchdog import Watchdog

if TYPE_CHECKING:
    from collections.abc import Callable

    from .config import SyncConfig
    from .presentation import Presenter

_LOGGER = logging.getLogger(__name__)

__all__ = ["build_task_manager"]


def build_task_manager(
    config: SyncConfig,
    presenter: Presenter | None = None,
    on_timeout: Callable[[], None] | None = None,
) -> TaskManager:
    """Wire the client, tracker, watchdog and worker for one server."""
    client = HomeAssistantClient(
        retry_count=config.retry_count,
        request_timeout=config.request_timeout,
        max_response_size=config.max_response_size,
        max_bulk_response_size=config.max_bulk_response_size,
    )
    tracker = SyncTracker(
        client,
        [(switch.entity_id, switch.label) for switch in config.switches],
        retry_ceiling=config.retry_count,
        min_check_interval=config.min_check_interval,
    )
    watchdog = Watchdog(config.watchdog_timeout, on_timeout=on_timeout)
    _LOGGER.debug(
        "Built sync engine for %s:%d (%d switches)",
        config.host,
        config.port,
        len(config.switches),
    )
    return TaskManager(
        config,
        client,
        tracker,
        presenter if presenter is not None else LoggingPresenter(),
        watchdog,
    )
