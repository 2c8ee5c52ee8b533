"""Run the sync engine from a YAML configuration file."""

from __future__ import annotations

import argparse
import asyncio
import contextlib
import logging
import signal
import sys

from . import build_task_manager
from .config import ConfigError, SyncConfig, load_config
from .presentation import LoggingPresenter

_LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_CONFIG_ERROR = 2
EXIT_WATCHDOG = 3


async def _async_run(config: SyncConfig) -> int:
    stop_event = asyncio.Event()
    exit_code = EXIT_OK

    def on_timeout() -> None:
        nonlocal exit_code
        _LOGGER.critical("Watchdog expired, shutting down")
        exit_code = EXIT_WATCHDOG
        stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, stop_event.set)

    manager = build_task_manager(config, LoggingPresenter(), on_timeout=on_timeout)
    manager.attach_loop(loop)
    await manager.async_handle_connectivity(True)

    try:
        await stop_event.wait()
    finally:
        await manager.async_stop()
    return exit_code


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="ha-device-sync",
        description="Keep Home Assistant switches in sync with a local display",
    )
    parser.add_argument("config", help="path to the YAML configuration file")
    parser.add_argument(
        "--log-level",
        default="info",
        choices=["debug", "info", "warning", "error"],
    )
    args = parser.parse_args(argv)

    logging.basicConfig(
        level=args.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    try:
        config = load_config(args.config)
    except ConfigError as err:
        _LOGGER.error("%s", err)
        return EXIT_CONFIG_ERROR

    try:
        return asyncio.run(_async_run(config))
    except KeyboardInterrupt:
        return EXIT_OK


if __name__ == "__main__":
    sys.exit(main())
