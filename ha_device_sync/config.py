"""Static configuration of the sync engine."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import voluptuous as vol
import yaml
from homeassistant.const import CONF_ACCESS_TOKEN, CONF_HOST, CONF_PORT

from .const import (
    CONF_ENTITY_ID,
    CONF_LABEL,
    CONF_MAX_BULK_RESPONSE_SIZE,
    CONF_MAX_RESPONSE_SIZE,
    CONF_MIN_CHECK_INTERVAL,
    CONF_POLL_INTERVAL,
    CONF_REQUEST_TIMEOUT,
    CONF_RETRY_COUNT,
    CONF_SCENE,
    CONF_SENSORS,
    CONF_SWITCHES,
    CONF_WATCHDOG_TIMEOUT,
    DEFAULT_MAX_BULK_RESPONSE_SIZE,
    DEFAULT_MAX_RESPONSE_SIZE,
    DEFAULT_MIN_CHECK_INTERVAL,
    DEFAULT_POLL_INTERVAL,
    DEFAULT_PORT,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RETRY_COUNT,
    DEFAULT_WATCHDOG_TIMEOUT,
)

_LOGGER = logging.getLogger(__name__)

ENTITY_ID_PATTERN = r"^[a-z0-9_]+\.[a-z0-9_]+$"

entity_id = vol.All(str, vol.Match(ENTITY_ID_PATTERN, msg="invalid entity ID"))
positive_float = vol.All(vol.Coerce(float), vol.Range(min=0, min_included=False))
positive_int = vol.All(vol.Coerce(int), vol.Range(min=1))

SWITCH_SCHEMA = vol.Schema(
    {
        vol.Required(CONF_ENTITY_ID): entity_id,
        vol.Optional(CONF_LABEL): str,
    }
)

CONFIG_SCHEMA = vol.Schema(
    {
        vol.Required(CONF_HOST): vol.All(str, vol.Length(min=1)),
        vol.Optional(CONF_PORT, default=DEFAULT_PORT): vol.All(
            vol.Coerce(int), vol.Range(min=1, max=65535)
        ),
        vol.Required(CONF_ACCESS_TOKEN): vol.All(str, vol.Length(min=1)),
        vol.Required(CONF_SWITCHES): vol.All([SWITCH_SCHEMA], vol.Length(min=1)),
        vol.Optional(CONF_SENSORS, default=list): [entity_id],
        vol.Optional(CONF_SCENE): entity_id,
        vol.Optional(CONF_POLL_INTERVAL, default=DEFAULT_POLL_INTERVAL): positive_float,
        vol.Optional(CONF_RETRY_COUNT, default=DEFAULT_RETRY_COUNT): positive_int,
        vol.Optional(
            CONF_REQUEST_TIMEOUT, default=DEFAULT_REQUEST_TIMEOUT
        ): positive_float,
        vol.Optional(
            CONF_MAX_RESPONSE_SIZE, default=DEFAULT_MAX_RESPONSE_SIZE
        ): positive_int,
        vol.Optional(
            CONF_MAX_BULK_RESPONSE_SIZE, default=DEFAULT_MAX_BULK_RESPONSE_SIZE
        ): positive_int,
        vol.Optional(
            CONF_WATCHDOG_TIMEOUT, default=DEFAULT_WATCHDOG_TIMEOUT
        ): positive_float,
        vol.Optional(
            CONF_MIN_CHECK_INTERVAL, default=DEFAULT_MIN_CHECK_INTERVAL
        ): vol.All(vol.Coerce(float), vol.Range(min=0)),
    }
)


class ConfigError(Exception):
    """Exception raised for missing or invalid configuration."""


@dataclass(frozen=True, slots=True)
class SwitchConfig:
    """A controlled switch and its display label."""

    entity_id: str
    label: str


@dataclass(frozen=True, slots=True)
class SyncConfig:
    """Validated engine configuration."""

    host: str
    access_token: str
    switches: tuple[SwitchConfig, ...]
    port: int = DEFAULT_PORT
    sensors: tuple[str, ...] = field(default_factory=tuple)
    scene: str | None = None
    poll_interval: float = DEFAULT_POLL_INTERVAL
    retry_count: int = DEFAULT_RETRY_COUNT
    request_timeout: float = DEFAULT_REQUEST_TIMEOUT
    max_response_size: int = DEFAULT_MAX_RESPONSE_SIZE
    max_bulk_response_size: int = DEFAULT_MAX_BULK_RESPONSE_SIZE
    watchdog_timeout: float = DEFAULT_WATCHDOG_TIMEOUT
    min_check_interval: float = DEFAULT_MIN_CHECK_INTERVAL

    @property
    def switch_ids(self) -> list[str]:
        """Return the switch entity IDs in configured order."""
        return [switch.entity_id for switch in self.switches]

    @classmethod
    def from_dict(cls, data: Any) -> SyncConfig:
        """Validate a raw mapping and build the configuration.

        Raises:
            ConfigError: If the mapping does not match the schema.

        """
        try:
            validated = CONFIG_SCHEMA(data)
        except vol.Invalid as err:
            msg = f"Invalid configuration: {err}"
            raise ConfigError(msg) from err

        switches = tuple(
            SwitchConfig(
                entity_id=switch[CONF_ENTITY_ID],
                label=switch.get(CONF_LABEL) or switch[CONF_ENTITY_ID],
            )
            for switch in validated[CONF_SWITCHES]
        )
        if len({switch.entity_id for switch in switches}) != len(switches):
            msg = "Invalid configuration: duplicate switch entity IDs"
            raise ConfigError(msg)

        return cls(
            host=validated[CONF_HOST],
            port=validated[CONF_PORT],
            access_token=validated[CONF_ACCESS_TOKEN],
            switches=switches,
            sensors=tuple(validated[CONF_SENSORS]),
            scene=validated.get(CONF_SCENE),
            poll_interval=validated[CONF_POLL_INTERVAL],
            retry_count=validated[CONF_RETRY_COUNT],
            request_timeout=validated[CONF_REQUEST_TIMEOUT],
            max_response_size=validated[CONF_MAX_RESPONSE_SIZE],
            max_bulk_response_size=validated[CONF_MAX_BULK_RESPONSE_SIZE],
            watchdog_timeout=validated[CONF_WATCHDOG_TIMEOUT],
            min_check_interval=validated[CONF_MIN_CHECK_INTERVAL],
        )


def load_config(path: str | Path) -> SyncConfig:
    """Read and validate a YAML configuration file.

    Raises:
        ConfigError: If the file cannot be read, parsed or validated.

    """
    try:
        with open(path, encoding="utf-8") as file:
            data = yaml.safe_load(file)
    except OSError as err:
        msg = f"Cannot read configuration file {path}: {err}"
        raise ConfigError(msg) from err
    except yaml.YAMLError as err:
        msg = f"Cannot parse configuration file {path}: {err}"
        raise ConfigError(msg) from err

    if not isinstance(data, dict):
        msg = f"Configuration file {path} must contain a mapping"
        raise ConfigError(msg)

    config = SyncConfig.from_dict(data)
    _LOGGER.info(
        "Loaded configuration for %s:%d with %d switches and %d sensors",
        config.host,
        config.port,
        len(config.switches),
        len(config.sensors),
    )
    return config
