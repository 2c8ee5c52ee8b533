"""Constants for the Home Assistant device sync engine.

This module contains the constants used throughout the package,
including API paths, default timings, limits and status texts.
"""

DOMAIN = "ha_device_sync"

USER_AGENT = "ha-device-sync/1.0"
API_PATH = "/api"
CONTENT_TYPE_JSON = "application/json"

DEFAULT_PORT = 8123

# HTTP request policy
DEFAULT_REQUEST_TIMEOUT = 10.0
DEFAULT_RETRY_COUNT = 3
RETRY_BACKOFF_STEP = 1.0  # Seconds per attempt index (linear backoff)
DEFAULT_MAX_RESPONSE_SIZE = 4096
DEFAULT_MAX_BULK_RESPONSE_SIZE = 131072

# Entity parsing limits
MAX_ATTRIBUTES = 16
MAX_BULK_ENTITIES = 100

# Sync tracker timings
DEFAULT_MIN_CHECK_INTERVAL = 5.0
DEFAULT_CONFIRM_DELAY = 0.5

# Task manager timings
DEFAULT_POLL_INTERVAL = 30.0
DEFAULT_WATCHDOG_TIMEOUT = 60.0
IMMEDIATE_SYNC_COOLDOWN = 1.0
CONTROL_QUEUE_SIZE = 8
FALLBACK_REQUEST_DELAY = 0.2
SENSOR_PRE_DELAY = 0.5
SENSOR_REQUEST_DELAY = 0.3
HEALTH_REPORT_EVERY = 10
SENSOR_POLL_EVERY = 2

# Status texts shown by the presentation layer
STATUS_OFFLINE = "Offline"
STATUS_STARTING = "Starting"
STATUS_READY = "Ready"
STATUS_CONNECTED = "Connected"
STATUS_SYNCING = "Syncing"
STATUS_SYNC_ERROR = "Sync Error"
STATUS_FAILED = "Failed"
STATUS_STOPPING = "Stopping"

CONF_SWITCHES = "switches"
CONF_SENSORS = "sensors"
CONF_SCENE = "scene"
CONF_ENTITY_ID = "entity_id"
CONF_LABEL = "label"
CONF_POLL_INTERVAL = "poll_interval"
CONF_RETRY_COUNT = "retry_count"
CONF_REQUEST_TIMEOUT = "request_timeout"
CONF_MAX_RESPONSE_SIZE = "max_response_size"
CONF_MAX_BULK_RESPONSE_SIZE = "max_bulk_response_size"
CONF_WATCHDOG_TIMEOUT = "watchdog_timeout"
CONF_MIN_CHECK_INTERVAL = "min_check_interval"
