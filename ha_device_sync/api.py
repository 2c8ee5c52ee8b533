"""API client for the Home Assistant REST interface.

This module provides the transport used by the sync engine: authenticated
GET/POST exchanges with a bounded retry policy, parsing of entity states and
the bulk state listing, and service calls.
"""

from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator, Awaitable, Callable, Sequence
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Any

import httpx
from homeassistant.const import (
    ATTR_FRIENDLY_NAME,
    SERVICE_TOGGLE,
    SERVICE_TURN_OFF,
    SERVICE_TURN_ON,
)
from homeassistant.util import dt as dt_util

from .const import (
    API_PATH,
    CONTENT_TYPE_JSON,
    DEFAULT_MAX_BULK_RESPONSE_SIZE,
    DEFAULT_MAX_RESPONSE_SIZE,
    DEFAULT_REQUEST_TIMEOUT,
    DEFAULT_RETRY_COUNT,
    MAX_ATTRIBUTES,
    MAX_BULK_ENTITIES,
    RETRY_BACKOFF_STEP,
    USER_AGENT,
)
from .models import ApiResponse, EntityState, ServiceCall

_LOGGER = logging.getLogger(__name__)

# HTTP status codes
HTTP_UNAUTHORIZED = 401
HTTP_FORBIDDEN = 403

SCENE_DOMAIN = "scene"
SWITCH_DOMAIN = "switch"


class HomeAssistantApiError(Exception):
    """Base exception for Home Assistant API client errors."""


class HomeAssistantNotInitializedError(HomeAssistantApiError):
    """Exception raised when the client is used before initialization."""


class HomeAssistantInvalidArgumentError(HomeAssistantApiError, ValueError):
    """Exception raised for invalid caller-supplied arguments."""


class HomeAssistantTransportError(HomeAssistantApiError):
    """Exception raised when the server cannot be reached."""


class HomeAssistantTimeoutError(HomeAssistantTransportError):
    """Exception raised when a request attempt times out."""


class HomeAssistantInvalidResponseError(HomeAssistantApiError):
    """Exception raised for malformed, oversized or unparseable responses."""


class HomeAssistantStatusError(HomeAssistantApiError):
    """Exception raised for non-2xx HTTP responses."""

    def __init__(self, status_code: int, message: str) -> None:
        super().__init__(message)
        self.status_code = status_code


class HomeAssistantAuthError(HomeAssistantStatusError):
    """Exception raised when the access token is rejected."""


class HomeAssistantEntityNotFoundError(HomeAssistantApiError):
    """Exception raised when a bulk fetch misses some requested entities.

    Attributes:
        missing: Requested entity IDs absent from the listing.
        states: Result list in request order; positions of missing
            entities hold None.

    """

    def __init__(
        self, missing: list[str], states: list[EntityState | None]
    ) -> None:
        super().__init__(f"Entities not found: {', '.join(missing)}")
        self.missing = missing
        self.states = states


class DeviceDisabledError(HomeAssistantApiError):
    """Exception raised when acting on a device disabled after failures."""


def create_headers(token: str) -> dict[str, str]:
    """Create HTTP headers for Home Assistant API requests.

    Args:
        token: Long-lived access token.

    Returns:
        Dictionary containing HTTP headers for API requests.

    """
    return {
        "Authorization": f"Bearer {token}",
        "Content-Type": CONTENT_TYPE_JSON,
        "User-Agent": USER_AGENT,
    }


def build_base_url(host: str, port: int) -> str:
    """Return the API base URL for a server."""
    return f"http://{host}:{port}{API_PATH}"


def is_auth_error(status: int) -> bool:
    """Check if HTTP status code indicates an authentication error."""
    return status in (HTTP_UNAUTHORIZED, HTTP_FORBIDDEN)


def entity_domain(entity_id: str) -> str:
    """Return the domain part of an entity ID, defaulting to switch."""
    domain, sep, _ = entity_id.partition(".")
    return domain if sep and domain else SWITCH_DOMAIN


def _stringify_attribute(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, separators=(",", ":"))


def parse_entity_state(data: Any) -> EntityState:
    """Parse one state object of the REST API into an EntityState.

    Args:
        data: Decoded JSON object with entity_id, state and attributes.

    Returns:
        Parsed EntityState. At most MAX_ATTRIBUTES attributes are kept.

    Raises:
        HomeAssistantInvalidResponseError: If required fields are missing.

    """
    if not isinstance(data, dict):
        msg = f"Expected a state object, got {type(data).__name__}"
        raise HomeAssistantInvalidResponseError(msg)

    entity_id = data.get("entity_id")
    state = data.get("state")
    if not isinstance(entity_id, str) or not isinstance(state, str):
        msg = "State object is missing entity_id or state"
        raise HomeAssistantInvalidResponseError(msg)

    raw_attributes = data.get("attributes")
    if not isinstance(raw_attributes, dict):
        raw_attributes = {}

    attributes: dict[str, str] = {}
    for key, value in raw_attributes.items():
        if len(attributes) >= MAX_ATTRIBUTES:
            _LOGGER.debug(
                "Dropping attributes of %s beyond the first %d",
                entity_id,
                MAX_ATTRIBUTES,
            )
            break
        attributes[str(key)] = _stringify_attribute(value)

    friendly_name = raw_attributes.get(ATTR_FRIENDLY_NAME)

    return EntityState(
        entity_id=entity_id,
        state=state,
        friendly_name=friendly_name if isinstance(friendly_name, str) else "",
        attributes=attributes,
        last_changed=_parse_timestamp(data.get("last_changed")),
        last_updated=_parse_timestamp(data.get("last_updated")),
    )


def _parse_timestamp(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    return dt_util.parse_datetime(value)


def decode_json(response: ApiResponse) -> Any:
    """Decode a response body, mapping parse failures to the client taxonomy."""
    try:
        return response.json()
    except (ValueError, UnicodeDecodeError) as err:
        msg = f"Failed to parse response body: {err}"
        raise HomeAssistantInvalidResponseError(msg) from err


async def _read_bounded(response: httpx.Response, max_size: int) -> bytes:
    """Read a streamed body into a buffer that may not exceed max_size."""
    buffer = bytearray()
    async for chunk in response.aiter_bytes():
        if len(buffer) + len(chunk) > max_size:
            msg = f"Response exceeds maximum size of {max_size} bytes"
            raise HomeAssistantInvalidResponseError(msg)
        buffer.extend(chunk)
    return bytes(buffer)


def _validate_status(response: ApiResponse, method: str, path: str) -> None:
    if response.success:
        return

    text = (response.body or b"").decode("utf-8", errors="replace")[:200]
    response.error_message = f"{method} {path} failed: {response.status_code} {text}"
    response.release()

    if is_auth_error(response.status_code):
        raise HomeAssistantAuthError(response.status_code, response.error_message)
    raise HomeAssistantStatusError(response.status_code, response.error_message)


class HomeAssistantClient:
    """Authenticated client for one Home Assistant server.

    Each attempt of a request runs on a fresh connection. Network failures
    are retried up to ``retry_count`` attempts with a linear backoff of
    ``attempt * RETRY_BACKOFF_STEP`` seconds between attempts.
    """

    def __init__(
        self,
        *,
        retry_count: int = DEFAULT_RETRY_COUNT,
        request_timeout: float = DEFAULT_REQUEST_TIMEOUT,
        max_response_size: int = DEFAULT_MAX_RESPONSE_SIZE,
        max_bulk_response_size: int = DEFAULT_MAX_BULK_RESPONSE_SIZE,
        max_bulk_entities: int = MAX_BULK_ENTITIES,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        """Initialize the client.

        Args:
            retry_count: Attempts per request before giving up.
            request_timeout: Timeout in seconds of a single attempt.
            max_response_size: Body size limit for single-entity requests.
            max_bulk_response_size: Body size limit for the bulk listing.
            max_bulk_entities: Rows of the bulk listing examined at most.
            sleep: Coroutine used for backoff delays.

        """
        self._retry_count = retry_count
        self._request_timeout = request_timeout
        self._max_response_size = max_response_size
        self._max_bulk_response_size = max_bulk_response_size
        self._max_bulk_entities = max_bulk_entities
        self._sleep = sleep
        self._base_url: str | None = None
        self._headers: dict[str, str] | None = None

    @property
    def initialized(self) -> bool:
        """Return True once credentials have been configured."""
        return self._headers is not None

    @property
    def base_url(self) -> str | None:
        """Return the API base URL, or None before initialization."""
        return self._base_url

    def initialize(self, host: str, port: int, token: str) -> None:
        """Configure the server address and cache the auth header.

        Re-initializing an initialized client is a no-op.

        Raises:
            HomeAssistantInvalidArgumentError: If host or token is empty or the
                port is out of range.

        """
        if self.initialized:
            _LOGGER.warning("Home Assistant API client already initialized")
            return

        if not host:
            msg = "Server host must not be empty"
            raise HomeAssistantInvalidArgumentError(msg)
        if not token:
            msg = "Access token must not be empty"
            raise HomeAssistantInvalidArgumentError(msg)
        if not 0 < port < 65536:
            msg = f"Invalid server port: {port}"
            raise HomeAssistantInvalidArgumentError(msg)

        self._base_url = build_base_url(host, port)
        self._headers = create_headers(token)
        _LOGGER.info("Home Assistant API client initialized (%s)", self._base_url)

    def deinitialize(self) -> None:
        """Forget the server address and credentials."""
        if not self.initialized:
            return
        _LOGGER.info("Deinitializing Home Assistant API client")
        self._base_url = None
        self._headers = None

    @asynccontextmanager
    async def async_request(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None = None,
        max_size: int | None = None,
    ) -> AsyncIterator[ApiResponse]:
        """Perform a request and yield its response for the scope of the block.

        The response body is released when the block exits, whether it
        exits normally or by an exception.

        Raises:
            HomeAssistantNotInitializedError: If the client is not initialized.
            HomeAssistantTransportError: If every attempt failed.
            HomeAssistantStatusError: If the server answered with an error.
            HomeAssistantInvalidResponseError: If the body is too large.

        """
        if self._base_url is None or self._headers is None:
            msg = "Home Assistant API client not initialized"
            raise HomeAssistantNotInitializedError(msg)

        response = await self._async_perform(
            method,
            path,
            payload,
            max_size or self._max_response_size,
        )
        try:
            yield response
        finally:
            response.release()

    async def _async_perform(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None,
        max_size: int,
    ) -> ApiResponse:
        last_error: HomeAssistantTransportError | None = None

        for attempt in range(1, self._retry_count + 1):
            _LOGGER.debug(
                "Sending %s %s (attempt %d/%d)",
                method,
                path,
                attempt,
                self._retry_count,
            )
            try:
                return await self._async_attempt(method, path, payload, max_size)
            except HomeAssistantTransportError as err:
                last_error = err
                _LOGGER.warning(
                    "%s %s failed (attempt %d/%d): %s",
                    method,
                    path,
                    attempt,
                    self._retry_count,
                    err,
                )

            if attempt < self._retry_count:
                delay = attempt * RETRY_BACKOFF_STEP
                _LOGGER.debug("Waiting %.1f seconds before retry", delay)
                await self._sleep(delay)

        _LOGGER.error("%s %s failed after %d attempts", method, path, self._retry_count)
        if last_error is None:
            msg = f"{method} {path} was not attempted"
            raise HomeAssistantTransportError(msg)
        raise last_error

    async def _async_attempt(
        self,
        method: str,
        path: str,
        payload: dict[str, Any] | None,
        max_size: int,
    ) -> ApiResponse:
        url = f"{self._base_url}{path}"
        async with httpx.AsyncClient(
            headers=self._headers,
            timeout=self._request_timeout,
        ) as session:
            try:
                async with session.stream(method, url, json=payload) as http_response:
                    body = await _read_bounded(http_response, max_size)
                    status_code = http_response.status_code
            except httpx.TimeoutException as err:
                msg = f"Request timed out: {err}"
                raise HomeAssistantTimeoutError(msg) from err
            except httpx.RequestError as err:
                msg = f"Connection error: {err}"
                raise HomeAssistantTransportError(msg) from err

        response = ApiResponse(status_code=status_code, body=body)
        _LOGGER.debug("%s %s returned %d (%d bytes)", method, path, status_code, len(body))
        _validate_status(response, method, path)
        return response

    async def async_test_connection(self) -> str:
        """Check that the API is reachable and the token is accepted.

        Returns:
            The server's status message.

        """
        async with self.async_request("GET", "/") as response:
            data = decode_json(response)
        message = data.get("message", "") if isinstance(data, dict) else ""
        _LOGGER.info("Connection test successful: %s", message)
        return message

    async def async_get_entity_state(self, entity_id: str) -> EntityState:
        """Fetch the state of one entity.

        Raises:
            HomeAssistantInvalidArgumentError: If entity_id is empty.
            HomeAssistantApiError: If the request fails.

        """
        if not entity_id:
            msg = "Entity ID must not be empty"
            raise HomeAssistantInvalidArgumentError(msg)

        async with self.async_request("GET", f"/states/{entity_id}") as response:
            state = parse_entity_state(decode_json(response))
        _LOGGER.debug("State of %s: %s", entity_id, state.state)
        return state

    async def _async_get_listing(self) -> list[Any]:
        async with self.async_request(
            "GET", "/states", max_size=self._max_bulk_response_size
        ) as response:
            listing = decode_json(response)
        if not isinstance(listing, list):
            msg = "Bulk state listing is not a JSON array"
            raise HomeAssistantInvalidResponseError(msg)
        return listing

    async def async_get_multiple_entity_states(
        self, entity_ids: Sequence[str]
    ) -> list[EntityState]:
        """Fetch several entity states from the bulk listing in one request.

        The listing is scanned until every requested entity has been seen,
        examining at most ``max_bulk_entities`` rows.

        Returns:
            States in the order of entity_ids.

        Raises:
            HomeAssistantEntityNotFoundError: If some or all entities were not
                found. Its ``states`` attribute carries the partial result.

        """
        if not entity_ids or not all(entity_ids):
            msg = "Entity ID list must be non-empty and contain no empty IDs"
            raise HomeAssistantInvalidArgumentError(msg)

        _LOGGER.debug("Fetching %d entity states in bulk", len(entity_ids))
        listing = await self._async_get_listing()

        positions: dict[str, list[int]] = {}
        for index, entity_id in enumerate(entity_ids):
            positions.setdefault(entity_id, []).append(index)

        states: list[EntityState | None] = [None] * len(entity_ids)
        found: set[str] = set()

        for examined, row in enumerate(listing, start=1):
            if examined > self._max_bulk_entities:
                _LOGGER.warning(
                    "Reached bulk scan limit of %d entities, stopping search",
                    self._max_bulk_entities,
                )
                break
            entity_id = row.get("entity_id") if isinstance(row, dict) else None
            if not isinstance(entity_id, str) or entity_id not in positions:
                continue

            try:
                state = parse_entity_state(row)
            except HomeAssistantInvalidResponseError:
                _LOGGER.warning("Entity %s has no valid state", entity_id)
                continue

            for index in positions[entity_id]:
                states[index] = state
            found.add(entity_id)

            if len(found) == len(positions):
                _LOGGER.debug("Found all %d entities, stopping search early", len(found))
                break

        missing = [entity_id for entity_id in positions if entity_id not in found]
        if missing:
            _LOGGER.warning(
                "Found only %d/%d entity states", len(found), len(positions)
            )
            raise HomeAssistantEntityNotFoundError(missing, states)

        return [state for state in states if state is not None]

    async def async_get_entities_by_pattern(
        self, pattern: str, max_entities: int = MAX_BULK_ENTITIES
    ) -> list[EntityState]:
        """Return entities whose ID contains pattern, from the bulk listing."""
        if not pattern:
            msg = "Pattern must not be empty"
            raise HomeAssistantInvalidArgumentError(msg)

        listing = await self._async_get_listing()
        matches: list[EntityState] = []
        for row in listing[: self._max_bulk_entities]:
            entity_id = row.get("entity_id") if isinstance(row, dict) else None
            if not isinstance(entity_id, str) or pattern not in entity_id:
                continue
            try:
                matches.append(parse_entity_state(row))
            except HomeAssistantInvalidResponseError:
                continue
            if len(matches) >= max_entities:
                break

        _LOGGER.debug("Found %d entities matching %r", len(matches), pattern)
        return matches

    async def async_get_sensor_value(self, entity_id: str) -> float:
        """Fetch a numeric sensor state.

        Raises:
            HomeAssistantInvalidResponseError: If the state is not numeric.

        """
        state = await self.async_get_entity_state(entity_id)
        value = state.numeric_value
        if value is None:
            msg = f"State of {entity_id} is not numeric: {state.state!r}"
            raise HomeAssistantInvalidResponseError(msg)
        return value

    async def async_call_service(self, call: ServiceCall) -> ApiResponse:
        """Call a service.

        Returns:
            The released response; ``result`` holds the decoded body, if any.

        """
        if not call.domain or not call.service or not call.entity_id:
            msg = "Service call needs a domain, a service and an entity ID"
            raise HomeAssistantInvalidArgumentError(msg)

        _LOGGER.debug(
            "Calling service %s.%s for %s", call.domain, call.service, call.entity_id
        )
        async with self.async_request("POST", call.path, call.payload()) as response:
            if response.body:
                response.result = decode_json(response)
        _LOGGER.info(
            "Service %s.%s executed for %s", call.domain, call.service, call.entity_id
        )
        return response

    async def async_turn_on(self, entity_id: str) -> ApiResponse:
        """Turn an entity on."""
        return await self.async_call_service(
            ServiceCall(entity_domain(entity_id), SERVICE_TURN_ON, entity_id)
        )

    async def async_turn_off(self, entity_id: str) -> ApiResponse:
        """Turn an entity off."""
        return await self.async_call_service(
            ServiceCall(entity_domain(entity_id), SERVICE_TURN_OFF, entity_id)
        )

    async def async_toggle(self, entity_id: str) -> ApiResponse:
        """Toggle an entity."""
        return await self.async_call_service(
            ServiceCall(entity_domain(entity_id), SERVICE_TOGGLE, entity_id)
        )

    async def async_activate_scene(self, entity_id: str) -> ApiResponse:
        """Activate a scene."""
        return await self.async_call_service(
            ServiceCall(SCENE_DOMAIN, SERVICE_TURN_ON, entity_id)
        )

    async def async_set_entity_state(
        self,
        entity_id: str,
        state: str,
        attributes: dict[str, Any] | None = None,
    ) -> EntityState:
        """Write the state representation of an entity on the server."""
        if not entity_id or not state:
            msg = "Entity ID and state must not be empty"
            raise HomeAssistantInvalidArgumentError(msg)

        payload: dict[str, Any] = {"state": state}
        if attributes:
            payload["attributes"] = attributes

        async with self.async_request("POST", f"/states/{entity_id}", payload) as response:
            return parse_entity_state(decode_json(response))
