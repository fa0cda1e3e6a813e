"""
Async HTTP client for the walking pad control API.

Every outbound request goes through DeviceClient.request(), which classifies
failures into DeviceApiError subclasses and retries transient ones with a
linearly increasing delay. The client never touches the session store.
"""

import asyncio
import json
import logging
from typing import Any, Optional

import aiohttp

from .core import (
    DEFAULT_API_URL,
    REQUEST_ATTEMPTS,
    REQUEST_RETRY_DELAY,
    REQUEST_TIMEOUT,
    SPEED_SCALE,
    Settings,
)
from .errors import (
    DeviceApiError,
    DeviceRejectedError,
    MalformedResponseError,
    TransientRequestError,
)
from .store import DeviceMode

logger = logging.getLogger(__name__)

# Statuses worth another attempt; every other non-2xx is a business rejection
RETRYABLE_STATUSES = frozenset({408, 429, 500, 502, 503, 504})


def encode_speed(km_h: float) -> int:
    """Convert km/h to the API's integer km/h x 10 encoding."""
    return int(round(km_h * SPEED_SCALE))


def decode_speed(raw: Any) -> float:
    """Convert the API's km/h x 10 encoding back to km/h."""
    return float(raw or 0) / SPEED_SCALE


class DeviceClient:
    """Performs single logical requests against the pad API."""

    def __init__(
        self,
        base_url: str = DEFAULT_API_URL,
        timeout: float = REQUEST_TIMEOUT,
        max_attempts: int = REQUEST_ATTEMPTS,
        retry_delay: float = REQUEST_RETRY_DELAY,
        session: Optional[aiohttp.ClientSession] = None,
    ) -> None:
        """Initialize client without opening a connection.

        Args:
            base_url: API root, e.g. http://localhost:5678/api
            timeout: Total timeout per attempt in seconds
            max_attempts: Default attempt budget for transient failures
            retry_delay: Base delay; attempt N waits N * retry_delay
            session: Externally owned aiohttp session (not closed by us)
        """
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_settings(cls, settings: Settings) -> "DeviceClient":
        return cls(
            base_url=settings.api_url,
            timeout=settings.request_timeout,
            max_attempts=settings.request_attempts,
            retry_delay=settings.request_retry_delay,
        )

    async def __aenter__(self) -> "DeviceClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                headers={"Accept": "application/json"},
            )
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        """Close the underlying HTTP session if we created it."""
        if self._session is not None and self._owns_session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def request(
        self,
        endpoint: str,
        method: str = "GET",
        params: Optional[dict] = None,
        json_body: Any = None,
        max_attempts: Optional[int] = None,
    ) -> Any:
        """Perform one logical request, retrying transient failures.

        Args:
            endpoint: Path below the base URL, e.g. /device/status
            method: HTTP method
            params: Query string parameters
            json_body: JSON-serializable request body
            max_attempts: Attempt budget (defaults to the client's)

        Returns:
            Decoded JSON body, or None for an empty body

        Raises:
            DeviceRejectedError: API answered with a non-retryable error
            MalformedResponseError: 2xx body was not JSON
            TransientRequestError: All attempts failed
        """
        attempts = max(1, max_attempts or self.max_attempts)
        attempt = 1

        while True:
            try:
                return await self._send(method, endpoint, params, json_body)
            except TransientRequestError as e:
                if attempt >= attempts:
                    logger.error(f"{method} {endpoint} failed after {attempts} attempts: {e}")
                    raise TransientRequestError(
                        e.message,
                        status_code=e.status_code,
                        cause=e.cause or e,
                        details=e.details,
                    ) from e

                delay = attempt * self.retry_delay
                logger.warning(
                    f"{method} {endpoint} failed ({e}), "
                    f"retry {attempt}/{attempts - 1} in {delay:.2f}s"
                )
            await asyncio.sleep(delay)
            attempt += 1

    async def _send(
        self, method: str, endpoint: str, params: Optional[dict], json_body: Any
    ) -> Any:
        url = f"{self.base_url}{endpoint}"
        session = self._get_session()
        logger.debug(f"{method} {url} params={params}")

        try:
            async with session.request(
                method, url, params=params, json=json_body
            ) as response:
                if response.status >= 400:
                    raise await self._error_from_response(response)

                status = response.status
                body = await response.read()
        except DeviceApiError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientRequestError(
                f"Failed to communicate with pad API: {str(e) or type(e).__name__}",
                cause=e,
            ) from e

        if not body.strip():
            return None
        try:
            # UnicodeDecodeError is a ValueError
            return json.loads(body.decode("utf-8"))
        except ValueError as e:
            raise MalformedResponseError(
                f"Invalid JSON from {endpoint}: {body[:80]!r}",
                status_code=status,
                cause=e,
            ) from e

    @staticmethod
    async def _error_from_response(response: aiohttp.ClientResponse) -> DeviceApiError:
        """Build a typed error from a non-2xx response.

        Uses the API's {message, details?} body when present, otherwise the
        HTTP reason phrase.
        """
        message = None
        details = None
        try:
            body = await response.json(content_type=None)
            if isinstance(body, dict):
                message = body.get("message") or body.get("detail")
                details = body.get("details")
        except (ValueError, aiohttp.ClientError):
            pass

        if not message:
            message = f"Request failed: {response.reason or response.status}"

        error_cls = (
            TransientRequestError
            if response.status in RETRYABLE_STATUSES
            else DeviceRejectedError
        )
        return error_cls(str(message), status_code=response.status, details=details)

    # ========== Endpoints ==========

    async def get_status(self) -> Any:
        """Fetch the raw device status payload."""
        return await self.request("/device/status")

    async def start(self, km_h: float) -> Any:
        return await self.request(
            "/device/start", method="POST", params={"speed": encode_speed(km_h)}
        )

    async def stop(self) -> Any:
        return await self.request("/device/stop", method="POST")

    async def set_speed(self, km_h: float) -> Any:
        return await self.request(
            "/device/speed", method="POST", params={"speed": encode_speed(km_h)}
        )

    async def set_mode(self, mode: DeviceMode) -> Any:
        return await self.request(
            "/device/mode", method="POST", params={"mode": DeviceMode(mode).value}
        )

    async def save(self) -> Any:
        """Persist the session that just ended."""
        return await self.request("/save", method="POST")

    async def set_preferences(
        self,
        max_speed: Optional[float] = None,
        start_speed: Optional[float] = None,
        sensitivity: Optional[int] = None,
        child_lock: Optional[bool] = None,
        units_miles: Optional[bool] = None,
    ) -> Any:
        """Send pad preferences; only the given ones are included."""
        params: dict[str, Any] = {}
        if max_speed is not None:
            params["max_speed"] = encode_speed(max_speed)
        if start_speed is not None:
            params["start_speed"] = encode_speed(start_speed)
        if sensitivity is not None:
            params["sensitivity"] = sensitivity
        if child_lock is not None:
            params["child_lock"] = str(child_lock).lower()
        if units_miles is not None:
            params["units_miles"] = str(units_miles).lower()
        return await self.request("/device/preferences", method="POST", params=params)

    async def calibrate(self) -> Any:
        return await self.request("/device/calibrate", method="POST")

    async def get_history(self) -> Any:
        return await self.request("/history")
