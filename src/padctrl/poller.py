"""
Status polling with reconnection backoff.

The poller mirrors the pad's live status into the SessionStore. While the API
answers it polls on a fixed cadence; once a fetch fails it switches to an
exponential backoff until the first success. Each activation is represented by
a PollHandle; cancelling the handle stops the task and drops any commit that
activation had in flight.
"""

import asyncio
import logging
import math
from dataclasses import dataclass, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from .client import DeviceClient, decode_speed
from .core import (
    RECONNECT_BASE_DELAY,
    RECONNECT_MAX_DELAY,
    SPEED_MAX,
    ZERO_DURATION,
    Settings,
)
from .errors import DeviceApiError, MalformedResponseError, SustainedUnreachableError
from .store import BeltState, DeviceMode, SessionStats, SessionStore

logger = logging.getLogger(__name__)


def backoff_delay(
    failures: int,
    base: float = RECONNECT_BASE_DELAY,
    cap: float = RECONNECT_MAX_DELAY,
) -> float:
    """Delay before the next poll after ``failures`` consecutive failures.

    Returns min(base * 2**failures, cap).
    """
    failures = max(0, failures)
    # base * 2**n overflows a float for large n
    if failures > 64:
        return cap
    return min(base * (2**failures), cap)


def format_duration(seconds: int) -> str:
    """Convert seconds to MM:SS, or H:MM:SS past the hour."""
    seconds = max(0, int(seconds))
    hours, rest = divmod(seconds, 3600)
    mins, secs = divmod(rest, 60)
    if hours:
        return f"{hours}:{mins:02d}:{secs:02d}"
    return f"{mins:02d}:{secs:02d}"


def parse_duration(value: Any) -> int:
    """Convert a duration (seconds or [H:]MM:SS string) to whole seconds.

    Raises:
        ValueError: If the value is not a recognizable duration
    """
    if value is None or value == "":
        return 0
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value):
            raise ValueError(f"Invalid duration: {value!r}")
        return max(0, int(value))

    parts = str(value).strip().split(":")
    if len(parts) > 3 or not all(p.strip().isdigit() for p in parts):
        raise ValueError(f"Invalid duration: {value!r}")

    seconds = 0
    for part in parts:
        seconds = seconds * 60 + int(part)
    return seconds


@dataclass(frozen=True)
class DeviceStatus:
    """Normalized result of one status fetch."""

    stats: SessionStats
    mode: DeviceMode
    belt_state: BeltState
    connected: bool = True

    @property
    def is_running(self) -> bool:
        return self.belt_state == BeltState.RUNNING


def _non_negative(raw: dict, key: str, cast: Callable[[float], Any]) -> Any:
    value = raw.get(key)
    if value is None:
        return cast(0)
    try:
        number = float(value)
    except (TypeError, ValueError, OverflowError) as e:
        raise MalformedResponseError(f"Invalid {key} in status: {value!r}", cause=e) from e
    if not math.isfinite(number):
        raise MalformedResponseError(f"Invalid {key} in status: {value!r}")
    return cast(max(0.0, number))


def normalize_status(raw: Any, speed_max: float = SPEED_MAX) -> DeviceStatus:
    """Turn a raw /device/status payload into a DeviceStatus.

    Missing numeric fields default to 0, negative values clamp to 0, speed is
    decoded from km/h x 10 and bounded by speed_max, and duration is accepted
    either as a string or as integer seconds (``time`` is an alias).

    Raises:
        MalformedResponseError: If the payload cannot be interpreted
    """
    if not isinstance(raw, dict):
        raise MalformedResponseError(f"Unexpected status payload: {raw!r}")

    try:
        mode = DeviceMode(raw.get("mode") or DeviceMode.STANDBY.value)
    except ValueError as e:
        raise MalformedResponseError(f"Unknown mode in status: {raw.get('mode')!r}", cause=e) from e

    try:
        belt_state = BeltState(raw.get("belt_state") or BeltState.IDLE.value)
    except ValueError:
        logger.debug(f"Unknown belt state {raw.get('belt_state')!r}, treating as idle")
        belt_state = BeltState.IDLE

    duration_raw = raw.get("duration")
    if duration_raw is None:
        duration_raw = raw.get("time")
    try:
        duration = (
            format_duration(parse_duration(duration_raw))
            if duration_raw is not None
            else ZERO_DURATION
        )
    except (ValueError, OverflowError) as e:
        raise MalformedResponseError(str(e), cause=e) from e

    speed = decode_speed(_non_negative(raw, "speed", float))

    stats = SessionStats(
        distance=_non_negative(raw, "distance", float),
        steps=_non_negative(raw, "steps", int),
        calories=_non_negative(raw, "calories", lambda v: int(round(v))),
        duration=duration,
        current_speed=min(speed, speed_max),
    )
    return DeviceStatus(
        stats=stats,
        mode=mode,
        belt_state=belt_state,
        connected=raw.get("connected") is not False,
    )


class PollerState(str, Enum):
    IDLE = "idle"
    POLLING = "polling"
    RECONNECTING = "reconnecting"


class PollHandle:
    """Handle for one polling activation."""

    def __init__(self, poller: "StatusPoller") -> None:
        self._poller = poller
        self._task: Optional[asyncio.Task] = None
        self._cancelled = False

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def active(self) -> bool:
        return not self._cancelled and self._task is not None and not self._task.done()

    def cancel(self) -> None:
        """Stop this activation; it will not write to the store again."""
        if self._cancelled:
            return
        self._cancelled = True
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._poller._release(self)

    async def wait(self) -> None:
        """Wait for the polling task to finish after cancellation."""
        if self._task is None:
            return
        try:
            await self._task
        except asyncio.CancelledError:
            pass


class StatusPoller:
    """Keeps the SessionStore in sync with the pad's reported status."""

    def __init__(
        self,
        client: DeviceClient,
        store: SessionStore,
        settings: Optional[Settings] = None,
    ) -> None:
        self._client = client
        self._store = store
        self.settings = settings or Settings()
        self._handle: Optional[PollHandle] = None

        # Callbacks
        self._on_connection_lost: Optional[Callable[[DeviceApiError], None]] = None
        self._on_connection_restored: Optional[Callable[[], None]] = None

    @property
    def state(self) -> PollerState:
        if self._handle is None or self._handle.cancelled:
            return PollerState.IDLE
        if self._store.is_reconnecting:
            return PollerState.RECONNECTING
        return PollerState.POLLING

    @property
    def is_active(self) -> bool:
        return self._handle is not None and not self._handle.cancelled

    def set_on_connection_lost(self, callback: Callable[[DeviceApiError], None]) -> None:
        """Set callback fired once at the start of each outage episode.

        Args:
            callback: Function called with the failure that opened the outage
        """
        self._on_connection_lost = callback

    def set_on_connection_restored(self, callback: Callable[[], None]) -> None:
        """Set callback fired on the first success after an outage."""
        self._on_connection_restored = callback

    def next_delay(self) -> float:
        """Seconds to wait before the next scheduled poll."""
        if self._store.is_reconnecting:
            return backoff_delay(
                self._store.consecutive_failures,
                self.settings.reconnect_base_delay,
                self.settings.reconnect_max_delay,
            )
        return self.settings.poll_interval

    def start(self, immediate: bool = True) -> PollHandle:
        """Activate polling; must be called from a running event loop.

        Args:
            immediate: Poll right away instead of waiting one interval

        Returns:
            Handle for this activation (the existing one if already active)
        """
        if self._handle is not None and not self._handle.cancelled:
            return self._handle

        handle = PollHandle(self)
        handle._task = asyncio.create_task(self._run(handle, immediate))
        self._handle = handle
        logger.info(f"Status polling started ({self.settings.poll_interval}s interval)")
        return handle

    def stop(self, handle: Optional[PollHandle] = None) -> None:
        """Deactivate polling.

        Args:
            handle: Activation to cancel (defaults to the current one)
        """
        handle = handle or self._handle
        if handle is not None:
            handle.cancel()

    async def shutdown(self) -> None:
        """Stop polling and wait for the task to finish."""
        handle = self._handle
        self.stop()
        if handle is not None:
            await handle.wait()

    def _release(self, handle: PollHandle) -> None:
        if self._handle is handle:
            self._handle = None
            logger.info("Status polling stopped")

    async def refresh(self) -> bool:
        """Fetch status once, outside the regular cadence.

        Returns:
            True if the fetch succeeded and the store was updated
        """
        return await self.poll_once()

    async def poll_once(self, handle: Optional[PollHandle] = None) -> bool:
        """Run one fetch-and-apply cycle.

        Args:
            handle: Activation this cycle belongs to; its cancellation
                suppresses the store update

        Returns:
            True on success, False on failure or cancellation
        """
        try:
            raw = await self._client.get_status()
            status = normalize_status(raw, self.settings.speed_max)
            if not status.connected:
                raise DeviceApiError("Pad is not connected to the API server")
        except DeviceApiError as e:
            if handle is not None and handle.cancelled:
                return False
            self._record_failure(e)
            return False

        if handle is not None and handle.cancelled:
            return False
        self._record_success(status)
        return True

    def _record_success(self, status: DeviceStatus) -> None:
        previous = self._store.snapshot()
        stats = status.stats

        # Elapsed time never goes backwards within a running session
        if previous.is_running and status.is_running:
            if parse_duration(stats.duration) < parse_duration(previous.stats.duration):
                stats = replace(stats, duration=previous.stats.duration)

        self._store.commit(
            stats=stats,
            mode=status.mode,
            is_running=status.is_running,
            is_connected=True,
            is_reconnecting=False,
            consecutive_failures=0,
            error=None,
            last_update=datetime.now(),
        )

        if previous.is_reconnecting:
            logger.info(
                f"Reconnected to pad API after {previous.consecutive_failures} failed polls"
            )
            if self._on_connection_restored:
                try:
                    self._on_connection_restored()
                except Exception as e:
                    logger.error(f"Connection restored callback error: {e}")

    def _record_failure(self, error: DeviceApiError) -> None:
        failures = self._store.consecutive_failures + 1
        threshold = self.settings.sustained_failure_threshold

        if failures >= threshold and not isinstance(error, SustainedUnreachableError):
            error = SustainedUnreachableError(
                f"Pad API unreachable for {failures} consecutive polls: {error.message}",
                status_code=error.status_code,
                cause=error,
            )

        in_outage = self._store.is_reconnecting
        self._store.commit(
            error=error,
            is_connected=False,
            is_reconnecting=True,
            consecutive_failures=failures,
        )

        if in_outage:
            logger.debug(f"Status poll failed again ({failures}): {error}")
            return

        logger.warning(f"Lost connection to pad API: {error}")
        if self._on_connection_lost:
            try:
                self._on_connection_lost(error)
            except Exception as e:
                logger.error(f"Connection lost callback error: {e}")

    async def _run(self, handle: PollHandle, immediate: bool) -> None:
        """Polling loop; each fetch resolves before the next sleep is armed."""
        try:
            if not immediate:
                await asyncio.sleep(self.next_delay())
            while not handle.cancelled:
                try:
                    await self.poll_once(handle)
                except Exception:
                    logger.exception("Unexpected error while polling status")
                if handle.cancelled:
                    break
                await asyncio.sleep(self.next_delay())
        except asyncio.CancelledError:
            pass
