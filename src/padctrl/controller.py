"""
Command facade for walking pad control.

PadController turns user intents into API calls. Commands that change the
pad's behavior are followed by a forced status refresh, so the store only ever
shows what the pad reported rather than what a command assumed.
"""

import logging
import math
from typing import Any, Awaitable, Callable, Optional, Union

from .client import DeviceClient
from .core import SPEED_STEP, Settings
from .errors import DeviceApiError, ValidationError
from .poller import StatusPoller
from .store import DeviceMode, ExerciseTarget, SessionStore

logger = logging.getLogger(__name__)


class PadController:
    """Issues commands to the pad and keeps the store honest afterwards."""

    SPEED_STEP = SPEED_STEP

    def __init__(
        self,
        client: DeviceClient,
        store: SessionStore,
        poller: StatusPoller,
        settings: Optional[Settings] = None,
    ) -> None:
        """Initialize controller with injected collaborators.

        Args:
            client: API client used for mutating calls
            store: Shared state, written only on failures and by the poller
            poller: Status poller used for forced refreshes
            settings: Speed limits and start speed
        """
        self._client = client
        self._store = store
        self._poller = poller
        self.settings = settings or Settings()

    @property
    def speed_min(self) -> float:
        return self.settings.speed_min

    @property
    def speed_max(self) -> float:
        return self.settings.speed_max

    @property
    def store(self) -> SessionStore:
        return self._store

    @property
    def poller(self) -> StatusPoller:
        return self._poller

    def _reject(self, message: str) -> ValidationError:
        error = ValidationError(message)
        logger.error(message)
        self._store.set_error(error)
        return error

    def validate_speed(self, km_h: Any) -> float:
        """Check a speed against the configured range.

        Args:
            km_h: Requested speed in km/h

        Returns:
            The speed as a float

        Raises:
            ValidationError: If the speed is not a number within range
        """
        try:
            speed = float(km_h)
        except (TypeError, ValueError):
            raise self._reject(f"Invalid speed: {km_h!r}") from None
        if not math.isfinite(speed) or speed < self.speed_min or speed > self.speed_max:
            raise self._reject(
                f"Speed {km_h} out of range [{self.speed_min}, {self.speed_max}] km/h"
            )
        return speed

    async def _command(self, name: str, action: Callable[[], Awaitable[Any]]) -> Any:
        """Run a command, recording any failure in the store and re-raising it."""
        self._store.set_loading(True)
        try:
            result = await action()
            logger.info(f"{name} succeeded")
            return result
        except DeviceApiError as e:
            logger.error(f"{name} failed: {e}")
            self._store.set_error(e)
            raise
        finally:
            self._store.set_loading(False)

    # ========== Session commands ==========

    async def start_session(self, speed: Optional[float] = None) -> Any:
        """Start the belt and begin polling.

        Args:
            speed: Start speed in km/h (defaults to the configured start speed)

        Returns:
            API response body
        """
        km_h = self.validate_speed(self.settings.start_speed if speed is None else speed)

        async def action() -> Any:
            result = await self._client.start(km_h)
            await self._poller.refresh()
            self._poller.start(immediate=False)
            return result

        return await self._command(f"Start session at {km_h:.1f} km/h", action)

    async def end_session(self) -> Any:
        """Stop the belt, then save the session.

        Save runs only after stop succeeded, so a session that is still
        accruing distance is never persisted. If stop fails, its error
        surfaces and save is not attempted.

        Returns:
            Save response body
        """

        async def action() -> Any:
            await self._client.stop()
            try:
                result = await self._client.save()
            except DeviceApiError:
                await self._poller.refresh()
                raise
            await self._poller.refresh()
            self._poller.stop()
            return result

        return await self._command("End session", action)

    async def emergency_stop(self) -> Any:
        """Stop the belt without saving."""

        async def action() -> Any:
            result = await self._client.stop()
            await self._poller.refresh()
            return result

        return await self._command("Emergency stop", action)

    async def save_session(self) -> Any:
        return await self._command("Save session", self._client.save)

    def reset_session(self) -> None:
        """Clear local session state, including the target."""
        self._store.reset()
        logger.info("Session state reset")

    # ========== Device settings ==========

    async def set_speed(self, km_h: float) -> Any:
        """Set belt speed in km/h.

        Args:
            km_h: Speed within [speed_min, speed_max]

        Returns:
            API response body

        Raises:
            ValidationError: Out of range; nothing is sent
            DeviceApiError: The request failed
        """
        speed = self.validate_speed(km_h)

        async def action() -> Any:
            result = await self._client.set_speed(speed)
            await self._poller.refresh()
            return result

        return await self._command(f"Set speed to {speed:.1f} km/h", action)

    async def set_mode(self, mode: Union[DeviceMode, str]) -> Any:
        """Switch the pad mode; the store follows on the next status."""
        try:
            new_mode = DeviceMode(mode)
        except ValueError:
            valid = ", ".join(m.value for m in DeviceMode)
            raise self._reject(f"Invalid mode {mode!r}, expected one of: {valid}") from None

        async def action() -> Any:
            result = await self._client.set_mode(new_mode)
            await self._poller.refresh()
            return result

        return await self._command(f"Set mode to {new_mode.value}", action)

    async def set_target(self, target: Optional[ExerciseTarget]) -> None:
        """Store an advisory exercise target, or clear it with None."""
        if target is not None:
            if not math.isfinite(target.value) or target.value <= 0:
                raise self._reject(f"Target value must be positive, got {target.value}")
        self._store.set_target(target)
        if target is None:
            logger.info("Target cleared")
        else:
            logger.info(f"Target set: {target.value:g} {target.unit} ({target.type.value})")

    async def set_preferences(
        self,
        max_speed: Optional[float] = None,
        start_speed: Optional[float] = None,
        sensitivity: Optional[int] = None,
        child_lock: Optional[bool] = None,
        units_miles: Optional[bool] = None,
    ) -> Any:
        """Send pad preferences.

        A confirmed max_speed or start_speed also updates the local limits
        used for speed validation. Lowering max_speed below the current start
        speed pulls the start speed down with it.
        """
        if max_speed is not None:
            max_speed = self.validate_speed(max_speed)
        if start_speed is not None:
            start_speed = self.validate_speed(start_speed)
            if max_speed is not None and start_speed > max_speed:
                raise self._reject(
                    f"Start speed {start_speed} exceeds max speed {max_speed} km/h"
                )
        if sensitivity is not None and sensitivity not in (1, 2, 3):
            raise self._reject(f"Sensitivity must be 1, 2 or 3, got {sensitivity}")

        async def action() -> Any:
            result = await self._client.set_preferences(
                max_speed=max_speed,
                start_speed=start_speed,
                sensitivity=sensitivity,
                child_lock=child_lock,
                units_miles=units_miles,
            )
            if max_speed is not None:
                self.settings.speed_max = max_speed
                if start_speed is None and self.settings.start_speed > max_speed:
                    logger.info(f"Start speed lowered to {max_speed:.1f} km/h")
                    self.settings.start_speed = max_speed
            if start_speed is not None:
                self.settings.start_speed = start_speed
            await self._poller.refresh()
            return result

        return await self._command("Set preferences", action)

    async def calibrate(self) -> Any:
        async def action() -> Any:
            result = await self._client.calibrate()
            await self._poller.refresh()
            return result

        return await self._command("Calibrate", action)

    async def get_history(self) -> Any:
        return await self._command("Fetch history", self._client.get_history)
