"""
Shared session state for the walking pad dashboard.

The store is the single source of truth for session statistics, device mode,
the exercise target, connectivity flags and the last error. Only the status
poller and the pad controller call its setters; everything else reads
snapshots.
"""

import logging
from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Optional

from .core import ZERO_DURATION
from .errors import DeviceApiError

logger = logging.getLogger(__name__)


class DeviceMode(str, Enum):
    """Pad operating modes, valued by their wire names."""

    STANDBY = "standby"
    MANUAL = "manual"
    AUTO = "auto"


class BeltState(str, Enum):
    """Belt states reported by the status endpoint."""

    IDLE = "idle"
    RUNNING = "running"
    STANDBY = "standby"
    STARTING = "starting"


class TargetType(str, Enum):
    DISTANCE = "distance"
    STEPS = "steps"
    CALORIES = "calories"
    DURATION = "duration"


TARGET_UNITS = {
    TargetType.DISTANCE: "km",
    TargetType.STEPS: "steps",
    TargetType.CALORIES: "kcal",
    TargetType.DURATION: "min",
}


@dataclass(frozen=True)
class SessionStats:
    """Snapshot of the workout in progress."""

    distance: float = 0.0  # km
    steps: int = 0
    calories: int = 0
    duration: str = ZERO_DURATION
    current_speed: float = 0.0  # km/h


@dataclass(frozen=True)
class ExerciseTarget:
    """User-declared workout goal, tracked for display only."""

    type: TargetType
    value: float
    unit: str = ""

    def __post_init__(self) -> None:
        object.__setattr__(self, "type", TargetType(self.type))
        if not self.unit:
            object.__setattr__(self, "unit", TARGET_UNITS[self.type])


@dataclass(frozen=True)
class StoreSnapshot:
    """Immutable view of the store handed to readers and listeners."""

    stats: SessionStats = field(default_factory=SessionStats)
    mode: DeviceMode = DeviceMode.STANDBY
    is_running: bool = False
    target: Optional[ExerciseTarget] = None
    error: Optional[DeviceApiError] = None
    is_loading: bool = False
    is_connected: bool = False
    is_reconnecting: bool = False
    consecutive_failures: int = 0
    last_update: Optional[datetime] = None


Listener = Callable[[StoreSnapshot], None]


class SessionStore:
    """State container with shallow-merge setters.

    Every setter is synchronous, touches only the fields it is given and
    notifies subscribers once per call. No setter performs I/O or derives one
    field from another.
    """

    def __init__(self) -> None:
        self._state = StoreSnapshot()
        self._listeners: list[Listener] = []

    # ========== Read accessors ==========

    def snapshot(self) -> StoreSnapshot:
        return self._state

    @property
    def stats(self) -> SessionStats:
        return self._state.stats

    @property
    def mode(self) -> DeviceMode:
        return self._state.mode

    @property
    def is_running(self) -> bool:
        return self._state.is_running

    @property
    def target(self) -> Optional[ExerciseTarget]:
        return self._state.target

    @property
    def error(self) -> Optional[DeviceApiError]:
        return self._state.error

    @property
    def is_loading(self) -> bool:
        return self._state.is_loading

    @property
    def is_connected(self) -> bool:
        return self._state.is_connected

    @property
    def is_reconnecting(self) -> bool:
        return self._state.is_reconnecting

    @property
    def consecutive_failures(self) -> int:
        return self._state.consecutive_failures

    @property
    def last_update(self) -> Optional[datetime]:
        return self._state.last_update

    # ========== Subscriptions ==========

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """Register a listener called with the new snapshot after each commit.

        Args:
            listener: Callable receiving a StoreSnapshot

        Returns:
            Function that removes the listener
        """
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    # ========== Setters ==========

    def commit(self, **changes: Any) -> StoreSnapshot:
        """Apply several field changes as one atomic update.

        Args:
            **changes: StoreSnapshot field values

        Returns:
            The new snapshot

        Raises:
            TypeError: If a field name is unknown
        """
        self._state = replace(self._state, **changes)
        self._notify()
        return self._state

    def set_stats(self, **changes: Any) -> StoreSnapshot:
        """Merge the given SessionStats fields into the current stats."""
        return self.commit(stats=replace(self._state.stats, **changes))

    def set_mode(self, mode: DeviceMode) -> StoreSnapshot:
        return self.commit(mode=DeviceMode(mode))

    def set_running(self, is_running: bool) -> StoreSnapshot:
        return self.commit(is_running=is_running)

    def set_target(self, target: Optional[ExerciseTarget]) -> StoreSnapshot:
        return self.commit(target=target)

    def set_error(self, error: Optional[DeviceApiError]) -> StoreSnapshot:
        return self.commit(error=error)

    def set_loading(self, is_loading: bool) -> StoreSnapshot:
        return self.commit(is_loading=is_loading)

    def set_connection(
        self,
        is_connected: Optional[bool] = None,
        is_reconnecting: Optional[bool] = None,
        consecutive_failures: Optional[int] = None,
    ) -> StoreSnapshot:
        """Update connectivity flags; omitted flags keep their value."""
        changes = {
            "is_connected": is_connected,
            "is_reconnecting": is_reconnecting,
            "consecutive_failures": consecutive_failures,
        }
        return self.commit(**{k: v for k, v in changes.items() if v is not None})

    def reset(self) -> StoreSnapshot:
        """Restore every field to its default in one update."""
        self._state = StoreSnapshot()
        self._notify()
        return self._state

    def _notify(self) -> None:
        for listener in list(self._listeners):
            try:
                listener(self._state)
            except Exception as e:
                logger.error(f"Store listener error: {e}")
