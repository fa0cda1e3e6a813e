"""
Core constants and runtime settings for walking pad control.
"""

import os
from dataclasses import dataclass, fields
from typing import Any, Optional

# Device API location (the pad control server, not the pad itself)
DEFAULT_API_URL = "http://localhost:5678/api"

# Speed constraints (server accepts 0-60 in km/h x 10)
SPEED_MIN = 0.0
SPEED_MAX = 6.0
SPEED_STEP = 0.1
SPEED_SCALE = 10
START_SPEED = 2.0

# Request-level retry
REQUEST_TIMEOUT = 5.0
REQUEST_ATTEMPTS = 3
REQUEST_RETRY_DELAY = 0.5

# Status polling and reconnection backoff (seconds)
POLL_INTERVAL = 1.0
RECONNECT_BASE_DELAY = 5.0
RECONNECT_MAX_DELAY = 30.0
SUSTAINED_FAILURE_THRESHOLD = 3

ZERO_DURATION = "00:00"

ENV_PREFIX = "PADCTRL_"


@dataclass
class Settings:
    """Runtime settings, overridable through PADCTRL_* environment variables."""

    api_url: str = DEFAULT_API_URL
    request_timeout: float = REQUEST_TIMEOUT
    request_attempts: int = REQUEST_ATTEMPTS
    request_retry_delay: float = REQUEST_RETRY_DELAY
    poll_interval: float = POLL_INTERVAL
    reconnect_base_delay: float = RECONNECT_BASE_DELAY
    reconnect_max_delay: float = RECONNECT_MAX_DELAY
    sustained_failure_threshold: int = SUSTAINED_FAILURE_THRESHOLD
    speed_min: float = SPEED_MIN
    speed_max: float = SPEED_MAX
    start_speed: float = START_SPEED

    @classmethod
    def from_env(cls, environ: Optional[dict] = None, **overrides: Any) -> "Settings":
        """Build settings from the environment.

        Each field maps to an upper-cased variable, e.g. ``api_url`` is read
        from ``PADCTRL_API_URL``. Keyword overrides that are not None win over
        the environment.

        Args:
            environ: Mapping to read from (defaults to os.environ)
            **overrides: Explicit field values, e.g. from CLI flags

        Returns:
            Settings instance

        Raises:
            ValueError: If a variable cannot be converted to the field type
        """
        env = os.environ if environ is None else environ
        values: dict[str, Any] = {}

        for f in fields(cls):
            raw = env.get(ENV_PREFIX + f.name.upper())
            if raw is None or raw == "":
                continue
            if f.type in (int, "int"):
                values[f.name] = int(raw)
            elif f.type in (float, "float"):
                values[f.name] = float(raw)
            else:
                values[f.name] = raw

        values.update({k: v for k, v in overrides.items() if v is not None})
        settings = cls(**values)
        settings.api_url = settings.api_url.rstrip("/")

        if settings.speed_min > settings.speed_max:
            raise ValueError(
                f"speed_min {settings.speed_min} exceeds speed_max {settings.speed_max}"
            )
        return settings
