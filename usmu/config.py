"""Session configuration with environment variable overrides."""

import logging
import os
from dataclasses import dataclass
from typing import Mapping, Optional

from usmu import protocol

logger = logging.getLogger(__name__)

_TRUE = {"1", "true", "yes", "on"}
_FALSE = {"0", "false", "no", "off"}


def _env_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    try:
        return float(raw)
    except ValueError as e:
        raise ValueError(f"{name} must be a number of seconds, got {raw!r}") from e


def _env_bool(env: Mapping[str, str], name: str, default: bool) -> bool:
    raw = env.get(name)
    if raw is None or raw == "":
        return default
    value = raw.strip().lower()
    if value in _TRUE:
        return True
    if value in _FALSE:
        return False
    raise ValueError(f"{name} must be a boolean (1/0, true/false), got {raw!r}")


@dataclass(frozen=True)
class SessionConfig:
    """Tunables for a Session.

    Attributes:
        reply_timeout_s: Default bound for ack, identity and binary replies.
        measure_timeout_s: Default bound for measurement replies; oversampling
            holds the link for the whole conversion.
        post_write_delay_s: Pause after each write before reading the reply.
        drain_quiet_s: Silence window that ends a drain.
        drain_max_s: Upper bound on a single drain.
        skip_redundant_enable: Skip ENA/DIS when the channel view already
            records the requested state. Trades a round-trip for staleness
            risk after out-of-band resets.
        allow_unvalidated: Permit commands never exercised against real
            hardware (DAC, ADC, EEPROM and calibration writes).
    """

    reply_timeout_s: float = protocol.REPLY_TIMEOUT
    measure_timeout_s: float = protocol.MEASURE_TIMEOUT
    post_write_delay_s: float = protocol.POST_WRITE_DELAY
    drain_quiet_s: float = protocol.DRAIN_QUIET_TIME
    drain_max_s: float = protocol.DRAIN_MAX_TIME
    skip_redundant_enable: bool = False
    allow_unvalidated: bool = True

    def __post_init__(self) -> None:
        """Validate timing values."""
        for name in ("reply_timeout_s", "measure_timeout_s", "drain_quiet_s", "drain_max_s"):
            value = getattr(self, name)
            if not value > 0:
                raise ValueError(f"{name} must be positive, got {value}")
        if self.post_write_delay_s < 0:
            raise ValueError(f"post_write_delay_s must be >= 0, got {self.post_write_delay_s}")

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "SessionConfig":
        """Build a config from USMU_* environment variables.

        Args:
            env: Mapping to read instead of os.environ (for tests)

        Returns:
            SessionConfig with defaults for unset variables

        Raises:
            ValueError: If a variable is set to an unparseable value
        """
        env = os.environ if env is None else env
        config = cls(
            reply_timeout_s=_env_float(env, "USMU_REPLY_TIMEOUT", protocol.REPLY_TIMEOUT),
            measure_timeout_s=_env_float(env, "USMU_MEASURE_TIMEOUT", protocol.MEASURE_TIMEOUT),
            post_write_delay_s=_env_float(env, "USMU_POST_WRITE_DELAY", protocol.POST_WRITE_DELAY),
            skip_redundant_enable=_env_bool(env, "USMU_SKIP_REDUNDANT_ENABLE", False),
            allow_unvalidated=_env_bool(env, "USMU_ALLOW_UNVALIDATED", True),
        )
        logger.debug(f"Session config from environment: {config}")
        return config
