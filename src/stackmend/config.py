"""Runtime settings loaded from environment variables."""

import os
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path

from stackmend.errors import ConfigurationError
from stackmend.registry import DEFAULT_CAPABILITIES

ENV_PREFIX = "STACKMEND_"
SLACK_WEBHOOK_ENV = "STACKMEND_SLACK_WEBHOOK"


def _read_float(env: Mapping[str, str], name: str, default: float) -> float:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = float(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be a number, got {raw!r}") from None
    if value < 0:
        raise ConfigurationError(f"{name} must not be negative, got {raw!r}")
    return value


def _read_int(env: Mapping[str, str], name: str, default: int) -> int:
    raw = env.get(name)
    if raw is None or not raw.strip():
        return default
    try:
        value = int(raw)
    except ValueError:
        raise ConfigurationError(f"{name} must be an integer, got {raw!r}") from None
    if value < 1:
        raise ConfigurationError(f"{name} must be at least 1, got {raw!r}")
    return value


@dataclass(frozen=True)
class Settings:
    """Polling limits, checkpoint location and stack capabilities."""

    poll_interval: float = 10.0
    detection_poll_interval: float = 5.0
    detection_max_attempts: int = 120
    update_timeout: float = 3600.0
    change_set_timeout: float = 300.0
    checkpoint_dir: Path = Path(".")
    capabilities: tuple[str, ...] = DEFAULT_CAPABILITIES

    @classmethod
    def from_env(cls, env: Mapping[str, str] | None = None) -> "Settings":
        """Build settings from ``STACKMEND_*`` variables, falling back to defaults.

        Raises ConfigurationError on malformed values.
        """
        env = os.environ if env is None else env
        defaults = cls()

        capabilities = defaults.capabilities
        raw_capabilities = env.get(f"{ENV_PREFIX}CAPABILITIES")
        if raw_capabilities and raw_capabilities.strip():
            capabilities = tuple(
                item.strip() for item in raw_capabilities.split(",") if item.strip()
            )

        checkpoint_dir = defaults.checkpoint_dir
        raw_dir = env.get(f"{ENV_PREFIX}CHECKPOINT_DIR")
        if raw_dir and raw_dir.strip():
            checkpoint_dir = Path(raw_dir)

        return cls(
            poll_interval=_read_float(
                env, f"{ENV_PREFIX}POLL_INTERVAL", defaults.poll_interval
            ),
            detection_poll_interval=_read_float(
                env, f"{ENV_PREFIX}DETECTION_POLL_INTERVAL", defaults.detection_poll_interval
            ),
            detection_max_attempts=_read_int(
                env, f"{ENV_PREFIX}DETECTION_MAX_ATTEMPTS", defaults.detection_max_attempts
            ),
            update_timeout=_read_float(
                env, f"{ENV_PREFIX}UPDATE_TIMEOUT", defaults.update_timeout
            ),
            change_set_timeout=_read_float(
                env, f"{ENV_PREFIX}CHANGE_SET_TIMEOUT", defaults.change_set_timeout
            ),
            checkpoint_dir=checkpoint_dir,
            capabilities=capabilities,
        )
