"""
Engine configuration for redis-clusterctl

Settings are read from the process environment, after loading a .env file
if one is present.
"""

import os
from dataclasses import dataclass

from dotenv import load_dotenv

from .constants import (
    DEFAULT_MAX_PARALLEL_CLUSTERS,
    DEFAULT_POLL_BACKOFF_MAX_S,
    DEFAULT_POLL_BACKOFF_S,
    DEFAULT_POLL_INTERVAL_S,
    DEFAULT_POLL_JITTER_S,
    DEFAULT_POLL_MAX_RETRIES,
    DEFAULT_STEP_TIMEOUT_S,
    ENV_PREFIX,
)


@dataclass
class EngineSettings:
    """Tunables for polling, budgets and the optional audit trail"""

    poll_interval_s: float = DEFAULT_POLL_INTERVAL_S
    poll_jitter_s: float = DEFAULT_POLL_JITTER_S
    poll_max_retries: int = DEFAULT_POLL_MAX_RETRIES
    poll_backoff_s: float = DEFAULT_POLL_BACKOFF_S
    poll_backoff_max_s: float = DEFAULT_POLL_BACKOFF_MAX_S
    step_timeout_s: float | None = DEFAULT_STEP_TIMEOUT_S
    convergence_timeout_s: float | None = None
    max_parallel_clusters: int = DEFAULT_MAX_PARALLEL_CLUSTERS
    # None disables the audit trail
    audit_database_url: str | None = None
    verbose: int = 0

    @classmethod
    def from_env(cls, prefix: str = ENV_PREFIX) -> "EngineSettings":
        """
        Build settings from environment variables

        Variables are the upper-cased field names behind the prefix, e.g.
        REDIS_CLUSTERCTL_POLL_INTERVAL_S. The audit database URL comes from
        DATABASE_URL.

        Raises:
            ValueError: If a variable holds an invalid value
        """
        load_dotenv()

        settings = cls(
            poll_interval_s=_read(
                prefix, "POLL_INTERVAL_S", float, cls.poll_interval_s
            ),
            poll_jitter_s=_read(prefix, "POLL_JITTER_S", float, cls.poll_jitter_s),
            poll_max_retries=_read(
                prefix, "POLL_MAX_RETRIES", int, cls.poll_max_retries
            ),
            poll_backoff_s=_read(prefix, "POLL_BACKOFF_S", float, cls.poll_backoff_s),
            poll_backoff_max_s=_read(
                prefix, "POLL_BACKOFF_MAX_S", float, cls.poll_backoff_max_s
            ),
            step_timeout_s=_read_optional(
                prefix, "STEP_TIMEOUT_S", cls.step_timeout_s
            ),
            convergence_timeout_s=_read_optional(
                prefix, "CONVERGENCE_TIMEOUT_S", cls.convergence_timeout_s
            ),
            max_parallel_clusters=_read(
                prefix, "MAX_PARALLEL_CLUSTERS", int, cls.max_parallel_clusters
            ),
            audit_database_url=os.getenv("DATABASE_URL") or None,
            verbose=_read(prefix, "VERBOSE", int, cls.verbose),
        )
        settings.validate()
        return settings

    def validate(self) -> None:
        """
        Validate the settings

        Raises:
            ValueError: If a setting is out of range
        """
        for name in ("poll_interval_s", "poll_backoff_s", "poll_backoff_max_s"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be positive")

        if self.poll_jitter_s < 0:
            raise ValueError("poll_jitter_s must be non-negative")

        if self.poll_max_retries < 0:
            raise ValueError("poll_max_retries must be non-negative")

        for name in ("step_timeout_s", "convergence_timeout_s"):
            value = getattr(self, name)
            if value is not None and value <= 0:
                raise ValueError(f"{name} must be positive or unset")

        if self.max_parallel_clusters < 1:
            raise ValueError("max_parallel_clusters must be at least 1")


def _read(prefix: str, name: str, convert, default):
    raw = os.getenv(prefix + name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return convert(raw)
    except ValueError as e:
        raise ValueError(f"Invalid value for {prefix + name}: {raw!r}") from e


def _read_optional(prefix: str, name: str, default: float | None) -> float | None:
    """Like _read, but "none" or "0" unsets the budget"""
    raw = os.getenv(prefix + name)
    if raw is not None and raw.strip().lower() in ("none", "0"):
        return None
    return _read(prefix, name, float, default)
