"""Process-wide switch for verbose diagnostic logging."""

from __future__ import annotations

import os

_ENV_NAME = "ROCHE_LIMIT_VERBOSE"
_TRUTHY = frozenset({"1", "true", "yes", "on"})

_override: bool | None = None


def _env_verbose_enabled() -> bool:
    value = os.environ.get(_ENV_NAME)
    if value is None:
        return False
    return value.lower() in _TRUTHY


def verbose_logging_enabled() -> bool:
    """Return whether verbose logging is on.

    An explicit setting made with :func:`set_verbose_logging_enabled` wins;
    otherwise the ``ROCHE_LIMIT_VERBOSE`` environment variable decides.
    """
    if _override is not None:
        return _override
    return _env_verbose_enabled()


def set_verbose_logging_enabled(enabled: bool | None) -> None:
    """Force verbose logging on or off; ``None`` defers to the environment again."""
    global _override
    _override = None if enabled is None else bool(enabled)