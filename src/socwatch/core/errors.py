"""Error taxonomy for the correlation pipeline.

- ConfigurationError: fatal at startup, never raised per event.
- StateStoreError: shared state store unavailable; the invocation fails
  and the delivery layer retries it.
- PersistenceError: durable storage write/read failed; same handling.
"""

from __future__ import annotations


class SocwatchError(Exception):
    """Base class for all socwatch errors."""


class ConfigurationError(SocwatchError):
    """Invalid or inconsistent rule configuration."""


class StateStoreError(SocwatchError):
    """The shared fast state store could not complete an operation."""


class PersistenceError(SocwatchError):
    """The durable log/finding/incident store could not complete an operation."""
