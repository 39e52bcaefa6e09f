"""Dedup Guard: "claim within window" over the shared state store.

All "do not re-alert for N seconds" behaviour reduces to one ``claim``
call per candidate key. Claims are never released early: a failed
invocation that already claimed a key keeps it until the TTL lapses.
"""

from __future__ import annotations

import logging

from socwatch.core.state import StateStore

logger = logging.getLogger(__name__)

# Default suppression window in seconds
DEFAULT_DEDUP_TTL_SECONDS = 300


class DedupGuard:
    """Atomic test-and-set with TTL, shared by every worker."""

    def __init__(self, store: StateStore) -> None:
        self._store = store

    def claim(self, key: str, ttl_seconds: int = DEFAULT_DEDUP_TTL_SECONDS) -> bool:
        """Return True if the caller is the first claimant of *key*."""
        claimed = self._store.set_nx(key, "1", ttl_seconds)
        if not claimed:
            logger.debug("Dedup: %s suppressed", key)
        return claimed

    def claim_or_get(self, key: str, ttl_seconds: int, value: str) -> str | None:
        """Claim *key* holding *value*.

        Returns None if this call made the claim, otherwise the value held
        by the current claimant (or "" if the claim expired in between).
        """
        if self._store.set_nx(key, value, ttl_seconds):
            return None
        return self._store.get(key) or ""
