"""Per-minute event metrics and rolling baselines.

Counters are bucketed by UTC minute (``YYYYMMDDHHMM``) for four
dimensions and expire after 15 minutes. Bucket rotation is derived from
the clock at read time; there is no background timer.

    metrics:minute:global:<minute>
    metrics:minute:type:<event_type>:<minute>
    metrics:minute:ip:<source_ip>:<minute>
    metrics:minute:geo:<country_code>:<minute>
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from datetime import datetime, timezone

from socwatch.core.errors import StateStoreError
from socwatch.core.models import UNKNOWN, NormalizedLogEvent
from socwatch.core.state import StateStore

logger = logging.getLogger(__name__)

METRICS_PREFIX = "metrics:minute"
METRICS_TTL_SECONDS = 900
LOOKBACK_MINUTES = 15
# Minutes 1..10 before the current one form the baseline window
BASELINE_MINUTES = 10

GLOBAL = "global"
EVENT_TYPE = "type"
SOURCE = "ip"
GEO = "geo"


def minute_bucket(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y%m%d%H%M")


def last_minute_buckets(now: float, n: int = LOOKBACK_MINUTES) -> list[str]:
    """Minute buckets for the last *n* minutes, newest (current) first."""
    return [minute_bucket(now - i * 60) for i in range(n)]


def bucket_key(dimension: str, identifier: str | None, minute: str) -> str:
    if identifier:
        return f"{METRICS_PREFIX}:{dimension}:{identifier}:{minute}"
    return f"{METRICS_PREFIX}:{dimension}:{minute}"


def rounded_mean(values: list[int]) -> int:
    """Mean rounded half up, so 11.5 -> 12."""
    if not values:
        return 0
    return int(math.floor(sum(values) / len(values) + 0.5))


@dataclass
class Baseline:
    baseline: int
    current: int
    historical: list[int] = field(default_factory=list)

    @property
    def sample_size(self) -> int:
        return len(self.historical)


class BaselineTracker:
    """Maintains minute counters and computes baselines on demand."""

    def __init__(self, store: StateStore):
        self._store = store

    def dimensions_for(self, log: NormalizedLogEvent) -> list[tuple[str, str | None]]:
        dims: list[tuple[str, str | None]] = [
            (GLOBAL, None),
            (EVENT_TYPE, log.event_type or UNKNOWN),
            (SOURCE, log.source_ip or UNKNOWN),
        ]
        if log.country_code:
            dims.append((GEO, log.country_code))
        return dims

    def record(self, log: NormalizedLogEvent, now: float | None = None) -> None:
        """Count *log* in the current minute of every applicable dimension.

        Store failures are logged and swallowed; metrics never stop
        processing of the log itself.
        """
        now = self._store.now() if now is None else now
        minute = minute_bucket(now)
        try:
            for dimension, identifier in self.dimensions_for(log):
                self._store.incr(
                    bucket_key(dimension, identifier, minute),
                    ttl=METRICS_TTL_SECONDS,
                    sliding=False,
                )
        except StateStoreError as exc:
            logger.warning("Failed to record metrics for %s: %s", log.log_id, exc)

    def compute_baseline(
        self, dimension: str, identifier: str | None = None, now: float | None = None,
    ) -> Baseline:
        """Current-minute count and the rounded mean of prior non-zero minutes."""
        now = self._store.now() if now is None else now
        minutes = last_minute_buckets(now)
        keys = [bucket_key(dimension, identifier, m) for m in minutes[: BASELINE_MINUTES + 1]]
        values = self._store.get_many(keys)
        historical = [v for v in values[1:] if v > 0]
        return Baseline(
            baseline=rounded_mean(historical),
            current=values[0],
            historical=historical,
        )

    def snapshot(self, now: float | None = None) -> dict[str, int]:
        """All counters for the current minute, keyed by store key."""
        now = self._store.now() if now is None else now
        keys = sorted(self._store.scan(f"{METRICS_PREFIX}:*:{minute_bucket(now)}"))
        return dict(zip(keys, self._store.get_many(keys)))
