"""Multi-dimensional anomaly spike detector.

Compares the current minute against a rolling baseline for four
dimensions: overall traffic, event type, source and geography. All four
checks are evaluated on every log (each claims its own per-minute dedup
key) but at most one finding is returned: the first that fired, in the
order traffic, event type, source, geography.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from socwatch.core.models import UNKNOWN, Finding, Severity
from socwatch.detection.context import RuleContext
from socwatch.detection.metrics import (
    EVENT_TYPE,
    GEO,
    GLOBAL,
    SOURCE,
    Baseline,
    BaselineTracker,
    minute_bucket,
)

logger = logging.getLogger(__name__)

DETECTION_METHOD = "sliding_window_baseline_deviation"


@dataclass(frozen=True)
class SpikeThresholds:
    multiplier: float
    min_absolute: int
    min_samples: int

    def is_spike(self, b: Baseline) -> bool:
        if b.sample_size < self.min_samples:
            return False
        if b.current < self.min_absolute:
            return False
        return b.baseline > 0 and b.current >= b.baseline * self.multiplier


def severity_for_multiplier(multiplier: float) -> Severity:
    if multiplier >= 5.0:
        return Severity.CRITICAL
    if multiplier >= 2.0:
        return Severity.HIGH
    return Severity.MEDIUM


def _describe(category: str, identifier: str | None, b: Baseline, factor: float) -> tuple[str, str]:
    rate = f"Current: {b.current}/min, Baseline: {b.baseline}/min ({factor}x)."
    if category == "traffic":
        return (
            f"Abnormal traffic volume spike detected. {rate}",
            "Investigate for potential DDoS attack or automated scanning campaign.",
        )
    if category == "attack_type":
        label = (identifier or "").replace("_", " ")
        return (
            f"Unusual surge in {label} events detected. {rate}",
            f"Investigate targeted {identifier} campaign and check whether a "
            "specific vulnerability is being exploited.",
        )
    if category == "ip":
        return (
            f"Abnormal activity spike from IP {identifier}. {rate}",
            "Investigate the source for bot activity or a compromised host; "
            "consider rate limiting or blocking it.",
        )
    return (
        f"Geographic anomaly: unusual spike in traffic from {identifier}. {rate}",
        "Investigate for a coordinated campaign or botnet activity from this region.",
    )


class SpikeDetector:
    """Runs the four dimension checks for one log."""

    # (category, metric dimension) in evaluation order
    CHECKS = (
        ("traffic", GLOBAL),
        ("attack_type", EVENT_TYPE),
        ("ip", SOURCE),
        ("geo", GEO),
    )

    def __init__(self, tracker: BaselineTracker, ctx: RuleContext):
        self._tracker = tracker
        self._ctx = ctx
        self._default = SpikeThresholds(
            multiplier=float(ctx.knob("spike_multiplier", 3.0)),
            min_absolute=int(ctx.knob("min_absolute", 20)),
            min_samples=int(ctx.knob("min_samples", 3)),
        )
        self._source = SpikeThresholds(
            multiplier=float(ctx.knob("source_spike_multiplier", 2.5)),
            min_absolute=int(ctx.knob("source_min_absolute", 15)),
            min_samples=int(ctx.knob("source_min_samples", 2)),
        )

    def _identifier(self, category: str) -> str | None:
        log = self._ctx.log
        if category == "attack_type":
            return log.event_type if log.event_type not in ("", UNKNOWN) else None
        if category == "ip":
            return log.source_ip if log.source_ip not in ("", UNKNOWN) else None
        if category == "geo":
            return log.country_code
        return GLOBAL

    def check(self, category: str, dimension: str) -> Finding | None:
        identifier = self._identifier(category)
        if identifier is None:
            return None

        scoped_id = None if dimension == GLOBAL else identifier
        b = self._tracker.compute_baseline(dimension, scoped_id, now=self._ctx.now)
        thresholds = self._source if category == "ip" else self._default
        if not thresholds.is_spike(b):
            return None

        dedup_key = f"dedup:spike:{category}:{identifier}:{minute_bucket(self._ctx.now)}"
        if not self._ctx.helpers.claim(dedup_key, self._ctx.dedup_ttl):
            return None

        factor = round(b.current / b.baseline, 2)
        description, recommendation = _describe(category, scoped_id, b, factor)
        logger.info("%s spike on %s: %d vs baseline %d (%.2fx)",
                    category, identifier, b.current, b.baseline, factor)

        evidence = {
            "spike_category": category,
            "baseline": b.baseline,
            "current": b.current,
            "historical": b.historical,
            "spike_factor": factor,
            "percentage_increase": round((b.current - b.baseline) / b.baseline * 100),
            "time_window": "10_minutes",
            "detection_method": DETECTION_METHOD,
            "description": description,
            "recommendation": recommendation,
        }
        if category == "attack_type":
            evidence["related_attack_type"] = identifier
        elif category == "ip":
            evidence["related_ip"] = identifier
            evidence["related_country"] = self._ctx.log.country_code or "Unknown"
        elif category == "geo":
            evidence["related_country"] = identifier

        return self._ctx.finding(
            rule_name=f"anomaly_spike_{category}",
            severity=severity_for_multiplier(factor),
            dedup_key=dedup_key,
            evidence=evidence,
            global_scope=category in ("traffic", "attack_type", "geo"),
        )

    def run(self) -> Finding | None:
        # All four run; each claims its own dedup key
        results = [self.check(category, dim) for category, dim in self.CHECKS]
        return next((f for f in results if f is not None), None)


def anomaly_spike_rule(ctx: RuleContext) -> Finding | None:
    tracker = ctx.helpers.metrics or BaselineTracker(ctx.helpers.store)
    return SpikeDetector(tracker, ctx).run()
