"""Threshold and volume rules.

Each rule is a function ``(RuleContext) -> Finding | None``. State lives
only in the shared store; every count is "atomic increment, then compare
the returned value". All comparisons use >=, so ties round up in severity.
"""

from __future__ import annotations

import logging

from socwatch.core.models import UNKNOWN, Finding, Severity
from socwatch.detection.context import RuleContext

logger = logging.getLogger(__name__)

BRUTE_FORCE_EVENTS = frozenset({"failed_login", "brute_force"})
TRANSFER_EVENTS = frozenset({"file_download", "generic_request"})


def _tier(value: float, medium: float, high: float, critical: float) -> Severity | None:
    """Map a count to severity via three ascending thresholds."""
    if value >= critical:
        return Severity.CRITICAL
    if value >= high:
        return Severity.HIGH
    if value >= medium:
        return Severity.MEDIUM
    return None


def brute_force_rule(ctx: RuleContext) -> Finding | None:
    """Failed-login counter per source with an inactivity-decaying window.

    Each severity tier has its own dedup claim, so a burst yields one
    finding per threshold crossing.
    """
    log = ctx.log
    if log.attack_type not in BRUTE_FORCE_EVENTS:
        return None

    window = int(ctx.knob("window_seconds", 60))
    ip = log.source_ip or UNKNOWN
    count = ctx.helpers.store.incr(f"bf:count:{ip}", ttl=window, sliding=True)

    severity = _tier(
        count,
        ctx.knob("medium_threshold", 5),
        ctx.knob("high_threshold", 10),
        ctx.knob("critical_threshold", 20),
    )
    if severity is None:
        return None

    dedup_key = f"dedup:bruteforce:{ip}:{severity.value}"
    if not ctx.helpers.claim(dedup_key, ctx.dedup_ttl):
        return None

    return ctx.finding(
        rule_name="brute_force_threshold",
        severity=severity,
        dedup_key=dedup_key,
        evidence={
            "attempts": count,
            "window_seconds": window,
            "username": log.metadata.get("username"),
            "target_system": log.target_system,
        },
        mitre_id=ctx.knob("mitre_id", "T1110"),
    )


def port_scan_rule(ctx: RuleContext) -> Finding | None:
    """Distinct destination ports per source; fires at the configured cardinality."""
    log = ctx.log
    if log.attack_type != "port_scan":
        return None
    port = log.port
    # Port 0 is not a real destination
    if not port:
        return None

    window = int(ctx.knob("window_seconds", 120))
    threshold = int(ctx.knob("threshold", 20))
    ip = log.source_ip or UNKNOWN
    unique_ports = ctx.helpers.store.add_to_set(f"ps:ports:{ip}", str(port), ttl=window)

    if unique_ports < threshold:
        return None

    dedup_key = f"dedup:portscan:{ip}"
    if not ctx.helpers.claim(dedup_key, ctx.dedup_ttl):
        return None

    return ctx.finding(
        rule_name="port_scan_threshold",
        severity=Severity.HIGH,
        dedup_key=dedup_key,
        evidence={
            "unique_ports": unique_ports,
            "window_seconds": window,
            "sample_port": port,
            "target_system": log.target_system,
        },
        mitre_id=ctx.knob("mitre_id", "T1046"),
    )


def data_exfiltration_rule(ctx: RuleContext) -> Finding | None:
    """Bytes transferred per source, tiered by three byte thresholds."""
    log = ctx.log
    if log.event_type not in TRANSFER_EVENTS:
        return None
    size = int(log.response_size)
    if size <= 0:
        return None

    window = int(ctx.knob("window_seconds", 300))
    ip = log.source_ip or UNKNOWN
    total_bytes = ctx.helpers.store.incr(f"exfil:bytes:{ip}", amount=size, ttl=window)

    severity = _tier(
        total_bytes,
        ctx.knob("medium_bytes", 50_000_000),
        ctx.knob("high_bytes", 200_000_000),
        ctx.knob("critical_bytes", 1_000_000_000),
    )
    if severity is None:
        return None

    dedup_key = f"dedup:exfil:{ip}"
    if not ctx.helpers.claim(dedup_key, ctx.dedup_ttl):
        return None

    return ctx.finding(
        rule_name="data_exfiltration_volume",
        severity=severity,
        dedup_key=dedup_key,
        evidence={
            "total_bytes": total_bytes,
            "window_seconds": window,
            "last_transfer_bytes": size,
            "url": log.url or None,
        },
        mitre_id=ctx.knob("mitre_id", "T1041"),
    )


def volume_anomaly_rule(ctx: RuleContext) -> Finding | None:
    """Simple per-source and global event-rate counters.

    Both counters are always incremented. The per-source check runs first;
    each check has its own dedup key.
    """
    window = int(ctx.knob("window_seconds", 60))
    ip = ctx.log.source_ip or UNKNOWN
    store = ctx.helpers.store

    ip_count = store.incr(f"anomaly:ip:{ip}", ttl=window)
    global_count = store.incr("anomaly:global", ttl=window)

    if ip_count >= int(ctx.knob("per_ip_threshold", 100)):
        dedup_key = f"dedup:anomaly:ip:{ip}"
        if ctx.helpers.claim(dedup_key, ctx.dedup_ttl):
            return ctx.finding(
                rule_name="anomaly_per_ip_volume",
                severity=Severity.MEDIUM,
                dedup_key=dedup_key,
                evidence={"ip_count": ip_count, "window_seconds": window},
            )

    if global_count >= int(ctx.knob("global_threshold", 1000)):
        dedup_key = "dedup:anomaly:global"
        if ctx.helpers.claim(dedup_key, ctx.dedup_ttl):
            return ctx.finding(
                rule_name="anomaly_global_volume",
                severity=Severity.HIGH,
                dedup_key=dedup_key,
                evidence={"global_count": global_count, "window_seconds": window},
                global_scope=True,
            )

    return None
