"""Multi-stage intrusion detector.

A per-source stage machine held as one integer in the state store:

    0 -> 1  port_scan
    1 -> 2  failed_login or brute_force
    2 -> 3  sql_injection
    3 -> 4  file_download / generic_request larger than large_transfer_bytes

Stages never decrease; the key is reset only by TTL expiry. Reaching
stage 4 emits one critical finding behind its own dedup claim.

Known limitation: the stage is tracked per source, not per attack
instance, so two unrelated attempts interleaved from one source can
together complete the chain.
"""

from __future__ import annotations

import logging

from socwatch.core.models import UNKNOWN, Finding, NormalizedLogEvent, Severity
from socwatch.detection.context import RuleContext

logger = logging.getLogger(__name__)

FINAL_STAGE = 4

STAGE_NAMES = {
    1: "reconnaissance",
    2: "credential_attack",
    3: "exploitation",
    4: "exfiltration",
}


def next_stage(current: int, log: NormalizedLogEvent, large_transfer_bytes: float) -> int:
    """Stage after *log*, given the *current* stage. Never lower than *current*."""
    event = log.event_type
    candidate = 0
    if event == "port_scan":
        candidate = 1
    elif event in ("failed_login", "brute_force") and current >= 1:
        candidate = 2
    elif event == "sql_injection" and current >= 2:
        candidate = 3
    elif (
        event in ("file_download", "generic_request")
        and current >= 3
        and log.response_size > large_transfer_bytes
    ):
        candidate = FINAL_STAGE
    return max(current, candidate)


def multistage_intrusion_rule(ctx: RuleContext) -> Finding | None:
    log = ctx.log
    ip = log.source_ip or UNKNOWN
    window = int(ctx.knob("window_seconds", 900))
    large = ctx.knob("large_transfer_bytes", 20_000_000)
    store = ctx.helpers.store
    key = f"chain:stage:{ip}"

    current = store.get_int(key)
    advanced = next_stage(current, log, large)
    if advanced == current:
        return None

    stage = store.raise_to(key, advanced, window)
    logger.debug("Stage for %s: %d -> %d", ip, current, stage)
    if advanced != FINAL_STAGE:
        return None

    dedup_key = f"dedup:multistage:{ip}"
    if not ctx.helpers.claim(dedup_key, ctx.dedup_ttl):
        return None

    return ctx.finding(
        rule_name="multistage_intrusion_chain",
        severity=Severity.CRITICAL,
        dedup_key=dedup_key,
        evidence={
            "stages_completed": [STAGE_NAMES[i] for i in range(1, FINAL_STAGE + 1)],
            "final_event_type": log.event_type,
            "transfer_bytes": int(log.response_size),
            "window_seconds": window,
        },
        mitre_id=ctx.knob("mitre_id", "T1595,T1110,T1190,T1041"),
    )
