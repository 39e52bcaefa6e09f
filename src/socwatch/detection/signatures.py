"""Signature rules for web attacks: SQL injection and cross-site scripting.

A rule fires when the declared event type matches exactly, or when the
payload or URL matches the signature pattern, whatever the event type.
Dedup is scoped per (source, target); there is no counting window.
"""

from __future__ import annotations

import re

from socwatch.core.models import UNKNOWN, Finding, Severity
from socwatch.detection.context import RuleContext

# Boolean tautology, UNION SELECT, comment truncation, stacked DROP TABLE
SQLI_PATTERN = re.compile(
    r"(\bor\b.+=)|union\s+select|--|;\s*drop\s+table|' or '1'='1|\" or \"1\"=\"1",
    re.IGNORECASE,
)

# Script tags, inline event handlers, javascript: URIs
XSS_PATTERN = re.compile(r"<script|onerror\s*=|onload\s*=|javascript:", re.IGNORECASE)


def _match(pattern: re.Pattern[str], *fields: str) -> str | None:
    for text in fields:
        if text:
            m = pattern.search(text)
            if m:
                return m.group(0)
    return None


def _signature_rule(
    ctx: RuleContext,
    event_type: str,
    pattern: re.Pattern[str],
    rule_name: str,
    dedup_prefix: str,
    default_mitre: str,
) -> Finding | None:
    log = ctx.log
    matched = _match(pattern, log.payload, log.url)
    if log.attack_type != event_type and matched is None:
        return None

    dedup_key = f"dedup:{dedup_prefix}:{log.source_ip or UNKNOWN}:{log.target_system}"
    if not ctx.helpers.claim(dedup_key, ctx.dedup_ttl):
        return None

    return ctx.finding(
        rule_name=rule_name,
        severity=Severity.HIGH,
        dedup_key=dedup_key,
        evidence={
            "matched_signature": matched,
            "declared_event_type": log.event_type,
            "payload": log.payload[:512] or None,
            "url": log.url or None,
            "target_system": log.target_system,
        },
        mitre_id=ctx.knob("mitre_id", default_mitre),
    )


def sql_injection_rule(ctx: RuleContext) -> Finding | None:
    return _signature_rule(
        ctx, "sql_injection", SQLI_PATTERN, "sql_injection_signature", "sqli", "T1190",
    )


def xss_rule(ctx: RuleContext) -> Finding | None:
    return _signature_rule(
        ctx, "xss", XSS_PATTERN, "xss_signature", "xss", "T1059.007",
    )
