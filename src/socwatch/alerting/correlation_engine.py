"""Incident escalation engine for socwatch.

Applies an ordered list of correlation policies to the findings of one
invocation plus historical state in the shared store. The first policy
that matches wins; later policies are not evaluated. Each match is
dedup'd by key: the first claimant opens an incident and stores its id
under the key, and repeats within the window update that incident in
place instead of opening another. A resolved or closed incident is not
reopened: the next match replaces the key with a fresh incident.

Policies, in order:

1. CriticalSeverityPolicy      any critical finding
2. TimeWindowCorrelationPolicy per-(source, event type) rate threshold
3. AttackChainPolicy           ordered event-type subsequence per source
4. RepeatedHighSeverityPolicy  many high findings from one source
5. AnomalySpikePolicy          hourly event-type volume vs. stored baseline

Every policy first *observes* the invocation (updates its counters) so
that history stays complete even when an earlier policy short-circuits
the decision.
"""

from __future__ import annotations

import abc
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any

from socwatch.core.bus import Notifier, NullNotifier
from socwatch.core.database import SocDatabase
from socwatch.core.dedup import DedupGuard
from socwatch.core.errors import PersistenceError, StateStoreError
from socwatch.core.models import (
    UNKNOWN,
    CreationType,
    Finding,
    Incident,
    IncidentStatus,
    NormalizedLogEvent,
    Severity,
    TimelineEntry,
)
from socwatch.core.state import StateStore

logger = logging.getLogger(__name__)


# Event type -> (threshold, window seconds)
CORRELATION_THRESHOLDS: dict[str, tuple[int, int]] = {
    "failed_login": (10, 60),
    "brute_force": (10, 60),
    "sql_injection": (3, 30),
    "xss": (3, 30),
    "port_scan": (5, 15),
    "malware_detection": (1, 300),
    "data_exfiltration": (1, 300),
}

ATTACK_CHAIN_PATTERNS: dict[str, tuple[str, ...]] = {
    "recon_to_privilege_escalation": (
        "port_scan", "failed_login", "sql_injection", "privilege_escalation",
    ),
    "web_compromise_exfiltration": (
        "sql_injection", "privilege_escalation", "data_exfiltration",
    ),
    "credential_takeover": (
        "brute_force", "login_success", "privilege_escalation",
    ),
}


@dataclass
class EscalationContext:
    log: NormalizedLogEvent
    findings: list[Finding]
    now: float

    @property
    def source(self) -> str:
        return self.log.source_ip or UNKNOWN


@dataclass
class Escalation:
    """A policy's decision to open (or update) an incident."""

    policy: str
    dedup_key: str
    dedup_ttl: int
    title: str
    severity: Severity
    description: str = ""
    extra_finding_ids: list[str] = field(default_factory=list)


class EscalationPolicy(abc.ABC):
    """One correlation policy.

    ``observe`` updates shared state for every invocation and returns
    whatever ``evaluate`` needs; ``evaluate`` decides.
    """

    name: str = ""

    def observe(self, ctx: EscalationContext) -> Any:
        return None

    @abc.abstractmethod
    def evaluate(self, ctx: EscalationContext, observed: Any) -> Escalation | None:
        """Return an Escalation when the policy matches, else None."""


# ---------------------------------------------------------------------------
# Policies
# ---------------------------------------------------------------------------

class CriticalSeverityPolicy(EscalationPolicy):
    name = "critical_severity"

    def __init__(self, dedup_ttl: int = 3600) -> None:
        self._ttl = dedup_ttl

    def evaluate(self, ctx: EscalationContext, observed: Any) -> Escalation | None:
        critical = [f for f in ctx.findings if f.severity is Severity.CRITICAL]
        if not critical:
            return None
        rules = ", ".join(sorted({f.rule_name for f in critical}))
        return Escalation(
            policy=self.name,
            dedup_key=f"incident:critical:{ctx.source}:{ctx.log.event_type}",
            dedup_ttl=self._ttl,
            title=f"Critical {ctx.log.event_type} activity from {ctx.source}",
            severity=Severity.CRITICAL,
            description=f"Critical finding(s) raised by {rules}.",
        )


class TimeWindowCorrelationPolicy(EscalationPolicy):
    """Too many events of one type from one source within a fixed window."""

    name = "time_window_correlation"

    def __init__(
        self,
        store: StateStore,
        db: SocDatabase | None = None,
        thresholds: dict[str, tuple[int, int]] | None = None,
    ) -> None:
        self._store = store
        self._db = db
        self._thresholds = thresholds or CORRELATION_THRESHOLDS

    def observe(self, ctx: EscalationContext) -> int | None:
        rule = self._thresholds.get(ctx.log.event_type)
        if rule is None:
            return None
        _, window = rule
        return self._store.incr(
            f"esc:corr:{ctx.source}:{ctx.log.event_type}", ttl=window, sliding=False,
        )

    def evaluate(self, ctx: EscalationContext, observed: int | None) -> Escalation | None:
        if observed is None:
            return None
        threshold, window = self._thresholds[ctx.log.event_type]
        if observed < threshold:
            return None

        severity = Severity.CRITICAL if observed >= 2 * threshold else Severity.HIGH
        related: list[str] = []
        if self._db is not None:
            recent = self._db.query_findings(source_ip=ctx.source, since=ctx.now - window)
            related = [f.finding_id for f in recent]

        return Escalation(
            policy=self.name,
            dedup_key=f"incident:correlation:{ctx.source}:{ctx.log.event_type}",
            dedup_ttl=2 * window,
            title=f"Repeated {ctx.log.event_type} from {ctx.source}",
            severity=severity,
            description=(
                f"{observed} {ctx.log.event_type} events in {window}s "
                f"(threshold {threshold})."
            ),
            extra_finding_ids=related,
        )


def is_subsequence(pattern: tuple[str, ...], events: list[str]) -> bool:
    """True if *pattern* occurs in order in *events*, gaps allowed."""
    it = iter(events)
    return all(step in it for step in pattern)


class AttackChainPolicy(EscalationPolicy):
    """Known attack chains in a source's recent event-type history."""

    name = "attack_chain"

    def __init__(
        self,
        store: StateStore,
        patterns: dict[str, tuple[str, ...]] | None = None,
        retention_seconds: int = 600,
        dedup_ttl: int = 3600,
    ) -> None:
        self._store = store
        self._patterns = patterns or ATTACK_CHAIN_PATTERNS
        self._retention = retention_seconds
        self._ttl = dedup_ttl

    def observe(self, ctx: EscalationContext) -> list[str]:
        key = f"esc:chain:{ctx.source}"
        start = ctx.now - self._retention
        # log_id keeps members unique, and a redelivered log idempotent
        self._store.add_timed(
            key,
            f"{ctx.log.event_type}|{ctx.log.log_id}",
            ctx.now,
            ttl=self._retention,
            prune_before=start,
        )
        members = self._store.range_by_time(key, start, ctx.now)
        return [m.split("|", 1)[0] for m in members]

    def evaluate(self, ctx: EscalationContext, observed: list[str]) -> Escalation | None:
        for pattern_name, steps in self._patterns.items():
            # Only the final step can complete a chain
            if ctx.log.event_type != steps[-1]:
                continue
            if not is_subsequence(steps, observed):
                continue
            return Escalation(
                policy=self.name,
                dedup_key=f"incident:chain:{ctx.source}:{pattern_name}",
                dedup_ttl=self._ttl,
                title=f"Multi-stage attack chain '{pattern_name}' from {ctx.source}",
                severity=Severity.CRITICAL,
                description=" -> ".join(steps),
            )
        return None


class RepeatedHighSeverityPolicy(EscalationPolicy):
    name = "repeated_high_severity"

    def __init__(
        self,
        store: StateStore,
        threshold: int = 5,
        window_seconds: int = 600,
        dedup_ttl: int = 1800,
    ) -> None:
        self._store = store
        self._threshold = threshold
        self._window = window_seconds
        self._ttl = dedup_ttl

    def observe(self, ctx: EscalationContext) -> int | None:
        high = sum(1 for f in ctx.findings if f.severity is Severity.HIGH)
        if not high:
            return None
        return self._store.incr(
            f"esc:high:{ctx.source}", amount=high, ttl=self._window, sliding=False,
        )

    def evaluate(self, ctx: EscalationContext, observed: int | None) -> Escalation | None:
        if observed is None or observed < self._threshold:
            return None
        return Escalation(
            policy=self.name,
            dedup_key=f"incident:repeat:{ctx.source}",
            dedup_ttl=self._ttl,
            title=f"Repeated high-severity activity from {ctx.source}",
            severity=Severity.HIGH,
            description=f"{observed} high-severity findings in {self._window}s.",
        )


def _hour_bucket(ts: float) -> str:
    return datetime.fromtimestamp(ts, tz=timezone.utc).strftime("%Y%m%d%H")


class AnomalySpikePolicy(EscalationPolicy):
    """Hourly event-type volume compared with a stored baseline.

    Every ``snapshot_every``-th increment of the current hour's counter
    stores the previous hour's total as the baseline.
    """

    name = "anomaly_spike"

    def __init__(
        self,
        store: StateStore,
        multiplier: float = 3.0,
        snapshot_every: int = 100,
        baseline_ttl: int = 86400,
        dedup_ttl: int = 1800,
    ) -> None:
        self._store = store
        self._multiplier = multiplier
        self._snapshot_every = snapshot_every
        self._baseline_ttl = baseline_ttl
        self._ttl = dedup_ttl

    def observe(self, ctx: EscalationContext) -> tuple[int, int] | None:
        event_type = ctx.log.event_type
        if not event_type or event_type == UNKNOWN:
            return None
        count = self._store.incr(
            f"esc:anomaly:{event_type}:{_hour_bucket(ctx.now)}", ttl=7200, sliding=False,
        )
        baseline_key = f"esc:anomaly:baseline:{event_type}"
        if count % self._snapshot_every == 0:
            previous = self._store.get_int(
                f"esc:anomaly:{event_type}:{_hour_bucket(ctx.now - 3600)}"
            )
            if previous > 0:
                self._store.set(baseline_key, previous, ttl=self._baseline_ttl)
        return count, self._store.get_int(baseline_key)

    def evaluate(
        self, ctx: EscalationContext, observed: tuple[int, int] | None,
    ) -> Escalation | None:
        if observed is None:
            return None
        count, baseline = observed
        if baseline <= 0 or count <= self._multiplier * baseline:
            return None
        return Escalation(
            policy=self.name,
            dedup_key=f"incident:anomaly:{ctx.log.event_type}",
            dedup_ttl=self._ttl,
            title=f"Volume anomaly for {ctx.log.event_type}",
            severity=Severity.HIGH,
            description=f"{count} events this hour vs baseline {baseline}.",
        )


def default_policies(store: StateStore, db: SocDatabase | None = None) -> list[EscalationPolicy]:
    return [
        CriticalSeverityPolicy(),
        TimeWindowCorrelationPolicy(store, db),
        AttackChainPolicy(store),
        RepeatedHighSeverityPolicy(store),
        AnomalySpikePolicy(store),
    ]


# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------

# A claim younger than this whose incident row is missing is still being
# written by its owner.
PENDING_CLAIM_SECONDS = 5.0

_CLAIM_ROUNDS = 3
_CLOSED_STATUSES = (IncidentStatus.RESOLVED, IncidentStatus.CLOSED)


class EscalationEngine:
    """Turn correlated findings into incidents.

    Parameters
    ----------
    store:
        Shared fast state store (counters and dedup keys).
    db:
        Durable store where incidents are created and updated.
    notifier:
        Receives ``incident.created`` / ``incident.updated``.
    policies:
        Ordered policies; defaults to :func:`default_policies`.
    sleep, pending_attempts, pending_wait:
        How long to wait for an incident another worker has claimed but not
        yet written.
    """

    def __init__(
        self,
        store: StateStore,
        db: SocDatabase,
        notifier: Notifier | None = None,
        policies: list[EscalationPolicy] | None = None,
        enabled: bool = True,
        sleep: Callable[[float], None] = time.sleep,
        pending_attempts: int = 10,
        pending_wait: float = 0.05,
    ) -> None:
        self._store = store
        self._db = db
        self._guard = DedupGuard(store)
        self._notifier = notifier or NullNotifier()
        self._policies = policies if policies is not None else default_policies(store, db)
        self._enabled = enabled
        self._sleep = sleep
        self._pending_attempts = max(1, pending_attempts)
        self._pending_wait = pending_wait

    @property
    def policies(self) -> list[EscalationPolicy]:
        return list(self._policies)

    def escalate(
        self,
        log: NormalizedLogEvent,
        findings: list[Finding],
        now: float | None = None,
    ) -> Incident | None:
        """Apply policies in order; the first match opens or updates an incident.

        Returns None when no policy matches.
        """
        if not self._enabled:
            return None
        ctx = EscalationContext(
            log=log, findings=list(findings), now=self._store.now() if now is None else now,
        )
        observed = [(policy, policy.observe(ctx)) for policy in self._policies]
        for policy, obs in observed:
            decision = policy.evaluate(ctx, obs)
            if decision is not None:
                return self._open_or_update(ctx, decision)
        return None

    def _open_or_update(self, ctx: EscalationContext, decision: Escalation) -> Incident | None:
        finding_ids = [f.finding_id for f in ctx.findings]
        for fid in decision.extra_finding_ids:
            if fid not in finding_ids:
                finding_ids.append(fid)

        key, ttl = decision.dedup_key, decision.dedup_ttl
        incident = self._build_incident(ctx, decision, finding_ids)
        for _ in range(_CLAIM_ROUNDS):
            owner = self._guard.claim_or_get(key, ttl, incident.incident_id)
            if owner is None:
                return self._open(incident, decision)
            if owner == "":
                # Previous claim lapsed between the two store calls
                continue

            existing = self._await_incident(key, ttl, owner)
            if existing is None:
                logger.warning("Dedup key %s points at missing incident %s", key, owner)
                return None
            if existing.status not in _CLOSED_STATUSES:
                return self._update(ctx, decision, owner, finding_ids)
            if self._store.compare_and_set(key, owner, incident.incident_id, ttl):
                logger.info("Incident %s is %s; %s starts a new one",
                            owner, existing.status.value, decision.policy)
                return self._open(incident, decision)
        raise StateStoreError(f"Dedup key {key} changed owner repeatedly")

    def _await_incident(self, key: str, ttl: int, owner: str) -> Incident | None:
        """Fetch the incident a dedup key points at.

        A young claim whose row is missing is polled until its owner commits
        the insert. Returns None for a stale reference and raises
        PersistenceError if a young claim never lands.
        """
        for attempt in range(self._pending_attempts):
            existing = self._db.get_incident(owner)
            if existing is not None:
                return existing
            if not self._claim_is_pending(key, ttl):
                return None
            if attempt + 1 < self._pending_attempts:
                self._sleep(self._pending_wait)
        raise PersistenceError(
            f"Incident {owner} claimed under {key} was never written"
        )

    def _claim_is_pending(self, key: str, ttl: int) -> bool:
        remaining = self._store.ttl(key)
        return remaining is not None and ttl - remaining < PENDING_CLAIM_SECONDS

    def _open(self, incident: Incident, decision: Escalation) -> Incident:
        self._db.insert_incident(incident)
        logger.info("Incident %s opened by %s [%s]: %s",
                    incident.incident_id, decision.policy,
                    incident.severity.value, incident.title)
        self._notify("incident.created", incident)
        return incident

    def _update(
        self,
        ctx: EscalationContext,
        decision: Escalation,
        owner: str,
        finding_ids: list[str],
    ) -> Incident | None:
        entry = TimelineEntry(
            action="updated",
            rule=decision.policy,
            automatic=True,
            detail=decision.description,
            timestamp=ctx.now,
        )
        updated = self._db.append_to_incident(
            owner, finding_ids, [ctx.log.log_id], entry, severity=decision.severity,
        )
        if updated is None:
            logger.warning("Dedup key %s points at missing incident %s",
                           decision.dedup_key, owner)
            return None
        logger.info("Incident %s updated by %s", owner, decision.policy)
        self._notify("incident.updated", updated)
        return updated

    @staticmethod
    def _build_incident(
        ctx: EscalationContext, decision: Escalation, finding_ids: list[str],
    ) -> Incident:
        log = ctx.log
        return Incident(
            title=decision.title,
            severity=decision.severity,
            description=decision.description,
            related_finding_ids=list(finding_ids),
            related_log_ids=[log.log_id],
            metadata={
                "source_ip": ctx.source,
                "target_system": log.target_system,
                "event_type": log.event_type,
                "geo": log.country_code,
                "created_by_rule": decision.policy,
                "creation_type": CreationType.AUTOMATIC.value,
            },
            timeline=[TimelineEntry(
                action="created",
                rule=decision.policy,
                automatic=True,
                detail=decision.description,
                timestamp=ctx.now,
            )],
            created_at=ctx.now,
            updated_at=ctx.now,
        )

    def _notify(self, topic: str, incident: Incident) -> None:
        try:
            self._notifier.publish(topic, incident.to_dict())
        except Exception as exc:
            logger.warning("Notification %s failed: %s", topic, exc)
