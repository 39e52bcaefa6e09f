"""Rule Dispatcher: runs every enabled detection rule against one log.

Rules are plain functions ``(RuleContext) -> Finding | None`` registered
by key in :data:`RULES`. The configured rule order is the evaluation
order; configuration is validated against the registry at construction.

Per invocation:

1. normalize the raw record and store it
2. record baseline metrics
3. evaluate each enabled rule (a crashing rule counts as "no finding")
4. persist findings
5. escalate (always, even with no findings)
6. mark the log processed and publish notifications
"""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from socwatch.core.bus import Notifier, NullNotifier
from socwatch.core.config import SocConfig
from socwatch.core.dedup import DedupGuard
from socwatch.core.errors import StateStoreError
from socwatch.core.models import Finding, Incident, NormalizedLogEvent, Severity
from socwatch.core.state import StateStore
from socwatch.detection.anomaly import anomaly_spike_rule
from socwatch.detection.context import RuleContext, RuleHelpers
from socwatch.detection.metrics import BaselineTracker
from socwatch.detection.sequence import multistage_intrusion_rule
from socwatch.detection.signatures import sql_injection_rule, xss_rule
from socwatch.detection.threshold import (
    brute_force_rule,
    data_exfiltration_rule,
    port_scan_rule,
    volume_anomaly_rule,
)

if TYPE_CHECKING:
    from socwatch.alerting.correlation_engine import EscalationEngine
    from socwatch.core.database import SocDatabase

logger = logging.getLogger(__name__)

Rule = Callable[[RuleContext], "Finding | None"]

RULES: dict[str, Rule] = {
    "brute_force": brute_force_rule,
    "port_scan": port_scan_rule,
    "sql_injection": sql_injection_rule,
    "xss": xss_rule,
    "data_exfiltration": data_exfiltration_rule,
    "volume_anomaly": volume_anomaly_rule,
    "anomaly_spike": anomaly_spike_rule,
    "multistage_intrusion": multistage_intrusion_rule,
}


@dataclass
class ProcessResult:
    """Outcome of one dispatcher invocation."""

    log: NormalizedLogEvent
    findings: list[Finding] = field(default_factory=list)
    incident: Incident | None = None

    @property
    def findings_created(self) -> bool:
        return bool(self.findings)


class RuleDispatcher:
    """Evaluate enabled rules for each log, persist findings and escalate.

    Parameters
    ----------
    config:
        Loaded configuration; its ``rules`` section is validated here and
        raises ConfigurationError on a bad entry.
    store:
        Shared fast state store.
    db:
        Durable store for logs and findings. Optional for dry runs.
    escalation:
        Engine with ``escalate(log, findings) -> Incident | None``.
    notifier:
        Fire-and-forget outbound publisher.
    rules:
        Registry override, mainly for tests.
    """

    def __init__(
        self,
        config: SocConfig,
        store: StateStore,
        db: SocDatabase | None = None,
        escalation: EscalationEngine | None = None,
        notifier: Notifier | None = None,
        metrics: BaselineTracker | None = None,
        rules: dict[str, Rule] | None = None,
        clock: Callable[[], float] | None = None,
    ) -> None:
        self._rules = dict(RULES if rules is None else rules)
        config.validate_rules(self._rules.keys())
        self._rule_defs = config.rule_definitions()
        self._store = store
        self._db = db
        self._escalation = escalation
        self._notifier = notifier or NullNotifier()
        self._metrics = metrics or BaselineTracker(store)
        self._helpers = RuleHelpers(store=store, guard=DedupGuard(store), metrics=self._metrics)
        self._clock = clock or store.now

    @property
    def enabled_rules(self) -> list[str]:
        return [key for key, cfg in self._rule_defs if cfg.get("enabled")]

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def process_event(self, raw: dict[str, Any]) -> ProcessResult:
        """Run one raw log record through the detection pipeline.

        Raises StateStoreError or PersistenceError when the shared store or
        the durable store fails; the caller is expected to retry the record.
        """
        now = self._clock()
        log = NormalizedLogEvent.from_raw(raw, now=now)
        if self._db is not None:
            self._db.insert_log(log)

        self._metrics.record(log, now)

        findings = self.evaluate(log, now)
        if findings and self._db is not None:
            for finding in findings:
                self._db.insert_finding(finding)
        for finding in findings:
            logger.info("Finding %s [%s] from %s: %s",
                        finding.finding_id, finding.severity.value,
                        finding.source_ip, finding.rule_name)

        incident = None
        if self._escalation is not None:
            incident = self._escalation.escalate(log, findings, now=now)

        if self._db is not None:
            self._db.mark_log_processed(
                log.log_id,
                alert_generated=bool(findings),
                rule_name=findings[0].rule_name if findings else None,
            )

        self._publish(log, findings)
        return ProcessResult(log=log, findings=findings, incident=incident)

    def evaluate(self, log: NormalizedLogEvent, now: float | None = None) -> list[Finding]:
        """Run each enabled rule in configured order and collect findings."""
        now = time.time() if now is None else now
        findings: list[Finding] = []
        for key, rule_config in self._rule_defs:
            if not rule_config.get("enabled"):
                continue
            finding = self._run_rule(key, rule_config, log, now)
            if finding is not None:
                findings.append(finding)
        return findings

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _run_rule(
        self, key: str, rule_config: dict[str, Any], log: NormalizedLogEvent, now: float,
    ) -> Finding | None:
        ctx = RuleContext(log=log, now=now, rule_config=rule_config, helpers=self._helpers)
        try:
            return self._rules[key](ctx)
        except StateStoreError:
            raise
        except Exception as exc:
            logger.exception(
                "Rule %s failed for log %s (%s)", key, log.log_id, type(exc).__name__,
            )
            return None

    def _publish(self, log: NormalizedLogEvent, findings: list[Finding]) -> None:
        for finding in findings:
            self._notify("finding.new", finding.to_dict())
        critical = [f for f in findings if f.severity is Severity.CRITICAL]
        if critical:
            self._notify("finding.critical", {
                "count": len(critical),
                "findings": [f.to_dict() for f in critical],
            })
        self._notify("log.processed", {
            "log_id": log.log_id,
            "event_type": log.event_type,
            "source_ip": log.source_ip,
            "alert_generated": bool(findings),
        })

    def _notify(self, topic: str, payload: dict[str, Any]) -> None:
        try:
            self._notifier.publish(topic, payload)
        except Exception as exc:
            logger.warning("Notification %s failed: %s", topic, exc)
