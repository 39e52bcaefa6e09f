"""Inputs handed to every detection rule."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any

from socwatch.core.dedup import DEFAULT_DEDUP_TTL_SECONDS, DedupGuard
from socwatch.core.models import Finding, NormalizedLogEvent, Severity
from socwatch.core.state import StateStore

if TYPE_CHECKING:
    from socwatch.detection.metrics import BaselineTracker


@dataclass(frozen=True)
class RuleHelpers:
    """Shared collaborators: the state store, dedup guard and baseline tracker."""

    store: StateStore
    guard: DedupGuard
    metrics: BaselineTracker | None = None

    def claim(self, key: str, ttl_seconds: int = DEFAULT_DEDUP_TTL_SECONDS) -> bool:
        return self.guard.claim(key, ttl_seconds)


@dataclass(frozen=True)
class RuleContext:
    """One rule invocation: ``{log, now, rule_config, helpers}``."""

    log: NormalizedLogEvent
    now: float
    rule_config: dict[str, Any]
    helpers: RuleHelpers

    def knob(self, name: str, default: Any) -> Any:
        """A rule setting, falling back to *default* when unset."""
        value = self.rule_config.get(name)
        return default if value is None else value

    @property
    def dedup_ttl(self) -> int:
        return int(self.knob("dedup_ttl_seconds", DEFAULT_DEDUP_TTL_SECONDS))

    def finding(
        self,
        rule_name: str,
        severity: Severity,
        dedup_key: str,
        evidence: dict[str, Any],
        mitre_id: str | None = None,
        global_scope: bool = False,
    ) -> Finding:
        """Build a Finding tied to the triggering log.

        Global-scope findings (not attributable to one source) carry no source_ip.
        """
        return Finding(
            rule_name=rule_name,
            severity=severity,
            source_ip=None if global_scope else self.log.source_ip,
            dedup_key=dedup_key,
            log_id=self.log.log_id,
            evidence=evidence,
            mitre_id=mitre_id,
            created_at=self.now,
        )
